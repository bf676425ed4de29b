"""
HMAC-SHA256 signing for outbound webhook payloads.

The signature covers the exact serialized body and travels in the
``X-Webhook-Signature`` header as ``sha256=<hex>``; it is never embedded in
the payload itself. Receivers recompute it over the raw request body.

Rotation: a destination keeps its previous secret for a grace window, so a
keyring of one or two secrets may be valid at once (see
webhook_service.signing_secrets).
"""

import hashlib
import hmac
import secrets
from collections.abc import Iterable

SIGNATURE_HEADER = "X-Webhook-Signature"
SIGNATURE_PREFIX = "sha256="
SECRET_PREFIX = "whsec_"


def generate_secret() -> str:
    """New random signing secret (``whsec_`` + 64 hex chars)."""
    return f"{SECRET_PREFIX}{secrets.token_hex(32)}"


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of *body* keyed by *secret*."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def format_header(signature: str) -> str:
    return f"{SIGNATURE_PREFIX}{signature}"


def _strip_prefix(signature: str) -> str:
    if signature.startswith(SIGNATURE_PREFIX):
        return signature[len(SIGNATURE_PREFIX):]
    return signature


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Constant-time check of a hex signature (with or without ``sha256=``)."""
    if not secret or not signature:
        return False
    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected, _strip_prefix(signature))


def verify_with_keyring(keyring: Iterable[str], body: bytes, signature: str) -> bool:
    """True if any secret in the keyring produced *signature*."""
    return any(verify_signature(secret, body, signature) for secret in keyring)
