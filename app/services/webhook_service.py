"""
Webhook destination management and signing-secret rotation.

Plaintext secrets exist only in memory: they are returned once on create and
rotate, and otherwise stay Fernet-encrypted in the database.

Rotation keeps the previous secret valid until ``previous_secret_expires_at``
so retries signed before the rotation still verify on the receiver side.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any
from urllib.parse import urlparse

from flask import current_app

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.delivery import HTTP_METHODS, WebhookDestination
from app.services.signature_service import generate_secret
from app.utils.crypto import decrypt_secret, encrypt_secret
from app.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

_UPDATABLE = ("name", "url", "method", "headers", "payload_template", "max_attempts", "is_active")


def _validate(data: dict[str, Any], *, partial: bool = False) -> dict[str, Any]:
    errors: dict[str, str] = {}
    if not partial or "name" in data:
        if not str(data.get("name") or "").strip():
            errors["name"] = "name is required"
    if not partial or "url" in data:
        url = str(data.get("url") or "").strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            errors["url"] = "url must be an absolute http(s) URL"
    if "method" in data and str(data["method"]).upper() not in HTTP_METHODS:
        errors["method"] = f"method must be one of {sorted(HTTP_METHODS)}"
    if "headers" in data and data["headers"] is not None and not isinstance(data["headers"], dict):
        errors["headers"] = "headers must be an object"
    if "payload_template" in data and data["payload_template"] is not None \
            and not isinstance(data["payload_template"], dict):
        errors["payload_template"] = "payload_template must be an object"
    if data.get("max_attempts") is not None:
        try:
            if int(data["max_attempts"]) < 1:
                raise ValueError
        except (TypeError, ValueError):
            errors["max_attempts"] = "max_attempts must be a positive integer"
    if errors:
        raise ValidationError("Invalid webhook destination", details=errors)

    cleaned = {k: data[k] for k in _UPDATABLE if k in data}
    if "name" in cleaned:
        cleaned["name"] = str(cleaned["name"]).strip()
    if "url" in cleaned:
        cleaned["url"] = str(cleaned["url"]).strip()
    if "method" in cleaned:
        cleaned["method"] = str(cleaned["method"]).upper()
    if cleaned.get("max_attempts") is not None:
        cleaned["max_attempts"] = int(cleaned["max_attempts"])
    return cleaned


# ══════════════════════════════════════════════════════════════════
# CRUD
# ══════════════════════════════════════════════════════════════════


def get_destination(destination_id: int) -> WebhookDestination:
    dest = db.session.get(WebhookDestination, destination_id)
    if not dest:
        raise NotFoundError(resource="WebhookDestination", resource_id=destination_id)
    return dest


def list_destinations(active_only: bool = False) -> list[WebhookDestination]:
    q = WebhookDestination.query
    if active_only:
        q = q.filter_by(is_active=True)
    return q.order_by(WebhookDestination.id).all()


def create_destination(data: dict[str, Any]) -> tuple[WebhookDestination, str]:
    """Create a destination with a fresh signing secret.

    Returns:
        (destination, plaintext_secret). The secret is not retrievable later.

    Raises:
        ValidationError: bad name, url, method, headers or max_attempts.
    """
    cleaned = _validate(data)
    secret = data.get("secret") or generate_secret()
    dest = WebhookDestination(
        name=cleaned["name"],
        url=cleaned["url"],
        method=cleaned.get("method", "POST"),
        headers=cleaned.get("headers") or {},
        payload_template=cleaned.get("payload_template"),
        max_attempts=cleaned.get("max_attempts"),
        is_active=cleaned.get("is_active", True),
        secret_encrypted=encrypt_secret(secret),
    )
    db.session.add(dest)
    db.session.commit()
    logger.info("Webhook destination created id=%s url=%s", dest.id, dest.url)
    return dest, secret


def update_destination(destination_id: int, data: dict[str, Any]) -> WebhookDestination:
    dest = get_destination(destination_id)
    cleaned = _validate(data, partial=True)
    for key, value in cleaned.items():
        setattr(dest, key, value)
    db.session.commit()
    return dest


def delete_destination(destination_id: int) -> None:
    """Delete a destination together with its delivery history."""
    dest = get_destination(destination_id)
    db.session.delete(dest)
    db.session.commit()
    logger.info("Webhook destination deleted id=%s", destination_id)


# ══════════════════════════════════════════════════════════════════
# Secrets
# ══════════════════════════════════════════════════════════════════


def current_secret(dest: WebhookDestination) -> str:
    return decrypt_secret(dest.secret_encrypted)


def signing_secrets(dest: WebhookDestination, now=None) -> list[str]:
    """Keyring of secrets that currently verify: current first, then previous in grace."""
    now = now or utcnow()
    keyring = [current_secret(dest)]
    expires = as_utc(dest.previous_secret_expires_at)
    if dest.previous_secret_encrypted and expires and now < expires:
        keyring.append(decrypt_secret(dest.previous_secret_encrypted))
    return keyring


def rotate_secret(destination_id: int, *, grace_hours: int | None = None, now=None) -> tuple[WebhookDestination, str]:
    """Replace the signing secret, keeping the old one valid for a grace window.

    Args:
        grace_hours: Override for WEBHOOK_SECRET_GRACE_HOURS. 0 revokes the old
            secret immediately.

    Returns:
        (destination, new_plaintext_secret)
    """
    dest = get_destination(destination_id)
    now = now or utcnow()
    if grace_hours is None:
        grace_hours = current_app.config.get("WEBHOOK_SECRET_GRACE_HOURS", 24)
    if grace_hours < 0:
        raise ValidationError("grace_hours must be >= 0", details={"grace_hours": grace_hours})

    new_secret = generate_secret()
    dest.previous_secret_encrypted = dest.secret_encrypted
    dest.previous_secret_expires_at = now + timedelta(hours=grace_hours)
    dest.secret_encrypted = encrypt_secret(new_secret)
    dest.secret_rotated_at = now
    db.session.commit()
    logger.info(
        "Webhook secret rotated destination=%s grace_hours=%s", dest.id, grace_hours,
    )
    return dest, new_secret
