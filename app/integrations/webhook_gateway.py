"""
Outbound webhook transport.

All HTTP calls to webhook destinations go through this class. Direct
`requests` calls in services or blueprints are FORBIDDEN.

One call = one attempt. Retry scheduling belongs to the delivery service,
which persists attempt state so any worker can pick up the next retry; the
gateway never sleeps or loops.

Testability: pass a mock `session` to WebhookGateway() or patch
`webhook_gateway.send` in tests.
"""

from __future__ import annotations

import logging
import time

import requests

from app.core.exceptions import TransportError

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 10
_MAX_BODY_CHARS = 2000


class TransportResult:
    """Successful transport call.

    Attributes:
        status_code:  HTTP status (always 2xx here).
        body:         Response body, truncated.
        duration_ms:  Round-trip latency in milliseconds.
    """

    def __init__(self, status_code: int, body: str, duration_ms: int) -> None:
        self.status_code = status_code
        self.body = body
        self.duration_ms = duration_ms

    def to_dict(self) -> dict:
        return {"status": self.status_code, "body": self.body, "duration_ms": self.duration_ms}


class WebhookGateway:
    """requests-based webhook sender.

    Instantiate once at module level (module-level singleton pattern).

    Usage:
        from app.integrations.webhook_gateway import webhook_gateway
        result = webhook_gateway.send(url, body, headers)
    """

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session: requests.Session | None = session

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def send(
        self,
        url: str,
        body: bytes,
        headers: dict[str, str],
        *,
        method: str = "POST",
        timeout: int = _DEFAULT_TIMEOUT,
    ) -> TransportResult:
        """Send one signed payload.

        Args:
            url:      Resolved destination URL.
            body:     Serialized payload bytes (exactly what was signed).
            headers:  Full header set including the signature header.
            method:   POST, PUT or PATCH.
            timeout:  Seconds before the attempt is abandoned.

        Returns:
            TransportResult for a 2xx answer.

        Raises:
            TransportError: network failure, timeout or non-2xx status.
        """
        t0 = time.perf_counter()
        try:
            resp = self.session.request(method, url, data=body, headers=headers, timeout=timeout)
        except requests.Timeout:
            duration_ms = int((time.perf_counter() - t0) * 1000)
            logger.warning("Webhook timed out after %ss url=%s", timeout, url)
            raise TransportError(f"Request timed out after {timeout}s", duration_ms=duration_ms)
        except requests.RequestException as exc:
            duration_ms = int((time.perf_counter() - t0) * 1000)
            logger.warning("Webhook network error url=%s error=%s", url, exc)
            raise TransportError(f"{type(exc).__name__}: {exc}"[:500], duration_ms=duration_ms)

        duration_ms = int((time.perf_counter() - t0) * 1000)
        text = (resp.text or "")[:_MAX_BODY_CHARS]
        if not 200 <= resp.status_code < 300:
            logger.warning("Webhook rejected status=%d url=%s", resp.status_code, url)
            raise TransportError(
                f"HTTP {resp.status_code}",
                status_code=resp.status_code,
                response_body=text,
                duration_ms=duration_ms,
            )
        return TransportResult(status_code=resp.status_code, body=text, duration_ms=duration_ms)


# Module-level singleton
webhook_gateway = WebhookGateway()
