"""Webhook signature verification and shared-secret checks.

Provides the security primitives used by the webhook ingress handler and
the cron/admin endpoints. All comparisons are constant time.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import Mapping

from fastapi import HTTPException, status

SIGNATURE_VERSION = "v1"


class WebhookAuthError(Exception):
    """Raised when an inbound webhook cannot be authenticated."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Webhook authentication failed: {reason}")


# ── Webhook Signatures ────────────────────────────────────────────────────────


def compute_webhook_signature(secret: str, timestamp: str, body: bytes) -> str:
    """Compute the versioned HMAC-SHA256 signature for a webhook body.

    The signed message is ``"{timestamp}.{body}"``.

    Returns:
        Signature string of the form ``v1=<hex digest>``.
    """
    message = timestamp.encode("utf-8") + b"." + body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_VERSION}={digest}"


def verify_webhook_signature(
    secret: str,
    body: bytes,
    signature: str | None,
    timestamp: str | None,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> None:
    """Validate a signed webhook.

    Args:
        secret: Shared signing secret.
        body: Raw request body exactly as received.
        signature: Value of the signature header.
        timestamp: Value of the timestamp header (unix seconds).
        tolerance_seconds: Maximum allowed clock skew; 0 disables the check.
        now: Current unix time, injectable for tests.

    Raises:
        WebhookAuthError: If any header is missing, the timestamp is stale,
            or the signature does not match.
    """
    if not signature or not timestamp:
        raise WebhookAuthError("missing_signature")

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise WebhookAuthError("invalid_timestamp")

    current = time.time() if now is None else now
    if tolerance_seconds and abs(current - sent_at) > tolerance_seconds:
        raise WebhookAuthError("stale_timestamp")

    expected = compute_webhook_signature(secret, timestamp, body)
    # Vendors may send several space-separated signatures during key rotation
    candidates = signature.split()
    if not any(hmac.compare_digest(expected, c) for c in candidates):
        raise WebhookAuthError("signature_mismatch")


def verify_webhook_token(expected: str, provided: str | None) -> None:
    """Validate a static webhook token header.

    Raises:
        WebhookAuthError: If the token is missing or wrong.
    """
    if not provided or not hmac.compare_digest(expected, provided):
        raise WebhookAuthError("invalid_token")


def authenticate_webhook(
    headers: Mapping[str, str],
    body: bytes,
    secret: str = "",
    token: str = "",
    tolerance_seconds: int = 300,
    require_auth: bool = False,
) -> None:
    """Authenticate a webhook with whichever mechanism is configured.

    A signing secret takes precedence over a static token. With neither
    configured, webhooks are accepted unless ``require_auth`` is set.

    Args:
        headers: Request headers (case-insensitive mapping).
        body: Raw request body.
        secret: HMAC signing secret.
        token: Static token compared against ``X-Recall-Token``.
        tolerance_seconds: Allowed timestamp skew for signed webhooks.
        require_auth: Reject everything when no mechanism is configured.

    Raises:
        WebhookAuthError: If authentication fails.
    """
    if secret:
        verify_webhook_signature(
            secret,
            body,
            headers.get("x-recall-signature"),
            headers.get("x-recall-timestamp"),
            tolerance_seconds=tolerance_seconds,
        )
    elif token:
        verify_webhook_token(token, headers.get("x-recall-token"))
    elif require_auth:
        raise WebhookAuthError("webhook_auth_not_configured")


# ── Shared Secrets ────────────────────────────────────────────────────────────


def verify_bearer_secret(authorization: str | None, secret: str) -> None:
    """Check an ``Authorization: Bearer <secret>`` header.

    Args:
        authorization: Raw Authorization header value.
        secret: Configured shared secret. Empty means the endpoint is disabled.

    Raises:
        HTTPException(503): If no secret is configured.
        HTTPException(401): If the header is missing or does not match.
    """
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Endpoint not configured",
        )
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not authorization or not authorization.startswith("Bearer "):
        raise credentials_exception
    if not hmac.compare_digest(authorization[7:], secret):
        raise credentials_exception
