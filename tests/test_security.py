"""Tests for webhook signature verification and shared-secret checks."""

from __future__ import annotations

import pytest
from fastapi import HTTPException

from src.botsync.core.security import (
    WebhookAuthError,
    authenticate_webhook,
    compute_webhook_signature,
    verify_bearer_secret,
    verify_webhook_signature,
)

SECRET = "whsec_test"
BODY = b'{"event":"bot.done"}'
NOW = 1_772_463_600


class TestVerifyWebhookSignature:
    def test_valid_signature(self):
        signature = compute_webhook_signature(SECRET, str(NOW), BODY)
        verify_webhook_signature(SECRET, BODY, signature, str(NOW), now=NOW + 10)

    def test_signature_format(self):
        signature = compute_webhook_signature(SECRET, str(NOW), BODY)
        assert signature.startswith("v1=")
        assert len(signature) == 3 + 64

    def test_rotated_signatures_accept_any_match(self):
        good = compute_webhook_signature(SECRET, str(NOW), BODY)
        verify_webhook_signature(SECRET, BODY, f"v1=stale {good}", str(NOW), now=NOW)

    def test_tampered_body_fails(self):
        signature = compute_webhook_signature(SECRET, str(NOW), BODY)
        with pytest.raises(WebhookAuthError) as exc_info:
            verify_webhook_signature(SECRET, BODY + b" ", signature, str(NOW), now=NOW)
        assert exc_info.value.reason == "signature_mismatch"

    def test_stale_timestamp_fails(self):
        signature = compute_webhook_signature(SECRET, str(NOW), BODY)
        with pytest.raises(WebhookAuthError) as exc_info:
            verify_webhook_signature(SECRET, BODY, signature, str(NOW), now=NOW + 301)
        assert exc_info.value.reason == "stale_timestamp"

    @pytest.mark.parametrize(
        "signature,timestamp,reason",
        [
            (None, str(NOW), "missing_signature"),
            ("v1=abc", None, "missing_signature"),
            ("v1=abc", "yesterday", "invalid_timestamp"),
        ],
    )
    def test_bad_headers(self, signature, timestamp, reason):
        with pytest.raises(WebhookAuthError) as exc_info:
            verify_webhook_signature(SECRET, BODY, signature, timestamp, now=NOW)
        assert exc_info.value.reason == reason


class TestAuthenticateWebhook:
    def test_nothing_configured_accepts_everything(self):
        authenticate_webhook({}, BODY)

    def test_secret_takes_precedence_over_token(self):
        with pytest.raises(WebhookAuthError) as exc_info:
            authenticate_webhook({"x-recall-token": "tok"}, BODY, secret=SECRET, token="tok")
        assert exc_info.value.reason == "missing_signature"

    def test_wrong_token_rejected(self):
        with pytest.raises(WebhookAuthError):
            authenticate_webhook({"x-recall-token": "nope"}, BODY, token="tok")

    def test_required_auth_without_configuration_rejects(self):
        with pytest.raises(WebhookAuthError) as exc_info:
            authenticate_webhook({}, BODY, require_auth=True)
        assert exc_info.value.reason == "webhook_auth_not_configured"

    def test_required_auth_with_token_checks_token(self):
        authenticate_webhook({"x-recall-token": "tok"}, BODY, token="tok", require_auth=True)


class TestVerifyBearerSecret:
    def test_unconfigured_secret_disables_endpoint(self):
        with pytest.raises(HTTPException) as exc_info:
            verify_bearer_secret("Bearer anything", "")
        assert exc_info.value.status_code == 503

    @pytest.mark.parametrize("header", [None, "cron", "Bearer wrong", "Basic cron"])
    def test_wrong_credentials_rejected(self, header):
        with pytest.raises(HTTPException) as exc_info:
            verify_bearer_secret(header, "cron")
        assert exc_info.value.status_code == 401

    def test_matching_secret_passes(self):
        verify_bearer_secret("Bearer cron", "cron")
