from __future__ import annotations

from escapehatch.services.audit import sanitize_metadata


def test_audit_redacts_tokens_and_secrets() -> None:
    # Redact token and secret fields in audit metadata.
    payload = {
        "access_token": "syt_secret",
        "voice_token": "lk-token",
        "nested": {"Authorization": "Bearer abc", "roles": ["space_moderator"]},
        "items": [{"client_secret": "x"}],
        "timeout_seconds": 60,
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["access_token"] == "[REDACTED]"
    assert sanitized["voice_token"] == "[REDACTED]"
    assert sanitized["nested"]["Authorization"] == "[REDACTED]"
    assert sanitized["nested"]["roles"] == ["space_moderator"]
    assert sanitized["items"][0]["client_secret"] == "[REDACTED]"
    assert sanitized["timeout_seconds"] == 60
