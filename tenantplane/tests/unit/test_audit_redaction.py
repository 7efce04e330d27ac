from __future__ import annotations

from tenantplane.services.audit import sanitize_metadata


def test_sanitize_metadata_redacts_sensitive_keys() -> None:
    payload = {
        "api_key": "secret",
        "nested": {"Authorization": "Bearer token", "safe": "ok"},
        "list": [{"password": "pw"}, {"value": "keep"}],
        "database_url": "postgresql://u:p@h/db",
        "retrieval_token": "abc",
        "image": "registry.fly.io/apps:tenant-1",
    }
    sanitized = sanitize_metadata(payload)

    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["nested"]["Authorization"] == "[REDACTED]"
    assert sanitized["nested"]["safe"] == "ok"
    assert sanitized["list"][0]["password"] == "[REDACTED]"
    assert sanitized["list"][1]["value"] == "keep"
    assert sanitized["database_url"] == "[REDACTED]"
    assert sanitized["retrieval_token"] == "[REDACTED]"
    assert sanitized["image"] == "registry.fly.io/apps:tenant-1"


def test_sanitize_metadata_leaves_scalars_untouched() -> None:
    assert sanitize_metadata("plain") == "plain"
    assert sanitize_metadata(3) == 3
    assert sanitize_metadata(None) is None
