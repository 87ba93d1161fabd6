from __future__ import annotations

from trustplane.services.audit import build_audit_entry, sanitize_metadata


def test_sanitize_metadata_redacts_nested_secrets() -> None:
    payload = {
        "api_key": "tpgw_gw_secret",
        "nested": {"Authorization": "Bearer abc", "policyId": "p-1"},
        "items": [{"password": "hunter2"}, {"country": "US"}],
        "gatewayToken": "x",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["nested"]["Authorization"] == "[REDACTED]"
    assert sanitized["nested"]["policyId"] == "p-1"
    assert sanitized["items"][0]["password"] == "[REDACTED]"
    assert sanitized["items"][1]["country"] == "US"
    assert sanitized["gatewayToken"] == "[REDACTED]"


def test_build_audit_entry_sanitizes_details() -> None:
    entry = build_audit_entry(
        org_id="org-1",
        action="GATEWAY_REGISTERED",
        details={"gatewayId": "gw", "secret": "s3cr3t"},
    )
    assert entry.details == {"gatewayId": "gw", "secret": "[REDACTED]"}
    assert entry.org_id == "org-1"
