from __future__ import annotations

import hmac
import time
from hashlib import sha256

from portal.services.security import (
    build_signature_manifest,
    extract_client_ip,
    is_ip_allowed,
    only_digits,
    parse_signature_header,
    sanitize_for_log,
    validate_gateway_signature,
)

SECRET = "webhook-secret"


def _signature(data_id: str, request_id: str | None, ts: str, secret: str = SECRET) -> str:
    manifest = build_signature_manifest(data_id, request_id, ts)
    digest = hmac.new(secret.encode(), manifest.encode(), sha256).hexdigest()
    return f"ts={ts},v1={digest}"


def test_parse_signature_header_ignores_garbage():
    assert parse_signature_header("ts=1700000000, v1=abc,broken") == {"ts": "1700000000", "v1": "abc"}
    assert parse_signature_header(None) == {}


def test_manifest_omits_missing_request_id():
    assert build_signature_manifest("ABC123", "req-1", "10") == "id:abc123;request-id:req-1;ts:10;"
    assert build_signature_manifest("123", None, "10") == "id:123;ts:10;"


def test_validate_gateway_signature_valid():
    header = _signature("123456", "req-1", "1700000000")
    assert validate_gateway_signature(SECRET, header, "123456", "req-1")


def test_validate_gateway_signature_rejects_tampering():
    header = _signature("123456", "req-1", "1700000000")
    assert not validate_gateway_signature(SECRET, header, "999999", "req-1")
    assert not validate_gateway_signature(SECRET, header, "123456", "req-2")
    assert not validate_gateway_signature("other-secret", header, "123456", "req-1")
    assert not validate_gateway_signature(SECRET, "ts=1700000000", "123456", "req-1")
    assert not validate_gateway_signature(SECRET, None, "123456", "req-1")


def test_validate_gateway_signature_skew_window(monkeypatch):
    ts = 1_700_000_000
    header = _signature("123456", None, str(ts))
    monkeypatch.setattr(time, "time", lambda: ts + 30)
    assert validate_gateway_signature(SECRET, header, "123456", None, skew_seconds=60)
    monkeypatch.setattr(time, "time", lambda: ts + 600)
    assert not validate_gateway_signature(SECRET, header, "123456", None, skew_seconds=60)


def test_extract_client_ip_prefers_forwarded_for():
    headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "X-Real-IP": "10.0.0.2"}
    assert extract_client_ip(headers, "127.0.0.1") == "203.0.113.7"
    assert extract_client_ip({"X-Real-IP": "10.0.0.2"}, "127.0.0.1") == "10.0.0.2"
    assert extract_client_ip({}, "127.0.0.1") == "127.0.0.1"


def test_is_ip_allowed_supports_cidr_and_empty_list():
    assert is_ip_allowed("1.2.3.4", [])
    assert is_ip_allowed("54.88.218.97", ["54.88.218.97"])
    assert is_ip_allowed("34.195.33.10", ["34.195.33.0/24"])
    assert not is_ip_allowed("8.8.8.8", ["34.195.33.0/24"])
    assert not is_ip_allowed(None, ["34.195.33.0/24"])
    assert not is_ip_allowed("not-an-ip", ["34.195.33.0/24"])


def test_sanitize_for_log_masks_tokens():
    sanitized = sanitize_for_log("Authorization: Bearer APP_USR-123 access_token=abc")
    assert "APP_USR-123" not in sanitized
    assert "abc" not in sanitized


def test_only_digits():
    assert only_digits("123.456.789-09") == "12345678909"
    assert only_digits(None) == ""
