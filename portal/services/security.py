from __future__ import annotations

import hmac
import ipaddress
import re
import time
from hashlib import sha256
from typing import Iterable, Mapping, Optional


def sanitize_for_log(value: str) -> str:
    if not value:
        return value

    sanitized = re.sub(r"Bearer\s+[A-Za-z0-9._\-]+", "Bearer ***", value, flags=re.IGNORECASE)
    sanitized = re.sub(
        r"(?i)(access[-_]?token|api[-_]?key|token|authorization)(\s*[:=]\s*)(['\"]?)[^'\"\s]+(['\"]?)",
        r"\1\2\3***\4",
        sanitized,
    )
    return sanitized


def parse_signature_header(header: Optional[str]) -> dict[str, str]:
    """Parse ``ts=...,v1=...`` into a dict; unknown fragments are ignored."""

    parts: dict[str, str] = {}
    if not header:
        return parts
    for fragment in header.split(","):
        key, sep, value = fragment.partition("=")
        if not sep:
            continue
        parts[key.strip().lower()] = value.strip()
    return parts


def build_signature_manifest(data_id: str, request_id: Optional[str], ts: str) -> str:
    manifest = f"id:{data_id.lower()};"
    if request_id:
        manifest += f"request-id:{request_id};"
    manifest += f"ts:{ts};"
    return manifest


def validate_gateway_signature(
    secret: str,
    header: Optional[str],
    data_id: str,
    request_id: Optional[str],
    *,
    skew_seconds: int = 0,
) -> bool:
    """Validate a Mercado Pago ``x-signature`` header.

    The gateway signs ``id:<data.id>;request-id:<x-request-id>;ts:<ts>;`` with
    HMAC-SHA256 and sends ``ts=<ts>,v1=<hexdigest>``. ``skew_seconds`` of zero
    disables the timestamp window.
    """

    if not secret or not header or not data_id:
        return False

    parts = parse_signature_header(header)
    ts = parts.get("ts")
    signature = parts.get("v1")
    if not ts or not signature:
        return False

    if skew_seconds > 0:
        try:
            ts_value = float(ts)
        except ValueError:
            return False
        # ts may come in milliseconds
        if ts_value > 1e12:
            ts_value /= 1000
        if abs(time.time() - ts_value) > skew_seconds:
            return False

    manifest = build_signature_manifest(data_id, request_id, ts)
    computed = hmac.new(secret.encode(), manifest.encode(), sha256).hexdigest()
    return hmac.compare_digest(signature, computed)


def extract_client_ip(headers: Mapping[str, str], remote_addr: Optional[str] = None) -> Optional[str]:
    forwarded = headers.get("X-Forwarded-For") or headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("X-Real-IP") or headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return remote_addr


def is_ip_allowed(ip: Optional[str], allowed: Iterable[str]) -> bool:
    """Check ``ip`` against literal addresses or CIDR ranges.

    An empty allow-list disables the check.
    """

    entries = [entry for entry in allowed if entry]
    if not entries:
        return True
    if not ip:
        return False
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    for entry in entries:
        try:
            if "/" in entry:
                if address in ipaddress.ip_network(entry, strict=False):
                    return True
            elif address == ipaddress.ip_address(entry):
                return True
        except ValueError:
            continue
    return False


def only_digits(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")


__all__ = [
    "sanitize_for_log",
    "parse_signature_header",
    "build_signature_manifest",
    "validate_gateway_signature",
    "extract_client_ip",
    "is_ip_allowed",
    "only_digits",
]
