from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional


class InvalidTokenError(Exception):
    """Token de acesso inválido, expirado ou emitido para outro público."""


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: Optional[str] = None
    claims: Optional[Dict[str, Any]] = None


def _urlsafe_b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _urlsafe_b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(message: bytes, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()


def encode_access_token(
    user_id: str,
    secret: str,
    expires_in: int,
    *,
    audience: str | None = None,
    extra: Dict[str, Any] | None = None,
) -> str:
    """Issue an HS256 token shaped like the identity provider's access tokens."""

    header = {"alg": "HS256", "typ": "JWT"}
    now = int(time.time())
    body: Dict[str, Any] = dict(extra or {})
    body["sub"] = user_id
    body.setdefault("iat", now)
    body["exp"] = now + int(expires_in)
    if audience:
        body["aud"] = audience

    header_segment = _urlsafe_b64encode(json.dumps(header, separators=(",", ":")).encode("utf-8"))
    payload_segment = _urlsafe_b64encode(json.dumps(body, separators=(",", ":")).encode("utf-8"))
    signing_input = f"{header_segment}.{payload_segment}".encode("ascii")
    signature = _urlsafe_b64encode(_sign(signing_input, secret))
    return f"{header_segment}.{payload_segment}.{signature}"


def decode_access_token(token: str, secret: str, *, audience: str | None = None) -> AuthenticatedUser:
    try:
        header_segment, payload_segment, signature_segment = token.split(".")
    except ValueError as exc:
        raise InvalidTokenError("invalid_token_format") from exc

    try:
        header = json.loads(_urlsafe_b64decode(header_segment))
    except (ValueError, json.JSONDecodeError) as exc:
        raise InvalidTokenError("invalid_header") from exc
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        raise InvalidTokenError("unsupported_algorithm")

    signing_input = f"{header_segment}.{payload_segment}".encode("ascii")
    expected_signature = _urlsafe_b64encode(_sign(signing_input, secret))
    if not hmac.compare_digest(expected_signature, signature_segment):
        raise InvalidTokenError("invalid_signature")

    try:
        claims: Dict[str, Any] = json.loads(_urlsafe_b64decode(payload_segment))
    except (ValueError, json.JSONDecodeError) as exc:
        raise InvalidTokenError("invalid_payload") from exc

    exp = claims.get("exp")
    if exp is None or int(exp) < int(time.time()):
        raise InvalidTokenError("token_expired")

    if audience:
        token_audience = claims.get("aud")
        audiences = token_audience if isinstance(token_audience, list) else [token_audience]
        if audience not in audiences:
            raise InvalidTokenError("invalid_audience")

    subject = claims.get("sub")
    if not subject:
        raise InvalidTokenError("missing_subject")
    return AuthenticatedUser(id=str(subject), email=claims.get("email"), claims=claims)


def authenticate(token: Optional[str], secret: str, *, audience: str | None = None) -> Optional[AuthenticatedUser]:
    if not token:
        return None
    try:
        return decode_access_token(token, secret, audience=audience)
    except InvalidTokenError:
        return None


__all__ = [
    "AuthenticatedUser",
    "InvalidTokenError",
    "authenticate",
    "decode_access_token",
    "encode_access_token",
]
