from __future__ import annotations

from functools import wraps

from flask import g, jsonify, request

from portal.config import settings
from portal.services.auth import authenticate


def extract_bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header.split(" ", 1)[1].strip()
    return None


def require_user(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        user = authenticate(
            extract_bearer_token(),
            settings.auth_jwt_secret,
            audience=settings.auth_jwt_audience,
        )
        if user is None:
            return jsonify({"error": "unauthorized"}), 401
        g.user = user
        return func(*args, **kwargs)

    return wrapper


__all__ = ["extract_bearer_token", "require_user"]
