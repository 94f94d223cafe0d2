from __future__ import annotations

from typing import Any, Optional

import structlog
from flask import Blueprint, current_app, g, jsonify, request
from pydantic import BaseModel, ConfigDict, ValidationError

from portal.routes.auth_guard import require_user
from portal.services.checkout import CheckoutError, CheckoutService, CustomerForm
from portal.services.rate_limit import RateLimiter
from portal.services.security import extract_client_ip

bp = Blueprint("checkout", __name__, url_prefix="/api")

LOGGER = structlog.get_logger().bind(endpoint="checkout")


class CreateProjectRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plan: str
    products: list[str]
    formData: CustomerForm
    customizations: Optional[dict[str, Any]] = None


class CreatePaymentRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    project_id: str
    plan: str
    products: list[str]
    formData: CustomerForm


def _checkout_service() -> CheckoutService:
    return current_app.checkout_service  # type: ignore[attr-defined]


def _rate_limited(scope: str) -> bool:
    redis_client = getattr(current_app, "redis", None)
    if redis_client is None:
        return False
    ip = extract_client_ip(request.headers, request.remote_addr) or "unknown"
    try:
        return not RateLimiter(redis_client).check_ip(scope, ip)
    except Exception as exc:
        LOGGER.warning("rate_limit_unavailable", scope=scope, error=str(exc))
        return False


def _validation_error(exc: ValidationError):
    fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
    return jsonify({"error": "invalid_request", "fields": fields}), 400


@bp.post("/create-project")
@require_user
def create_project():
    if _rate_limited("create_project"):
        return jsonify({"error": "too_many_requests"}), 429
    try:
        body = CreateProjectRequest.model_validate(request.get_json(silent=True) or {})
    except ValidationError as exc:
        return _validation_error(exc)

    try:
        project = _checkout_service().create_project(
            g.user.id,
            body.plan,
            body.products,
            body.formData,
            body.customizations,
        )
    except CheckoutError as exc:
        return jsonify({"error": exc.code}), exc.status_code
    except Exception as exc:
        LOGGER.error("create_project_failed", error=str(exc), exc_info=True)
        return jsonify({"error": "Failed to create project"}), 500
    return jsonify({"project_id": project.id})


@bp.post("/create-payment")
@require_user
def create_payment():
    if _rate_limited("create_payment"):
        return jsonify({"error": "too_many_requests"}), 429
    try:
        body = CreatePaymentRequest.model_validate(request.get_json(silent=True) or {})
    except ValidationError as exc:
        return _validation_error(exc)

    try:
        result = _checkout_service().create_payment(
            g.user.id,
            body.project_id,
            body.plan,
            body.products,
            body.formData,
        )
    except CheckoutError as exc:
        if exc.code == "payment_creation_failed":
            return jsonify({"error": "Failed to create payment"}), exc.status_code
        return jsonify({"error": exc.code}), exc.status_code
    except Exception as exc:
        LOGGER.error("create_payment_failed", project_id=body.project_id, error=str(exc), exc_info=True)
        return jsonify({"error": "Failed to create payment"}), 500
    return jsonify(result)


@bp.get("/projects/<project_id>/status")
@require_user
def project_status(project_id: str):
    project = _checkout_service().projects.get_for_user(project_id, g.user.id)
    if project is None:
        return jsonify({"error": "project_not_found"}), 404
    return jsonify(
        {
            "project_id": project.id,
            "status": project.status,
            "payment_status": project.payment_status,
        }
    )


__all__ = ["bp"]
