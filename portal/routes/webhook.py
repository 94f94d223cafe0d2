from __future__ import annotations

import json
import time
import uuid
from typing import Any, Optional

import structlog
from flask import Blueprint, Response, current_app, g, jsonify, request
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from portal.config import settings
from portal.metrics import webhook_latency_seconds, webhook_received_counter
from portal.services.security import (
    extract_client_ip,
    is_ip_allowed,
    sanitize_for_log,
    validate_gateway_signature,
)

webhook_bp = Blueprint("webhook", __name__, url_prefix="/api/webhooks")

LOGGER = structlog.get_logger().bind(endpoint="webhook.mercadopago")
PAYLOAD_LOGGER = structlog.get_logger("webhook_payloads")

PAYMENT_ACTIONS = {"payment.created", "payment.updated"}


class PaymentNotification(BaseModel):
    """Gateway callback. Only ``data.id`` is trusted; status is always re-fetched."""

    model_config = ConfigDict(extra="allow")

    action: Optional[str] = None
    type: Optional[str] = None
    payment_id: str

    @model_validator(mode="before")
    @classmethod
    def from_payload_dict(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            raise ValueError("payload must be an object")
        if not values.get("action") and not values.get("type") and not values.get("topic"):
            raise ValueError("action or type is required")
        data = values.get("data")
        payment_id = data.get("id") if isinstance(data, dict) else None
        if payment_id is None:
            payment_id = values.get("resource") if values.get("topic") == "payment" else None
        return {
            **values,
            "type": values.get("type") or values.get("topic"),
            "payment_id": payment_id,
        }

    @field_validator("payment_id", mode="before")
    @classmethod
    def normalize_payment_id(cls, value: Any) -> str:
        if value is None or isinstance(value, bool):
            raise ValueError("data.id is required")
        cleaned = str(value).strip()
        if not cleaned:
            raise ValueError("data.id is required")
        return cleaned

    @property
    def is_payment_event(self) -> bool:
        if self.action:
            return self.action in PAYMENT_ACTIONS
        return self.type == "payment"


def _cors_headers(response: Response) -> Response:
    response.headers["Access-Control-Allow-Origin"] = settings.cors_allow_origin
    response.headers["Access-Control-Allow-Methods"] = "POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = (
        "Content-Type, Authorization, x-signature, x-request-id"
    )
    return response


def _reply(payload: dict[str, Any], status: int, label: str, start_time: float):
    webhook_received_counter.labels(status=label).inc()
    webhook_latency_seconds.observe(time.time() - start_time)
    response = jsonify(payload)
    response.status_code = status
    return _cors_headers(response)


@webhook_bp.route("/mercadopago", methods=["OPTIONS"])
def mercadopago_preflight() -> Response:
    return _cors_headers(jsonify({}))


@webhook_bp.post("/mercadopago", provide_automatic_options=False)
def mercadopago_webhook() -> Response:
    start_time = time.time()
    raw_body = request.get_data()
    raw_body_text = raw_body.decode("utf-8", errors="replace") if raw_body else ""
    headers = {key: sanitize_for_log(value) for key, value in request.headers.items()}
    client_ip = extract_client_ip(request.headers, request.remote_addr)

    PAYLOAD_LOGGER.info(
        "webhook_payload_received",
        remote_addr=client_ip,
        headers=headers,
        raw_body=raw_body_text,
    )

    signature = request.headers.get("x-signature")
    if settings.webhook_require_signature and not signature:
        LOGGER.warning("webhook_missing_signature", remote_addr=client_ip)
        return _reply({"error": "Missing signature"}, 401, "unauthorized", start_time)

    if not is_ip_allowed(client_ip, settings.webhook_allowed_ips):
        LOGGER.warning("webhook_invalid_source", remote_addr=client_ip)
        return _reply({"error": "Invalid source"}, 403, "forbidden", start_time)

    try:
        payload_dict = json.loads(raw_body_text or "{}")
    except json.JSONDecodeError as exc:
        PAYLOAD_LOGGER.info("webhook_payload_invalid_json", error=str(exc))
        return _reply({"error": "invalid payload"}, 400, "bad_request", start_time)

    try:
        notification = PaymentNotification.model_validate(payload_dict)
    except ValidationError as exc:
        PAYLOAD_LOGGER.info(
            "webhook_payload_validation_failed",
            error=str(exc),
            payload=payload_dict,
        )
        return _reply({"error": "invalid payload"}, 400, "bad_request", start_time)

    if settings.mercadopago_webhook_secret and not validate_gateway_signature(
        settings.mercadopago_webhook_secret,
        signature,
        request.args.get("data.id") or notification.payment_id,
        request.headers.get("x-request-id"),
        skew_seconds=settings.webhook_signature_skew_seconds,
    ):
        LOGGER.warning("webhook_invalid_signature", payment_id=notification.payment_id)
        return _reply({"error": "Invalid signature"}, 401, "unauthorized", start_time)

    if not notification.is_payment_event:
        LOGGER.info(
            "webhook_event_ignored",
            action=notification.action,
            type=notification.type,
        )
        return _reply({"status": "ignored"}, 200, "ignored", start_time)

    correlation_id = getattr(g, "correlation_id", None) or str(uuid.uuid4())
    try:
        current_app.reconciliation_queue.enqueue(  # type: ignore[attr-defined]
            notification.payment_id,
            correlation_id,
        )
    except Exception as exc:
        LOGGER.error(
            "webhook_enqueue_failed",
            payment_id=notification.payment_id,
            error=str(exc),
            exc_info=True,
        )
        return _reply({"error": "Internal server error"}, 500, "error", start_time)

    LOGGER.info(
        "webhook_accepted",
        payment_id=notification.payment_id,
        action=notification.action,
        type=notification.type,
    )
    return _reply({"status": "processing"}, 200, "accepted", start_time)


__all__ = ["PaymentNotification", "webhook_bp"]
