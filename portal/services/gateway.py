from __future__ import annotations

import json
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import requests
import structlog
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_random_exponential

from portal.config import settings
from portal.metrics import gateway_errors, gateway_latency
from portal.services.security import sanitize_for_log


class GatewayError(Exception):
    def __init__(self, message: str, *, retryable: bool = False, status: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status = status
        self._sanitized = sanitize_for_log(message)

    def __str__(self) -> str:  # pragma: no cover - exercised via logging
        return self._sanitized


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, GatewayError) and exc.retryable


def to_decimal_units(amount_minor: int) -> float:
    """Convert minor units (centavos) into the decimal amount the gateway expects."""

    return float(Decimal(int(amount_minor)) / Decimal(100))


@dataclass(frozen=True)
class PayerInfo:
    email: str
    first_name: str
    last_name: str
    document: str
    document_type: str = "CPF"

    def to_payload(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "identification": {"type": self.document_type, "number": self.document},
        }


class PixIntent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    qr_code: str
    qr_code_base64: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def from_payment_body(cls, values: Any) -> Any:
        if not isinstance(values, dict) or "qr_code" in values:
            return values
        interaction = values.get("point_of_interaction")
        transaction_data = interaction.get("transaction_data") if isinstance(interaction, dict) else None
        if not isinstance(transaction_data, dict):
            transaction_data = {}
        return {
            "id": values.get("id"),
            "qr_code": transaction_data.get("qr_code"),
            "qr_code_base64": transaction_data.get("qr_code_base64"),
        }

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("qr_code")
    @classmethod
    def require_qr_code(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("PIX data not found in payment response")
        return value


class GatewayPayment(BaseModel):
    """Authoritative payment snapshot as returned by ``GET /v1/payments/{id}``."""

    model_config = ConfigDict(extra="ignore")

    id: str
    status: str
    status_detail: Optional[str] = None
    payment_method: Optional[str] = None
    payment_type: Optional[str] = None
    amount: Optional[float] = None
    metadata: dict[str, Any] = {}
    created_at: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def from_payment_body(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        normalized = dict(values)
        normalized.setdefault("payment_method", values.get("payment_method_id"))
        normalized.setdefault("payment_type", values.get("payment_type_id"))
        normalized.setdefault("amount", values.get("transaction_amount"))
        normalized.setdefault("created_at", values.get("date_created"))
        if not isinstance(normalized.get("metadata"), dict):
            normalized["metadata"] = {}
        return normalized

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("status")
    @classmethod
    def normalize_status(cls, value: str) -> str:
        cleaned = value.strip().lower()
        if not cleaned:
            raise ValueError("status is required")
        return cleaned

    @property
    def project_id(self) -> Optional[str]:
        raw = self.metadata.get("project_id")
        if raw is None:
            return None
        cleaned = str(raw).strip()
        return cleaned or None

    def details_snapshot(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "status_detail": self.status_detail,
            "payment_method": self.payment_method,
            "payment_type": self.payment_type,
            "transaction_amount": self.amount,
            "transaction_date": self.created_at,
        }


class MercadoPagoClient:
    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        self.access_token = access_token
        self.base_url = (base_url or settings.mercadopago_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self.logger = structlog.get_logger().bind(service="mercadopago")

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        start = time.time()
        try:
            response = requests.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers(idempotency_key),
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            gateway_errors.labels(operation=operation, retryable="true").inc()
            self.logger.warning(
                "gateway_request_failed",
                operation=operation,
                error=sanitize_for_log(str(exc)),
                retryable=True,
            )
            raise GatewayError("Network error", retryable=True) from exc
        finally:
            gateway_latency.labels(operation=operation).observe(time.time() - start)

        if response.status_code >= 500 or response.status_code == 429:
            gateway_errors.labels(operation=operation, retryable="true").inc()
            self.logger.error(
                "gateway_server_error",
                operation=operation,
                status=response.status_code,
                body=sanitize_for_log(response.text[:256]),
            )
            raise GatewayError(
                f"Server error: {response.status_code}",
                retryable=True,
                status=response.status_code,
            )
        if response.status_code >= 400:
            gateway_errors.labels(operation=operation, retryable="false").inc()
            self.logger.warning(
                "gateway_client_error",
                operation=operation,
                status=response.status_code,
                body=sanitize_for_log(response.text[:256]),
            )
            raise GatewayError(
                f"Client error: {response.status_code}",
                retryable=False,
                status=response.status_code,
            )

        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            gateway_errors.labels(operation=operation, retryable="false").inc()
            raise GatewayError("Invalid JSON from gateway", status=response.status_code) from exc
        if not isinstance(data, dict):
            raise GatewayError("Unexpected gateway response shape", status=response.status_code)
        return data

    @retry(
        stop=stop_after_attempt(settings.gateway_retry_attempts),
        wait=wait_random_exponential(multiplier=settings.gateway_retry_backoff_seconds, max=30),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    )
    def create_intent(
        self,
        amount_minor: int,
        payer: PayerInfo,
        metadata: dict[str, Any],
        idempotency_key: str,
        *,
        description: str | None = None,
        notification_url: str | None = None,
    ) -> PixIntent:
        body: dict[str, Any] = {
            "transaction_amount": to_decimal_units(amount_minor),
            "payment_method_id": "pix",
            "payer": payer.to_payload(),
            "notification_url": notification_url or settings.notification_url,
            "metadata": metadata,
        }
        if description:
            body["description"] = description
        data = self._request(
            "create_intent",
            "POST",
            "/v1/payments",
            payload=body,
            idempotency_key=idempotency_key,
        )
        try:
            intent = PixIntent.model_validate(data)
        except ValidationError as exc:
            raise GatewayError(f"Invalid PIX payload: {exc.error_count()} error(s)") from exc
        self.logger.info("gateway_intent_created", payment_id=intent.id)
        return intent

    @retry(
        stop=stop_after_attempt(settings.gateway_retry_attempts),
        wait=wait_random_exponential(multiplier=settings.gateway_retry_backoff_seconds, max=30),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    )
    def get_payment(self, payment_id: str) -> GatewayPayment:
        data = self._request("get_payment", "GET", f"/v1/payments/{payment_id}")
        try:
            payment = GatewayPayment.model_validate(data)
        except ValidationError as exc:
            raise GatewayError(f"Invalid payment payload: {exc.error_count()} error(s)") from exc
        return payment


__all__ = [
    "GatewayError",
    "GatewayPayment",
    "MercadoPagoClient",
    "PayerInfo",
    "PixIntent",
    "to_decimal_units",
]
