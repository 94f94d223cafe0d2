from __future__ import annotations

import json

import pytest
import requests

from portal.services.checkout import PLAN_CATALOG
from portal.services.gateway import GatewayError, MercadoPagoClient, PayerInfo, to_decimal_units

PAYER = PayerInfo(email="maria@example.com", first_name="Maria", last_name="Silva", document="12345678909")


class DummyResponse:
    def __init__(self, status_code: int, payload=None, text: str | None = None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload or {})

    def json(self):
        if self._payload is None:
            raise json.JSONDecodeError("no json", self.text, 0)
        return self._payload


def _pix_body(payment_id=123456789):
    return {
        "id": payment_id,
        "status": "pending",
        "point_of_interaction": {
            "transaction_data": {"qr_code": "00020126pix", "qr_code_base64": "iVBORw0KGgo="}
        },
    }


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("tenacity.nap.sleep", lambda *args, **kwargs: None)
    monkeypatch.setattr("time.sleep", lambda *args, **kwargs: None)


@pytest.fixture
def calls(monkeypatch):
    recorded: list[dict] = []
    responses: list = []

    def fake_request(method, url, headers=None, json=None, timeout=None):
        recorded.append({"method": method, "url": url, "headers": headers, "json": json, "timeout": timeout})
        response = responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(requests, "request", fake_request)
    return recorded, responses


@pytest.mark.parametrize("plan", sorted(PLAN_CATALOG))
def test_create_intent_sends_decimal_amount(calls, plan):
    recorded, responses = calls
    responses.append(DummyResponse(201, _pix_body()))
    client = MercadoPagoClient("token", "https://gateway.test")

    price = PLAN_CATALOG[plan].price_minor
    intent = client.create_intent(
        price,
        PAYER,
        {"project_id": "proj_1"},
        "idem-1",
        notification_url="https://portal.test/api/webhooks/mercadopago",
    )

    assert intent.id == "123456789"
    assert intent.qr_code == "00020126pix"
    body = recorded[0]["json"]
    assert body["transaction_amount"] == price / 100
    assert body["payment_method_id"] == "pix"
    assert body["metadata"] == {"project_id": "proj_1"}
    assert body["payer"]["identification"] == {"type": "CPF", "number": "12345678909"}
    assert body["notification_url"] == "https://portal.test/api/webhooks/mercadopago"
    assert recorded[0]["url"] == "https://gateway.test/v1/payments"
    assert recorded[0]["headers"]["X-Idempotency-Key"] == "idem-1"
    assert recorded[0]["headers"]["Authorization"] == "Bearer token"


def test_to_decimal_units_is_exact():
    assert to_decimal_units(499700) == 4997.0
    assert to_decimal_units(1999701) == 19997.01


def test_create_intent_retries_server_errors_with_same_key(calls):
    recorded, responses = calls
    responses.extend([DummyResponse(503, {"message": "unavailable"}), DummyResponse(201, _pix_body())])
    client = MercadoPagoClient("token", "https://gateway.test")

    intent = client.create_intent(499700, PAYER, {"project_id": "proj_1"}, "idem-1")

    assert intent.id == "123456789"
    assert len(recorded) == 2
    assert {call["headers"]["X-Idempotency-Key"] for call in recorded} == {"idem-1"}


def test_create_intent_does_not_retry_client_errors(calls):
    recorded, responses = calls
    responses.append(DummyResponse(400, {"message": "invalid payer"}))
    client = MercadoPagoClient("token", "https://gateway.test")

    with pytest.raises(GatewayError) as excinfo:
        client.create_intent(499700, PAYER, {}, "idem-1")

    assert excinfo.value.status == 400
    assert not excinfo.value.retryable
    assert len(recorded) == 1


def test_network_errors_are_retryable(calls):
    recorded, responses = calls
    responses.extend(
        [requests.ConnectionError("boom"), requests.Timeout("slow"), requests.ConnectionError("boom")]
    )
    client = MercadoPagoClient("token", "https://gateway.test")

    with pytest.raises(GatewayError) as excinfo:
        client.get_payment("123")

    assert excinfo.value.retryable
    assert len(recorded) == 3


def test_create_intent_without_pix_data_fails(calls):
    _recorded, responses = calls
    responses.append(DummyResponse(201, {"id": 1, "status": "pending"}))
    client = MercadoPagoClient("token", "https://gateway.test")

    with pytest.raises(GatewayError):
        client.create_intent(499700, PAYER, {}, "idem-1")


def test_get_payment_parses_authoritative_snapshot(calls):
    recorded, responses = calls
    responses.append(
        DummyResponse(
            200,
            {
                "id": 987654321,
                "status": "APPROVED",
                "status_detail": "accredited",
                "payment_method_id": "pix",
                "payment_type_id": "bank_transfer",
                "transaction_amount": 4997.0,
                "date_created": "2026-10-18T10:00:00.000-03:00",
                "metadata": {"project_id": " proj_1 ", "user_id": "user-1"},
            },
        )
    )
    client = MercadoPagoClient("token", "https://gateway.test")

    payment = client.get_payment("987654321")

    assert recorded[0]["method"] == "GET"
    assert recorded[0]["url"] == "https://gateway.test/v1/payments/987654321"
    assert payment.id == "987654321"
    assert payment.status == "approved"
    assert payment.project_id == "proj_1"
    assert payment.details_snapshot() == {
        "status": "approved",
        "status_detail": "accredited",
        "payment_method": "pix",
        "payment_type": "bank_transfer",
        "transaction_amount": 4997.0,
        "transaction_date": "2026-10-18T10:00:00.000-03:00",
    }


def test_get_payment_without_metadata_has_no_project(calls):
    _recorded, responses = calls
    responses.append(DummyResponse(200, {"id": "1", "status": "approved", "metadata": None}))
    client = MercadoPagoClient("token", "https://gateway.test")

    assert client.get_payment("1").project_id is None


def test_get_payment_rejects_missing_status(calls):
    _recorded, responses = calls
    responses.append(DummyResponse(200, {"id": "1"}))
    client = MercadoPagoClient("token", "https://gateway.test")

    with pytest.raises(GatewayError):
        client.get_payment("1")


def test_get_payment_invalid_json_is_not_retried(calls):
    recorded, responses = calls
    responses.append(DummyResponse(200, None, text="<html>"))
    client = MercadoPagoClient("token", "https://gateway.test")

    with pytest.raises(GatewayError):
        client.get_payment("1")
    assert len(recorded) == 1
