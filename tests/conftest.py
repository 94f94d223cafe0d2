from __future__ import annotations

from datetime import datetime
from typing import Any, Generator

import pytest
from flask import Flask

import portal as portal_init
from portal import get_db_session, init_app
from portal.config import settings as config_settings
from portal.models import Notification, Profile, Project, ProjectTask
from portal.models.base import Base
from portal.services.auth import encode_access_token
from portal.services.gateway import GatewayError, GatewayPayment, PayerInfo, PixIntent

OWNER_ID = "user-1"
ADMIN_IDS = ("admin-1", "admin-2")


class DummyRedis:
    def __init__(self):
        self.storage: dict[str, Any] = {}
        self.zsets: dict[str, list[float]] = {}
        self.sets: dict[str, set[str]] = {}
        self.hashes: dict[str, dict[str, Any]] = {}
        self.expiry: dict[str, int] = {}

    @staticmethod
    def from_url(url: str, decode_responses: bool = True):  # type: ignore[override]
        return DummyRedis()

    def pipeline(self):
        redis = self

        class Pipeline:
            def __init__(self) -> None:
                self._zcard_count = 0

            def zremrangebyscore(self, key, _min, _max):
                scores = redis.zsets.get(key, [])
                redis.zsets[key] = [score for score in scores if not (_min <= score <= _max)]
                return self

            def zadd(self, key, mapping: dict[str, float]):
                scores = redis.zsets.setdefault(key, [])
                scores.extend(mapping.values())
                return self

            def zcard(self, key):
                self._zcard_count = len(redis.zsets.get(key, []))
                return self

            def expire(self, key, ttl):
                return self

            def execute(self):
                return [None, None, self._zcard_count, None]

        return Pipeline()

    def ping(self):
        return True

    def get(self, key: str):
        return self.storage.get(key)

    def set(self, key: str, value: str):
        self.storage[key] = value

    def delete(self, key: str):
        self.storage.pop(key, None)
        self.hashes.pop(key, None)
        self.sets.pop(key, None)
        self.expiry.pop(key, None)

    def expire(self, key: str, ttl: int):
        self.expiry[key] = ttl
        return True

    def ttl(self, key: str):
        if key in self.expiry:
            return self.expiry[key]
        if key in self.hashes or key in self.sets or key in self.storage:
            return 60
        return -2

    def smembers(self, key: str):
        return set(self.sets.get(key, set()))

    def sadd(self, key: str, *values: str):
        members = self.sets.setdefault(key, set())
        members.update(values)

    def hset(self, key: str, mapping: dict[str, Any]):
        data = self.hashes.setdefault(key, {})
        data.update(mapping)

    def hgetall(self, key: str):
        return dict(self.hashes.get(key, {}))


class DummyQueue:
    def __init__(self, *args, **kwargs):
        self.name = args[0] if args else kwargs.get("name", "default")
        self.enqueued: list[tuple[Any, tuple[Any, ...], dict[str, Any]]] = []

    def enqueue(self, *args, **kwargs):
        func = args[0]
        job_args = args[1:]
        self.enqueued.append((func, job_args, kwargs))

        class _Job:
            def __init__(self, job_id: int, meta: dict[str, Any]):
                self.id = str(job_id)
                self.meta = meta

        return _Job(len(self.enqueued), kwargs.get("meta", {}))

    def count(self):
        return len(self.enqueued)

    def drain(self) -> list[Any]:
        """Run queued jobs synchronously, like a burst worker would."""

        results = []
        while self.enqueued:
            func, job_args, _kwargs = self.enqueued.pop(0)
            results.append(func(*job_args))
        return results


class FakeGateway:
    """In-memory stand-in for the Mercado Pago client, parsing through the real models."""

    def __init__(self) -> None:
        self.payments: dict[str, dict[str, Any]] = {}
        self.fetch_calls: list[str] = []
        self.intents: list[dict[str, Any]] = []
        self.create_error: GatewayError | None = None
        self.fetch_error: GatewayError | None = None

    def set_payment(
        self,
        payment_id: str,
        status: str,
        project_id: str | None = "proj_1",
        **extra: Any,
    ) -> None:
        metadata = {"project_id": project_id} if project_id is not None else {}
        self.payments[payment_id] = {
            "id": payment_id,
            "status": status,
            "status_detail": extra.pop("status_detail", "accredited" if status == "approved" else None),
            "payment_method_id": "pix",
            "payment_type_id": "bank_transfer",
            "transaction_amount": extra.pop("transaction_amount", 4997.0),
            "date_created": extra.pop("date_created", "2026-10-18T10:00:00.000-03:00"),
            "metadata": metadata,
            **extra,
        }

    def get_payment(self, payment_id: str) -> GatewayPayment:
        self.fetch_calls.append(payment_id)
        if self.fetch_error is not None:
            raise self.fetch_error
        raw = self.payments.get(payment_id)
        if raw is None:
            raise GatewayError("Client error: 404", status=404)
        return GatewayPayment.model_validate(raw)

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
        if self.create_error is not None:
            raise self.create_error
        payment_id = f"pay_{len(self.intents) + 1}"
        self.intents.append(
            {
                "id": payment_id,
                "amount_minor": amount_minor,
                "payer": payer,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
                "description": description,
                "notification_url": notification_url,
            }
        )
        return PixIntent.model_validate(
            {
                "id": payment_id,
                "point_of_interaction": {
                    "transaction_data": {
                        "qr_code": f"00020126pix-{payment_id}",
                        "qr_code_base64": "iVBORw0KGgo=",
                    }
                },
            }
        )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def app(monkeypatch, gateway) -> Generator[Flask, None, None]:
    monkeypatch.setattr(portal_init, "Redis", DummyRedis)
    monkeypatch.setattr(portal_init, "Queue", DummyQueue)
    monkeypatch.setattr(config_settings, "database_url", "sqlite+pysqlite:///:memory:")
    monkeypatch.setattr(config_settings, "auth_jwt_secret", "test-secret")
    monkeypatch.setattr(config_settings, "auth_jwt_audience", "authenticated")
    monkeypatch.setattr(config_settings, "payment_sync_enabled", False)
    monkeypatch.setattr(config_settings, "mercadopago_webhook_secret", None)
    monkeypatch.setattr(config_settings, "webhook_allowed_ips", [])
    monkeypatch.setattr(config_settings, "webhook_require_signature", True)
    monkeypatch.setattr(config_settings, "checkout_rate_limit", 100)
    test_app = init_app(gateway=gateway)  # type: ignore[arg-type]
    Base.metadata.create_all(test_app.db_engine)  # type: ignore[attr-defined]
    with test_app.app_context():
        with get_db_session(test_app) as session:
            session.add(
                Profile(
                    id=OWNER_ID,
                    full_name="Maria Silva",
                    email="maria@example.com",
                    document="123.456.789-09",
                )
            )
            for admin_id in ADMIN_IDS:
                session.add(Profile(id=admin_id, full_name=f"Admin {admin_id}", is_admin=True))
        yield test_app


@pytest.fixture
def client(app: Flask):
    return app.test_client()


@pytest.fixture
def auth_headers():
    def _build(user_id: str = OWNER_ID) -> dict[str, str]:
        token = encode_access_token(
            user_id,
            config_settings.auth_jwt_secret,
            3600,
            audience=config_settings.auth_jwt_audience,
        )
        return {"Authorization": f"Bearer {token}"}

    return _build


def make_project(
    app: Flask,
    project_id: str = "proj_1",
    *,
    user_id: str = OWNER_ID,
    status: str = "pending",
    payment_status: str | None = "pending",
    payment_id: str | None = None,
    plan: str = "Básico",
    created_at: datetime | None = None,
) -> str:
    with get_db_session(app) as session:
        session.add(
            Project(
                id=project_id,
                user_id=user_id,
                name=f"Site - {plan}",
                description=f"Projeto {plan} incluindo: Site",
                status=status,
                plan=plan,
                products=["Site"],
                payment_status=payment_status,
                payment_id=payment_id,
                created_at=created_at or datetime.utcnow(),
            )
        )
    return project_id


def load_project(app: Flask, project_id: str = "proj_1") -> Project:
    session = app.db_session()  # type: ignore[attr-defined]
    try:
        project = session.get(Project, project_id)
        session.expunge_all()
        return project
    finally:
        session.close()


def count_tasks(app: Flask, project_id: str = "proj_1") -> int:
    session = app.db_session()  # type: ignore[attr-defined]
    try:
        return session.query(ProjectTask).filter(ProjectTask.project_id == project_id).count()
    finally:
        session.close()


def notifications_for(app: Flask, user_id: str, type: str | None = None) -> list[Notification]:
    session = app.db_session()  # type: ignore[attr-defined]
    try:
        query = session.query(Notification).filter(Notification.user_id == user_id)
        if type is not None:
            query = query.filter(Notification.type == type)
        rows = query.order_by(Notification.id.asc()).all()
        session.expunge_all()
        return rows
    finally:
        session.close()
