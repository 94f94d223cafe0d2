from __future__ import annotations

from datetime import datetime, timedelta

from portal.services.payment_sync import PaymentSyncService
from tests.conftest import load_project, make_project

NOW = datetime(2026, 10, 18, 12, 0, 0)


def _service(app) -> PaymentSyncService:
    return PaymentSyncService(app.projects, app.reconciliation_queue, clock=lambda: NOW)


def test_sync_enqueues_only_old_pending_intents(app):
    make_project(app, "proj_old", payment_id="pay_old", created_at=NOW - timedelta(hours=2))
    make_project(app, "proj_fresh", payment_id="pay_fresh", created_at=NOW - timedelta(minutes=2))
    make_project(app, "proj_no_intent", created_at=NOW - timedelta(hours=2))
    make_project(app, "proj_expired", payment_id="pay_expired", created_at=NOW - timedelta(days=5))
    make_project(
        app,
        "proj_paid",
        status="in_progress",
        payment_status="approved",
        payment_id="pay_paid",
        created_at=NOW - timedelta(hours=2),
    )

    summary = _service(app).sync_pending_payments()

    assert summary == {"candidates": 1, "enqueued": ["pay_old"]}
    _func, args, kwargs = app.task_queue.enqueued[0]
    assert args[0] == "pay_old"
    assert kwargs["meta"]["source"] == "payment_sync"


def test_sync_recovers_missed_webhook(app, gateway):
    make_project(app, payment_id="pay_1", created_at=NOW - timedelta(hours=1))
    gateway.set_payment("pay_1", "approved")

    _service(app).sync_pending_payments()
    app.task_queue.drain()

    assert load_project(app).status == "in_progress"


def test_sync_continues_after_enqueue_failure(app, monkeypatch):
    make_project(app, "proj_a", payment_id="pay_a", created_at=NOW - timedelta(hours=3))
    make_project(app, "proj_b", payment_id="pay_b", created_at=NOW - timedelta(hours=2))
    original = app.reconciliation_queue.enqueue

    def flaky_enqueue(payment_id, correlation_id, *, source="webhook"):
        if payment_id == "pay_a":
            raise ConnectionError("redis down")
        return original(payment_id, correlation_id, source=source)

    monkeypatch.setattr(app.reconciliation_queue, "enqueue", flaky_enqueue)

    summary = _service(app).sync_pending_payments()

    assert summary == {"candidates": 2, "enqueued": ["pay_b"]}
