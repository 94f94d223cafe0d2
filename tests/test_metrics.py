from __future__ import annotations

import json
import re

from flask import Flask

from portal.config import settings
from tests.conftest import make_project

PREFIX = settings.metrics_namespace


def _get_metric_value(body: str, metric: str, labels: dict[str, str] | None = None) -> float:
    if labels:
        parts = ",".join(f'{key}="{labels[key]}"' for key in sorted(labels))
        metric = f"{metric}{{{parts}}}"
    pattern = rf"^{re.escape(metric)} ([0-9eE+\-.]+)$"
    match = re.search(pattern, body, re.MULTILINE)
    if not match:
        return 0.0
    return float(match.group(1))


def test_metrics_endpoint_tracks_webhooks_and_reconciliation(app: Flask, client, gateway) -> None:
    make_project(app)
    gateway.set_payment("pay_1", "approved")

    baseline = client.get("/metrics").data.decode()
    base_accepted = _get_metric_value(baseline, f"{PREFIX}_webhook_received_total", {"status": "accepted"})
    base_transitioned = _get_metric_value(
        baseline, f"{PREFIX}_reconciliation_outcomes_total", {"outcome": "transitioned"}
    )
    base_edge = _get_metric_value(
        baseline,
        f"{PREFIX}_project_transitions_total",
        {"from_status": "pending", "to_status": "in_progress"},
    )

    client.post(
        "/api/webhooks/mercadopago",
        data=json.dumps({"action": "payment.updated", "data": {"id": "pay_1"}}),
        headers={"x-signature": "ts=1,v1=abc"},
        content_type="application/json",
    )
    queued = client.get("/metrics").data.decode()
    assert _get_metric_value(queued, f"{PREFIX}_queue_size", {"queue": settings.queue_name}) == 1.0

    app.task_queue.drain()  # type: ignore[attr-defined]
    body = client.get("/metrics").data.decode()

    assert _get_metric_value(body, f"{PREFIX}_webhook_received_total", {"status": "accepted"}) == base_accepted + 1
    assert (
        _get_metric_value(body, f"{PREFIX}_reconciliation_outcomes_total", {"outcome": "transitioned"})
        == base_transitioned + 1
    )
    assert (
        _get_metric_value(
            body,
            f"{PREFIX}_project_transitions_total",
            {"from_status": "pending", "to_status": "in_progress"},
        )
        == base_edge + 1
    )
    assert _get_metric_value(body, f"{PREFIX}_queue_size", {"queue": settings.queue_name}) == 0.0
