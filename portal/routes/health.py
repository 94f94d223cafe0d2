from __future__ import annotations

import time
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify
from rq.worker import Worker
from sqlalchemy import text

from portal.config import settings
from portal.metrics import healthcheck_failures_total
from portal.services.security import sanitize_for_log

health_bp = Blueprint("health", __name__)


def _error(exc: Exception) -> dict[str, object]:
    return {"status": "error", "latency_ms": None, "error": sanitize_for_log(str(exc))}


def _queue_backlog(app) -> dict[str, object]:
    """Reconciliation depth and dead-letter backlog; reported without affecting the HTTP status."""

    try:
        backlog = app.reconciliation_queue.backlog()
    except Exception as exc:
        healthcheck_failures_total.labels(component="queues").inc()
        return {"status": "error", "error": sanitize_for_log(str(exc))}

    dead_letters = backlog.get(settings.dead_letter_queue_name, 0)
    # Dead-lettered payloads only leave through a manual replay.
    needs_replay = dead_letters > settings.dead_letter_alert_threshold
    return {
        "status": "attention" if needs_replay else "ok",
        "reconciliation_depth": backlog.get(settings.queue_name, 0),
        "dead_letter_backlog": dead_letters,
    }


@health_bp.get("/healthz")
def healthcheck():
    app = current_app
    dependencies: dict[str, dict[str, object]] = {}
    http_status = 200

    db_start = time.perf_counter()
    try:
        with app.db_engine.connect() as conn:  # type: ignore[attr-defined]
            conn.execute(text("SELECT 1"))
        db_latency = round((time.perf_counter() - db_start) * 1000, 2)
        dependencies["postgres"] = {"status": "ok", "latency_ms": db_latency}
    except Exception as exc:
        http_status = 503
        dependencies["postgres"] = _error(exc)
        healthcheck_failures_total.labels(component="postgres").inc()

    redis_start = time.perf_counter()
    try:
        app.redis.ping()  # type: ignore[attr-defined]
        redis_latency = round((time.perf_counter() - redis_start) * 1000, 2)
        dependencies["redis"] = {"status": "ok", "latency_ms": redis_latency}
    except Exception as exc:
        http_status = 503
        dependencies["redis"] = _error(exc)
        healthcheck_failures_total.labels(component="redis").inc()

    # Sem worker, webhooks são aceitos mas nunca reconciliados.
    worker_start = time.perf_counter()
    try:
        redis_client = app.redis  # type: ignore[attr-defined]
        worker_keys = redis_client.smembers(Worker.redis_workers_keys)
        active_workers = 0
        now = datetime.now(timezone.utc)
        for worker_key in worker_keys:
            info = redis_client.hgetall(worker_key) or {}
            heartbeat_raw = info.get("last_heartbeat")
            if heartbeat_raw:
                try:
                    last_heartbeat = datetime.fromisoformat(heartbeat_raw)
                    if (now - last_heartbeat).total_seconds() > 180:
                        continue
                except ValueError:
                    pass
            ttl = redis_client.ttl(worker_key)
            if ttl is not None and ttl == 0:
                continue
            active_workers += 1
        if active_workers == 0:
            raise RuntimeError("Nenhum worker RQ ativo")
        dependencies["rq_worker"] = {
            "status": "ok",
            "latency_ms": round((time.perf_counter() - worker_start) * 1000, 2),
            "workers": active_workers,
        }
    except Exception as exc:
        http_status = 503
        dependencies["rq_worker"] = _error(exc)
        healthcheck_failures_total.labels(component="rq_worker").inc()

    payload = {
        "status": "ok" if http_status == 200 else "degraded",
        "dependencies": dependencies,
        "queues": _queue_backlog(app),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return jsonify(payload), http_status
