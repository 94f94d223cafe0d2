from __future__ import annotations

import uuid
from typing import Any

import structlog
from redis import Redis
from rq import Queue, Retry, get_current_job
from rq.job import Job

from portal.config import settings
from portal.metrics import reconciliation_outcomes_total


def _queue_size(queue: Queue) -> int:
    # rq exposes count as a property; doubles may expose a method.
    count = getattr(queue, "count", 0)
    return int(count() if callable(count) else count or 0)


def _retry_policy() -> Retry | None:
    delays = list(settings.rq_retry_delays)
    max_retries = max(settings.rq_retry_max_attempts, 0)
    if max_retries <= 0:
        return None
    if delays:
        return Retry(max=max_retries, interval=delays)
    return Retry(max=max_retries)


class ReconciliationQueue:
    """Submits payment reconciliations to RQ and owns their dead-letter channel."""

    def __init__(self, queue: Queue, dead_letter_queue: Queue) -> None:
        self.queue = queue
        self.dead_letter_queue = dead_letter_queue
        self.logger = structlog.get_logger().bind(service="reconciliation_queue")

    def enqueue(self, payment_id: str, correlation_id: str, *, source: str = "webhook") -> str:
        enqueue_kwargs: dict[str, Any] = {}
        retry = _retry_policy()
        if retry:
            enqueue_kwargs["retry"] = retry
        job = self.queue.enqueue(
            reconcile_payment_job,
            payment_id,
            correlation_id,
            job_timeout=settings.reconcile_job_timeout,
            meta={
                "payment_id": payment_id,
                "correlation_id": correlation_id,
                "source": source,
            },
            **enqueue_kwargs,
        )
        job_id = getattr(job, "id", None) or str(uuid.uuid4())
        self.logger.info(
            "reconciliation_enqueued",
            payment_id=payment_id,
            job_id=job_id,
            source=source,
        )
        return job_id

    def backlog(self) -> dict[str, int]:
        """Pending reconciliations and dead-lettered payloads, keyed by queue name."""

        return {
            settings.queue_name: _queue_size(self.queue),
            settings.dead_letter_queue_name: _queue_size(self.dead_letter_queue),
        }

    def send_to_dead_letter(
        self,
        payload: dict[str, object],
        failure_reason: str | None = None,
        original_job_id: str | None = None,
        attempt: int | None = None,
    ) -> str:
        job = self.dead_letter_queue.enqueue(
            store_dead_letter_message,
            payload,
            failure_reason,
            meta={
                "payload": payload,
                "failure_reason": failure_reason,
                "original_job_id": original_job_id,
                "attempt": attempt,
            },
            job_timeout=settings.dead_letter_job_timeout,
            result_ttl=settings.dead_letter_result_ttl,
        )
        return getattr(job, "id", str(uuid.uuid4()))


def reconcile_payment_job(payment_id: str, correlation_id: str) -> dict[str, object]:
    from flask import current_app

    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    logger = structlog.get_logger().bind(task="reconcile_payment", payment_id=payment_id)
    reconciler = current_app.reconciler  # type: ignore[attr-defined]

    job = get_current_job()
    attempt = 1
    if job is not None:
        attempt = int(job.meta.get("attempt", 0)) + 1
        job.meta["attempt"] = attempt
        job.save_meta()

    logger.info("reconciliation_started", attempt=attempt)
    try:
        result = reconciler.reconcile(payment_id)
    except Exception as exc:
        reconciliation_outcomes_total.labels(outcome="failed").inc()
        logger.error("reconciliation_failed", attempt=attempt, error=str(exc), exc_info=True)
        reconciler.record_event(
            payment_id,
            "failed",
            detail={"error": str(exc), "attempt": attempt, "error_type": type(exc).__name__},
        )
        final_attempt = job is None or not getattr(job, "retries_left", None)
        if final_attempt and not (job is not None and job.meta.get("sent_to_dead_letter")):
            reconciliation_queue = current_app.reconciliation_queue  # type: ignore[attr-defined]
            dead_letter_id = reconciliation_queue.send_to_dead_letter(
                {"payment_id": payment_id, "correlation_id": correlation_id},
                str(exc),
                getattr(job, "id", None) if job is not None else None,
                attempt,
            )
            logger.warning("dead_letter_enqueued", dead_letter_job_id=dead_letter_id)
            if job is not None:
                job.meta["sent_to_dead_letter"] = True
                job.save_meta()
        raise

    logger.info(
        "reconciliation_finished",
        outcome=result.outcome,
        project_id=result.project_id,
        new_status=result.new_status,
        tasks_created=result.tasks_created,
    )
    return {
        "outcome": result.outcome,
        "payment_id": result.payment_id,
        "project_id": result.project_id,
        "previous_status": result.previous_status,
        "new_status": result.new_status,
        "tasks_created": result.tasks_created,
    }


def store_dead_letter_message(
    payload: dict[str, object], failure_reason: str | None = None
) -> dict[str, object]:
    logger = structlog.get_logger().bind(task="store_dead_letter", **payload)
    logger.warning("dead_letter_recorded", failure_reason=failure_reason)
    return payload


def requeue_dead_letter_job(redis_client: Redis, job_id: str) -> bool:
    """Reenvia manualmente uma reconciliação da fila de dead-letter para a fila principal."""

    try:
        job = Job.fetch(job_id, connection=redis_client)
    except Exception:
        return False

    payload: dict[str, object] | None = job.meta.get("payload") if job.meta else None
    if not payload and job.args:
        candidate = job.args[0]
        if isinstance(candidate, dict):
            payload = candidate

    if not payload or job.origin != settings.dead_letter_queue_name:
        return False

    payment_id = payload.get("payment_id")
    if not payment_id:
        return False
    correlation_id = str(payload.get("correlation_id") or uuid.uuid4())

    queue = Queue(settings.queue_name, connection=redis_client)
    queue.enqueue(
        reconcile_payment_job,
        str(payment_id),
        correlation_id,
        job_timeout=settings.reconcile_job_timeout,
        meta={
            "payment_id": str(payment_id),
            "correlation_id": correlation_id,
            "source": "dead_letter",
            "reprocessed_from_dead_letter": True,
        },
    )
    job.delete()
    return True


__all__ = [
    "ReconciliationQueue",
    "reconcile_payment_job",
    "requeue_dead_letter_job",
    "store_dead_letter_message",
]
