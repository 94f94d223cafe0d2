from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Callable

import structlog

from portal.config import settings
from portal.services.jobs import ReconciliationQueue
from portal.services.projects import ProjectRepository


class PaymentSyncService:
    """Re-enqueue reconciliation for projects whose webhook never arrived."""

    def __init__(
        self,
        projects: ProjectRepository,
        reconciliation_queue: ReconciliationQueue,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.projects = projects
        self.reconciliation_queue = reconciliation_queue
        self.clock = clock
        self.logger = structlog.get_logger().bind(service="payment_sync")

    def sync_pending_payments(self) -> dict[str, object]:
        now = self.clock()
        created_before = now - timedelta(minutes=settings.payment_sync_min_age_minutes)
        created_after = now - timedelta(hours=settings.payment_sync_max_age_hours)
        unsettled = self.projects.list_unsettled(
            created_before=created_before,
            created_after=created_after,
        )
        correlation_id = f"payment-sync-{uuid.uuid4()}"
        enqueued: list[str] = []
        for project_id, payment_id in unsettled:
            try:
                self.reconciliation_queue.enqueue(payment_id, correlation_id, source="payment_sync")
                enqueued.append(payment_id)
            except Exception as exc:
                self.logger.error(
                    "payment_sync_enqueue_failed",
                    project_id=project_id,
                    payment_id=payment_id,
                    error=str(exc),
                )
        self.logger.info(
            "payment_sync_finished",
            candidates=len(unsettled),
            enqueued=len(enqueued),
            correlation_id=correlation_id,
        )
        return {"candidates": len(unsettled), "enqueued": enqueued}


__all__ = ["PaymentSyncService"]
