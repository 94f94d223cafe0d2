from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from sqlalchemy.orm import Session

from portal.metrics import (
    fanout_failures_total,
    project_transitions_total,
    reconciliation_latency_seconds,
    reconciliation_outcomes_total,
)
from portal.models import PaymentEvent
from portal.services.gateway import GatewayPayment, MercadoPagoClient
from portal.services.notifications import NotificationDispatcher
from portal.services.projects import ConcurrentUpdateError, ProjectRepository, ProjectSnapshot
from portal.services.task_templates import TaskTemplateGenerator

STATUS_MAP = {
    "approved": "in_progress",
    "pending": "pending",
    "in_process": "pending",
    "rejected": "cancelled",
    "cancelled": "cancelled",
    "refunded": "cancelled",
    "charged_back": "cancelled",
}

TERMINAL_STATUSES = frozenset({"in_progress", "cancelled", "completed"})

NOTIFICATION_COPY = {
    "approved": ("Pagamento Aprovado", "Seu pagamento foi aprovado.", "aprovado"),
    "pending": ("Pagamento Pendente", "Aguardando confirmação do pagamento.", "marcado como pendente"),
    "in_process": (
        "Pagamento em Processamento",
        "Seu pagamento está sendo processado.",
        "colocado em processamento",
    ),
    "rejected": ("Pagamento Rejeitado", "Houve um problema com seu pagamento.", "rejeitado"),
    "cancelled": ("Pagamento Cancelado", "Seu pagamento foi cancelado.", "cancelado"),
    "refunded": ("Pagamento Reembolsado", "Seu pagamento foi reembolsado.", "reembolsado"),
    "charged_back": ("Pagamento Contestado", "Seu pagamento foi contestado.", "contestado"),
}
_DEFAULT_COPY = (
    "Pagamento Atualizado",
    "O status do seu pagamento foi atualizado.",
    "atualizado",
)


def map_payment_status(payment_status: str | None) -> str:
    """Project status for a raw gateway status; unknown values stay ``pending``."""

    return STATUS_MAP.get((payment_status or "").strip().lower(), "pending")


def resolve_project_status(current_status: str, payment_status: str | None) -> str:
    """Terminal project states are absorbing: the first terminal state wins."""

    if current_status in TERMINAL_STATUSES:
        return current_status
    return map_payment_status(payment_status)


def is_stale_regression(current_status: str, payment_status: str | None) -> bool:
    return current_status in TERMINAL_STATUSES and map_payment_status(payment_status) == "pending"


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: str
    payment_id: str
    project_id: Optional[str] = None
    payment_status: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    tasks_created: bool = False
    notified: bool = False
    reason: Optional[str] = None

    @property
    def entered_in_progress(self) -> bool:
        return self.previous_status != "in_progress" and self.new_status == "in_progress"


class WebhookReconciler:
    """Drives a project to the state implied by the authoritative gateway payment.

    Safe to run any number of times for the same payment: side effects fire
    only for the delivery whose conditional update actually changed the row.
    """

    def __init__(
        self,
        gateway: MercadoPagoClient,
        projects: ProjectRepository,
        notifier: NotificationDispatcher,
        task_generator: TaskTemplateGenerator,
        session_factory,
        *,
        cas_attempts: int = 3,
    ) -> None:
        self.gateway = gateway
        self.projects = projects
        self.notifier = notifier
        self.task_generator = task_generator
        self.session_factory = session_factory
        self.cas_attempts = max(cas_attempts, 1)

    def _session(self) -> Session:
        return self.session_factory()  # type: ignore[call-arg]

    def reconcile(self, payment_id: str) -> ReconciliationResult:
        start = time.time()
        logger = structlog.get_logger().bind(service="reconciler", payment_id=payment_id)
        try:
            payment = self.gateway.get_payment(payment_id)
            logger = logger.bind(payment_status=payment.status, project_id=payment.project_id)
            logger.info("payment_fetched", amount=payment.amount)

            project_id = payment.project_id
            if not project_id:
                logger.error("payment_missing_project_id", metadata_keys=sorted(payment.metadata))
                return self._finish(
                    ReconciliationResult(
                        "ignored",
                        payment_id,
                        payment_status=payment.status,
                        reason="missing_project_id",
                    )
                )

            result = self._apply(payment, project_id, logger)
            return self._finish(result)
        finally:
            reconciliation_latency_seconds.observe(time.time() - start)

    def _apply(self, payment: GatewayPayment, project_id: str, logger) -> ReconciliationResult:
        for attempt in range(1, self.cas_attempts + 1):
            project = self.projects.get(project_id)
            if project is None:
                logger.error("project_not_found")
                return ReconciliationResult(
                    "ignored",
                    payment.id,
                    project_id,
                    payment.status,
                    reason="project_not_found",
                )

            if (
                project.payment_id
                and project.payment_id != payment.id
                and map_payment_status(payment.status) != "in_progress"
            ):
                logger.warning("superseded_payment_ignored", current_payment_id=project.payment_id)
                return ReconciliationResult(
                    "ignored",
                    payment.id,
                    project_id,
                    payment.status,
                    previous_status=project.status,
                    new_status=project.status,
                    reason="superseded_payment",
                )

            stale = is_stale_regression(project.status, payment.status)
            new_status = resolve_project_status(project.status, payment.status)
            won = self.projects.compare_and_set(
                project_id,
                expected_status=project.status,
                expected_payment_status=project.payment_status,
                expected_payment_id=project.payment_id,
                new_status=new_status,
                payment_id=payment.id,
                payment_status=payment.status,
                payment_details=payment.details_snapshot(),
            )
            if won and stale:
                # Snapshot refreshed (last write wins), status and side effects untouched.
                logger.info("stale_callback_recorded", current_status=project.status)
                return ReconciliationResult(
                    "stale",
                    payment.id,
                    project_id,
                    payment.status,
                    previous_status=project.status,
                    new_status=project.status,
                    reason="terminal_status",
                )
            if won:
                return self._after_commit(project, new_status, payment, logger)
            logger.warning("project_update_conflict", attempt=attempt, expected_status=project.status)

        raise ConcurrentUpdateError(
            f"project {project_id} changed concurrently {self.cas_attempts} times"
        )

    def _after_commit(
        self,
        project: ProjectSnapshot,
        new_status: str,
        payment: GatewayPayment,
        logger,
    ) -> ReconciliationResult:
        status_changed = new_status != project.status
        payment_changed = payment.status != project.payment_status
        outcome = "transitioned" if status_changed else "refreshed"

        if status_changed:
            project_transitions_total.labels(from_status=project.status, to_status=new_status).inc()
            logger.info("project_status_changed", previous_status=project.status, new_status=new_status)
        else:
            logger.info("project_payment_refreshed", status=new_status, payment_changed=payment_changed)

        notified = False
        if status_changed or payment_changed:
            notified = self._notify(project, payment, logger)

        tasks_created = False
        if project.status != "in_progress" and new_status == "in_progress":
            try:
                self.task_generator.generate_initial_tasks(project)
                tasks_created = True
            except Exception as exc:
                fanout_failures_total.labels(kind="tasks").inc()
                logger.error("initial_tasks_failed", error=str(exc), exc_info=True)

        return ReconciliationResult(
            outcome,
            payment.id,
            project.id,
            payment.status,
            previous_status=project.status,
            new_status=new_status,
            tasks_created=tasks_created,
            notified=notified,
        )

    def _notify(self, project: ProjectSnapshot, payment: GatewayPayment, logger) -> bool:
        title, message, label = NOTIFICATION_COPY.get(payment.status, _DEFAULT_COPY)
        notification_type = f"payment_{payment.status}"
        metadata: dict[str, Any] = {
            "payment_id": payment.id,
            "payment_status": payment.status,
            "payment_amount": payment.amount,
        }
        delivered = False
        try:
            if project.user_id:
                delivered = (
                    self.notifier.notify(
                        project.user_id,
                        notification_type,
                        title,
                        message,
                        project.id,
                        metadata,
                    )
                    is not None
                )
            self.notifier.notify_admins(
                notification_type,
                title,
                f'O pagamento do projeto "{project.name}" foi {label}.',
                project.id,
                {**metadata, "user_id": project.user_id, "user_name": project.owner_name},
            )
        except Exception as exc:
            fanout_failures_total.labels(kind="notification").inc()
            logger.error("payment_notification_failed", error=str(exc))
        return delivered

    def _finish(self, result: ReconciliationResult) -> ReconciliationResult:
        reconciliation_outcomes_total.labels(outcome=result.outcome).inc()
        self.record_event(
            result.payment_id,
            result.outcome,
            project_id=result.project_id,
            payment_status=result.payment_status,
            previous_status=result.previous_status,
            new_status=result.new_status,
            detail={
                "reason": result.reason,
                "tasks_created": result.tasks_created,
                "notified": result.notified,
            },
        )
        return result

    def record_event(
        self,
        payment_id: str,
        outcome: str,
        *,
        project_id: str | None = None,
        payment_status: str | None = None,
        previous_status: str | None = None,
        new_status: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        session = self._session()
        try:
            session.add(
                PaymentEvent(
                    payment_id=payment_id,
                    project_id=project_id,
                    payment_status=payment_status,
                    outcome=outcome,
                    previous_status=previous_status,
                    new_status=new_status,
                    detail=detail or {},
                )
            )
            session.commit()
        except Exception as exc:
            session.rollback()
            structlog.get_logger().warning(
                "payment_event_record_failed",
                payment_id=payment_id,
                outcome=outcome,
                error=str(exc),
            )
        finally:
            session.close()


__all__ = [
    "NOTIFICATION_COPY",
    "ReconciliationResult",
    "STATUS_MAP",
    "TERMINAL_STATUSES",
    "WebhookReconciler",
    "is_stale_regression",
    "map_payment_status",
    "resolve_project_status",
]
