from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.orm import Session

from portal.metrics import fanout_failures_total
from portal.models import Notification, Profile

LOGGER = structlog.get_logger().bind(service="notifications")


class NotificationDispatcher:
    """Best-effort writer for the ``notifications`` table.

    Failures are logged and counted but never raised: a notification that did
    not land must not undo the state change that triggered it.
    """

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def _session(self) -> Session:
        return self.session_factory()  # type: ignore[call-arg]

    def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        project_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Notification | None:
        session = self._session()
        try:
            notification = Notification(
                user_id=user_id,
                type=type,
                title=title,
                message=message,
                project_id=project_id,
                metadata_json=metadata or {},
                read=False,
                created_at=datetime.utcnow(),
            )
            session.add(notification)
            session.commit()
            return notification
        except Exception as exc:
            session.rollback()
            fanout_failures_total.labels(kind="notification").inc()
            LOGGER.error(
                "notification_failed",
                user_id=user_id,
                type=type,
                project_id=project_id,
                error=str(exc),
            )
            return None
        finally:
            session.close()

    def admin_ids(self) -> list[str]:
        session = self._session()
        try:
            rows = session.query(Profile.id).filter(Profile.is_admin.is_(True)).all()
            return [admin_id for (admin_id,) in rows]
        finally:
            session.close()

    def notify_admins(
        self,
        type: str,
        title: str,
        message: str,
        project_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        try:
            admin_ids = self.admin_ids()
        except Exception as exc:
            fanout_failures_total.labels(kind="admin_lookup").inc()
            LOGGER.error("admin_lookup_failed", type=type, project_id=project_id, error=str(exc))
            return 0
        delivered = 0
        for admin_id in admin_ids:
            if self.notify(admin_id, type, title, message, project_id, metadata) is not None:
                delivered += 1
        return delivered


__all__ = ["NotificationDispatcher"]
