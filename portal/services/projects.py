from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from portal.models import Profile, Project


class ConcurrentUpdateError(Exception):
    """Raised when a conditional project update keeps losing to concurrent writers."""


@dataclass(frozen=True)
class ProjectSnapshot:
    id: str
    user_id: Optional[str]
    name: str
    status: str
    plan: str
    products: tuple[str, ...]
    payment_status: Optional[str]
    payment_id: Optional[str]
    owner_name: Optional[str] = None

    @classmethod
    def from_model(cls, project: Project, owner: Profile | None = None) -> "ProjectSnapshot":
        return cls(
            id=project.id,
            user_id=project.user_id,
            name=project.name,
            status=project.status,
            plan=project.plan,
            products=tuple(project.products or ()),
            payment_status=project.payment_status,
            payment_id=project.payment_id,
            owner_name=owner.full_name if owner is not None else None,
        )


class ProjectRepository:
    """Acesso à tabela ``projects``.

    Every status mutation goes through :meth:`compare_and_set`, a single-row
    ``UPDATE ... WHERE status = ? AND payment_status IS ? AND payment_id IS ?``. The database row is
    the serialization point between concurrent webhook deliveries.
    """

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory
        self.logger = structlog.get_logger().bind(service="projects")

    def _session(self) -> Session:
        return self.session_factory()  # type: ignore[call-arg]

    def create(
        self,
        *,
        user_id: str,
        name: str,
        description: str,
        plan: str,
        products: list[str],
        deadline: datetime,
        requirements: str | None = None,
        customizations: dict[str, Any] | None = None,
    ) -> ProjectSnapshot:
        session = self._session()
        try:
            project = Project(
                user_id=user_id,
                name=name,
                description=description,
                status="pending",
                plan=plan,
                products=list(products),
                payment_status="pending",
                requirements=requirements,
                customizations=customizations or {},
                deadline=deadline,
            )
            session.add(project)
            session.commit()
            self.logger.info("project_created", project_id=project.id, plan=plan)
            return ProjectSnapshot.from_model(project)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get(self, project_id: str) -> ProjectSnapshot | None:
        session = self._session()
        try:
            row = (
                session.query(Project, Profile)
                .outerjoin(Profile, Profile.id == Project.user_id)
                .filter(Project.id == project_id)
                .first()
            )
            if row is None:
                return None
            project, owner = row
            return ProjectSnapshot.from_model(project, owner)
        finally:
            session.close()

    def get_for_user(self, project_id: str, user_id: str) -> ProjectSnapshot | None:
        snapshot = self.get(project_id)
        if snapshot is None or snapshot.user_id != user_id:
            return None
        return snapshot

    def link_payment(self, project_id: str, payment_id: str) -> bool:
        """Associate a freshly created intent with a project that is still pending."""

        session = self._session()
        try:
            result = session.execute(
                update(Project)
                .where(Project.id == project_id, Project.status == "pending")
                .values(payment_id=payment_id, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def compare_and_set(
        self,
        project_id: str,
        *,
        expected_status: str,
        expected_payment_status: str | None,
        expected_payment_id: str | None,
        new_status: str,
        payment_id: str,
        payment_status: str,
        payment_details: dict[str, Any],
    ) -> bool:
        """Write status and payment snapshot only if the row still holds the expected state.

        The expected state is the status, payment status and linked intent read by
        the caller, so a relink by checkout in between also makes the write miss.

        Returns ``False`` when another writer got there first; the caller must
        re-read and recompute.
        """

        if expected_payment_status is None:
            payment_status_matches = Project.payment_status.is_(None)
        else:
            payment_status_matches = Project.payment_status == expected_payment_status
        if expected_payment_id is None:
            payment_id_matches = Project.payment_id.is_(None)
        else:
            payment_id_matches = Project.payment_id == expected_payment_id

        session = self._session()
        try:
            result = session.execute(
                update(Project)
                .where(
                    Project.id == project_id,
                    Project.status == expected_status,
                    payment_status_matches,
                    payment_id_matches,
                )
                .values(
                    status=new_status,
                    payment_id=payment_id,
                    payment_status=payment_status,
                    payment_details=payment_details,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def list_unsettled(
        self,
        *,
        created_before: datetime,
        created_after: datetime | None = None,
        limit: int = 200,
    ) -> list[tuple[str, str]]:
        """Pending projects that already have an intent, oldest first."""

        session = self._session()
        try:
            query = session.query(Project.id, Project.payment_id).filter(
                Project.status == "pending",
                Project.payment_id.isnot(None),
                Project.created_at <= created_before,
            )
            if created_after is not None:
                query = query.filter(Project.created_at >= created_after)
            rows = query.order_by(Project.created_at.asc()).limit(limit).all()
            return [(project_id, payment_id) for project_id, payment_id in rows]
        finally:
            session.close()


__all__ = ["ConcurrentUpdateError", "ProjectRepository", "ProjectSnapshot"]
