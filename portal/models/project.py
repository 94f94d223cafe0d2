from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Enum, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from portal.models.base import Base

PROJECT_STATUSES = ("pending", "in_progress", "completed", "cancelled")
PLANS = ("Básico", "Profissional", "Enterprise")


def _new_id() -> str:
    return str(uuid.uuid4())


class Project(Base):
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    status = Column(
        Enum(*PROJECT_STATUSES, name="project_status"),
        nullable=False,
        default="pending",
        index=True,
    )
    plan = Column(Enum(*PLANS, name="project_plan"), nullable=False)
    products = Column(JSON, nullable=False, default=list)
    requirements = Column(Text)
    customizations = Column(JSON, nullable=False, default=dict)
    payment_status = Column(String(32), nullable=True)
    payment_id = Column(String(64), nullable=True, index=True)
    payment_details = Column(JSON, nullable=True)
    deadline = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    owner = relationship("Profile")
    tasks = relationship("ProjectTask", back_populates="project", cascade="all, delete-orphan")


__all__ = ["Project", "PROJECT_STATUSES", "PLANS"]
