from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String

from portal.models.base import Base


class PaymentEvent(Base):
    """Registro de cada tentativa de reconciliação de um pagamento."""

    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True)
    payment_id = Column(String(64), nullable=False, index=True)
    project_id = Column(String(36), nullable=True, index=True)
    payment_status = Column(String(32))
    outcome = Column(
        String(20),
        nullable=False,
        index=True,
        comment="transitioned|refreshed|stale|ignored|failed",
    )
    previous_status = Column(String(32))
    new_status = Column(String(32))
    detail = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


__all__ = ["PaymentEvent"]
