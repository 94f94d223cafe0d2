from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, String

from portal.models.base import Base


class Profile(Base):
    """Perfil espelhado do provedor de identidade (somente leitura aqui)."""

    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True)
    full_name = Column(String(150))
    email = Column(String(200))
    document = Column(String(32))
    phone = Column(String(32))
    is_admin = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


__all__ = ["Profile"]
