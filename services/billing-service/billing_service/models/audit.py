from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Integer, String, func

from ..database import Base


class AdminAction(Base):
    """Insert-only audit row for privileged billing mutations."""

    __tablename__ = "admin_actions"

    id = Column(Integer, primary_key=True, index=True)
    admin_id = Column(String(255), nullable=False, index=True)
    action = Column(String(64), nullable=False, index=True)
    target_type = Column(String(32), nullable=False)
    target_id = Column(String(255), nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
