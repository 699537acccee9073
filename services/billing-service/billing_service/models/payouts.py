from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, func

from ..database import Base


class PayoutRequest(Base):
    __tablename__ = "coach_payout_requests"

    id = Column(Integer, primary_key=True, index=True)
    coach_id = Column(String(255), ForeignKey("billing_users.user_id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, server_default="usd")
    stripe_payout_id = Column(String(255), nullable=False, unique=True, index=True)
    status = Column(String(32), nullable=False, index=True)
    method = Column(String(32), nullable=True)
    arrival_date = Column(DateTime(timezone=True), nullable=True)
    requested_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    status_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
