from __future__ import annotations

from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func, text

from ..database import Base


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class BillingUser(Base):
    __tablename__ = "billing_users"

    user_id = Column(String(255), primary_key=True, index=True)
    email = Column(String(255), nullable=True)
    name = Column(String(255), nullable=True)
    role = Column(String(32), nullable=False, server_default="user")
    is_active = Column(Boolean, nullable=False, server_default="1", default=True)
    stripe_customer_id = Column(String(255), nullable=True, unique=True, index=True)
    stripe_connect_account_id = Column(String(255), nullable=True, unique=True, index=True)
    subscription_status = Column(String(32), nullable=True)
    subscription_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), ForeignKey("billing_users.user_id", ondelete="CASCADE"), nullable=False, index=True)
    stripe_subscription_id = Column(String(255), nullable=False, unique=True, index=True)
    plan_id = Column(String(255), nullable=True)
    status = Column(String(32), nullable=False, index=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, server_default="0", default=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), ForeignKey("billing_users.user_id", ondelete="CASCADE"), nullable=False, index=True)
    stripe_invoice_id = Column(String(255), nullable=False, unique=True, index=True)
    invoice_number = Column(String(64), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, server_default="USD")
    status = Column(String(32), nullable=False, index=True)
    invoice_date = Column(DateTime(timezone=True), nullable=True, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    invoice_pdf = Column(Text, nullable=True)
    admin_document_path = Column(String(512), nullable=True)
    admin_document_stored_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class PaymentMethod(Base):
    __tablename__ = "payment_methods"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), ForeignKey("billing_users.user_id", ondelete="CASCADE"), nullable=False, index=True)
    stripe_payment_method_id = Column(String(255), nullable=False, unique=True, index=True)
    type = Column(String(32), nullable=False)
    brand = Column(String(64), nullable=True)
    last4 = Column(String(4), nullable=True)
    is_default = Column(Boolean, nullable=False, server_default="0", default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # At most one default method per user.
    __table_args__ = (
        Index(
            "uq_payment_methods_user_default",
            "user_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), ForeignKey("billing_users.user_id", ondelete="CASCADE"), nullable=False, index=True)
    coach_id = Column(String(255), nullable=True, index=True)
    transaction_id = Column(String(255), nullable=False, unique=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, server_default="USD")
    status = Column(String(32), nullable=False, index=True)
    payment_method = Column(String(50), nullable=True)
    payment_date = Column(DateTime(timezone=True), nullable=True, index=True)
    failure_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
