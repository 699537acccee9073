from __future__ import annotations

import asyncio
import math
import uuid
from collections import defaultdict
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import (
    ConflictError,
    ForbiddenError,
    GatewaySyncError,
    InternalError,
    InvoiceNotFoundError,
    NotFoundError,
    PaymentMethodNotFoundError,
    SubscriptionNotFoundError,
    ValidationError,
)
from ..gateway import GatewayPaymentMethod, GatewaySubscription, PaymentGateway, SetupIntentResult
from ..metrics import SUBSCRIPTIONS_CANCELLED_TOTAL, SUBSCRIPTIONS_CREATED_TOTAL
from ..models import (
    BillingUser,
    Invoice,
    InvoiceStatus,
    PaymentMethod,
    Subscription,
    SubscriptionStatus,
)
from ..money import round_money
from ..notifications import NotificationDispatcher, NotificationKind
from ..repositories.billing_repository import BillingRepository, commit_with_conflict_retry
from ..timeutils import as_utc, utcnow
from .accounts import ensure_gateway_customer

logger = structlog.get_logger(__name__)

# Statuses that count as "the user's current subscription" for plan changes.
CURRENT_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
)
CANCELLABLE_STATUSES = CURRENT_STATUSES + (
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.PAUSED.value,
)
HISTORY_STATUSES = {s.value for s in InvoiceStatus}


def _subscription_values(gsub: GatewaySubscription, user_id: str, plan_id: str | None = None) -> dict:
    return {
        "user_id": user_id,
        "plan_id": gsub.plan_id or plan_id,
        "status": gsub.status,
        "current_period_start": gsub.current_period_start,
        "current_period_end": gsub.current_period_end,
        "cancel_at_period_end": gsub.cancel_at_period_end,
    }


def mirror_subscription_on_user(user: BillingUser, subscription: Subscription) -> None:
    user.subscription_status = subscription.status
    user.subscription_expires_at = subscription.current_period_end


class BillingService:
    """User-initiated billing operations.

    Gateway calls are blocking SDK calls and run in a worker thread. Every
    mutation touches the gateway first and commits locally only after it
    succeeded, so a failed call leaves nothing behind in the database.
    """

    def __init__(self, db: AsyncSession, gateway: PaymentGateway, notifier: NotificationDispatcher | None = None):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier

    # -- payment methods -------------------------------------------------

    async def create_setup_intent(self, user: BillingUser) -> tuple[SetupIntentResult, str]:
        customer_id = await ensure_gateway_customer(self.db, self.gateway, user)
        intent = await asyncio.to_thread(
            self.gateway.create_setup_intent,
            customer_id=customer_id,
            user_id=user.user_id,
        )
        logger.info("setup_intent_created", user_id=user.user_id)
        return intent, customer_id

    async def add_payment_method(self, user: BillingUser, external_id: str) -> PaymentMethod:
        existing = await BillingRepository.find_by_external_id(
            self.db, PaymentMethod, "stripe_payment_method_id", external_id
        )
        if existing is not None:
            if existing.user_id != user.user_id:
                raise ConflictError("Payment method belongs to another account")
            return existing

        user_id = user.user_id
        customer_id = await ensure_gateway_customer(self.db, self.gateway, user)
        attached = await asyncio.to_thread(
            self.gateway.attach_payment_method,
            payment_method_id=external_id,
            customer_id=customer_id,
        )

        # Serializes concurrent adds so only the first one becomes default.
        await BillingRepository.lock_user(self.db, user_id)
        is_first = await BillingRepository.count_payment_methods(self.db, user_id) == 0
        method = PaymentMethod(
            user_id=user_id,
            stripe_payment_method_id=attached.id,
            type=attached.type,
            brand=attached.brand,
            last4=attached.last4,
            is_default=is_first,
        )
        self.db.add(method)
        await self.db.flush()

        if is_first:
            try:
                await asyncio.to_thread(
                    self.gateway.set_default_payment_method,
                    customer_id=customer_id,
                    payment_method_id=attached.id,
                )
            except GatewaySyncError:
                await self.db.rollback()
                logger.warning("payment_method_add_rolled_back", user_id=user_id, payment_method_id=external_id)
                raise

        await self.db.commit()
        await self.db.refresh(method)
        logger.info("payment_method_added", user_id=user_id, method_id=method.id, is_default=is_first)
        return method

    async def list_payment_methods(self, user: BillingUser) -> list[PaymentMethod]:
        return await BillingRepository.list_payment_methods(self.db, user.user_id)

    async def set_default_payment_method(self, user: BillingUser, method_id: int) -> PaymentMethod:
        # Rollback expires loaded rows; only plain values are read after it.
        user_id = user.user_id
        customer_id = user.stripe_customer_id
        method = await BillingRepository.get_payment_method(self.db, user_id, method_id)
        if method is None:
            raise PaymentMethodNotFoundError(method_id)
        external_id = method.stripe_payment_method_id

        await BillingRepository.lock_user(self.db, user_id)
        await BillingRepository.clear_default_payment_methods(self.db, user_id)
        method.is_default = True
        await self.db.flush()

        if customer_id:
            try:
                await asyncio.to_thread(
                    self.gateway.set_default_payment_method,
                    customer_id=customer_id,
                    payment_method_id=external_id,
                )
            except GatewaySyncError:
                await self.db.rollback()
                logger.warning("default_payment_method_rolled_back", user_id=user_id, method_id=method_id)
                raise

        await self.db.commit()
        await self.db.refresh(method)
        logger.info("default_payment_method_set", user_id=user_id, method_id=method_id)
        return method

    async def verify_payment_method(self, user: BillingUser, method_id: int) -> GatewayPaymentMethod:
        """Confirm with the gateway that a stored method is still attached to the caller's customer."""
        method = await BillingRepository.get_payment_method(self.db, user.user_id, method_id)
        if method is None:
            raise PaymentMethodNotFoundError(method_id)

        remote = await asyncio.to_thread(
            self.gateway.retrieve_payment_method,
            payment_method_id=method.stripe_payment_method_id,
        )
        if not user.stripe_customer_id or remote.customer_id != user.stripe_customer_id:
            logger.warning(
                "payment_method_owner_mismatch",
                user_id=user.user_id,
                method_id=method_id,
                gateway_customer_id=remote.customer_id,
            )
            raise ForbiddenError("Payment method is not attached to your account")
        return remote

    async def delete_payment_method(self, user: BillingUser, method_id: int) -> None:
        method = await BillingRepository.get_payment_method(self.db, user.user_id, method_id)
        if method is None:
            raise PaymentMethodNotFoundError(method_id)
        if method.is_default:
            raise ConflictError("Cannot delete default payment method. Set another as default first.")

        try:
            await asyncio.to_thread(
                self.gateway.detach_payment_method,
                payment_method_id=method.stripe_payment_method_id,
            )
        except GatewaySyncError:
            # Usually already detached on the gateway side.
            logger.warning("payment_method_detach_failed", user_id=user.user_id, method_id=method_id)

        await self.db.delete(method)
        await self.db.commit()
        logger.info("payment_method_deleted", user_id=user.user_id, method_id=method_id)

    # -- subscriptions ---------------------------------------------------

    async def create_subscription(
        self,
        user: BillingUser,
        plan_id: str,
        payment_method_id: str,
        idempotency_key: str | None = None,
    ) -> Subscription:
        user_id = user.user_id
        customer_id = await ensure_gateway_customer(self.db, self.gateway, user)
        attached = await asyncio.to_thread(
            self.gateway.attach_payment_method,
            payment_method_id=payment_method_id,
            customer_id=customer_id,
        )
        await asyncio.to_thread(
            self.gateway.set_default_payment_method,
            customer_id=customer_id,
            payment_method_id=attached.id,
        )
        gsub = await asyncio.to_thread(
            self.gateway.create_subscription,
            customer_id=customer_id,
            plan_id=plan_id,
            user_id=user_id,
            idempotency_key=idempotency_key or f"subscription-create-{uuid.uuid4().hex}",
        )

        async def apply() -> Subscription:
            await BillingRepository.lock_user(self.db, user_id)
            method, _ = await BillingRepository.upsert(
                self.db,
                PaymentMethod,
                "stripe_payment_method_id",
                attached.id,
                {"user_id": user_id, "type": attached.type, "brand": attached.brand, "last4": attached.last4},
            )
            await BillingRepository.clear_default_payment_methods(self.db, user_id)
            method.is_default = True
            subscription, _ = await BillingRepository.upsert(
                self.db,
                Subscription,
                "stripe_subscription_id",
                gsub.id,
                _subscription_values(gsub, user_id, plan_id),
            )
            owner = await BillingRepository.get_user(self.db, user_id)
            mirror_subscription_on_user(owner, subscription)
            await self.db.flush()
            return subscription

        subscription = await commit_with_conflict_retry(self.db, apply, operation="create_subscription")
        SUBSCRIPTIONS_CREATED_TOTAL.inc()
        logger.info(
            "subscription_created",
            user_id=user_id,
            subscription_id=subscription.id,
            plan_id=plan_id,
            status=subscription.status,
        )
        return subscription

    async def get_subscription(self, user: BillingUser) -> tuple[Subscription | None, bool]:
        """Latest local subscription, refreshed from the gateway when it answers.

        Returns the row and whether the refresh succeeded.
        """
        subscription = await BillingRepository.latest_subscription(self.db, user.user_id)
        if subscription is None:
            return None, False

        try:
            gsub = await asyncio.to_thread(
                self.gateway.retrieve_subscription,
                subscription_id=subscription.stripe_subscription_id,
            )
        except GatewaySyncError:
            logger.warning("subscription_refresh_failed", user_id=user.user_id, subscription_id=subscription.id)
            return subscription, False

        for attr, value in _subscription_values(gsub, user.user_id, subscription.plan_id).items():
            setattr(subscription, attr, value)
        if gsub.status == SubscriptionStatus.CANCELLED.value and subscription.cancelled_at is None:
            subscription.cancelled_at = utcnow()
        mirror_subscription_on_user(user, subscription)
        await self.db.commit()
        return subscription, True

    async def update_subscription(self, user: BillingUser, plan_id: str) -> Subscription:
        subscription = await BillingRepository.latest_subscription(self.db, user.user_id, CURRENT_STATUSES)
        if subscription is None:
            raise SubscriptionNotFoundError()

        gsub = await asyncio.to_thread(
            self.gateway.update_subscription,
            subscription_id=subscription.stripe_subscription_id,
            plan_id=plan_id,
        )
        subscription.plan_id = plan_id
        subscription.status = gsub.status
        if gsub.current_period_start is not None:
            subscription.current_period_start = gsub.current_period_start
        if gsub.current_period_end is not None:
            subscription.current_period_end = gsub.current_period_end
        mirror_subscription_on_user(user, subscription)
        await self.db.commit()
        logger.info("subscription_updated", user_id=user.user_id, subscription_id=subscription.id, plan_id=plan_id)
        return subscription

    async def cancel_subscription(self, user: BillingUser, immediately: bool = False) -> Subscription:
        subscription = await BillingRepository.latest_subscription(self.db, user.user_id, CANCELLABLE_STATUSES)
        if subscription is None:
            raise SubscriptionNotFoundError()

        await asyncio.to_thread(
            self.gateway.cancel_subscription,
            subscription_id=subscription.stripe_subscription_id,
            at_period_end=not immediately,
        )
        if immediately:
            subscription.status = SubscriptionStatus.CANCELLED.value
            subscription.cancelled_at = utcnow()
            subscription.cancel_at_period_end = False
        else:
            # Status changes when the gateway reports the period end.
            subscription.cancel_at_period_end = True
        mirror_subscription_on_user(user, subscription)
        await self.db.commit()

        mode = "immediately" if immediately else "period_end"
        SUBSCRIPTIONS_CANCELLED_TOTAL.labels(mode=mode).inc()
        logger.info("subscription_cancelled", user_id=user.user_id, subscription_id=subscription.id, mode=mode)
        return subscription

    async def pause_subscription(self, user: BillingUser) -> Subscription:
        subscription = await BillingRepository.latest_subscription(self.db, user.user_id, CURRENT_STATUSES)
        if subscription is None:
            raise SubscriptionNotFoundError()

        await asyncio.to_thread(
            self.gateway.pause_subscription,
            subscription_id=subscription.stripe_subscription_id,
        )
        subscription.status = SubscriptionStatus.PAUSED.value
        subscription.paused_at = utcnow()
        mirror_subscription_on_user(user, subscription)
        await self.db.commit()
        logger.info("subscription_paused", user_id=user.user_id, subscription_id=subscription.id)
        return subscription

    async def resume_subscription(self, user: BillingUser) -> Subscription:
        subscription = await BillingRepository.latest_subscription(
            self.db, user.user_id, (SubscriptionStatus.PAUSED.value,)
        )
        if subscription is None:
            raise NotFoundError("No paused subscription found")

        gsub = await asyncio.to_thread(
            self.gateway.resume_subscription,
            subscription_id=subscription.stripe_subscription_id,
        )
        subscription.status = gsub.status
        subscription.paused_at = None
        mirror_subscription_on_user(user, subscription)
        await self.db.commit()
        logger.info("subscription_resumed", user_id=user.user_id, subscription_id=subscription.id)
        return subscription

    # -- invoices --------------------------------------------------------

    async def list_invoices(self, user: BillingUser, limit: int = 10) -> list[Invoice]:
        return await BillingRepository.list_invoices(self.db, user.user_id, limit)

    async def invoice_pdf_url(self, user: BillingUser, invoice_id: int) -> str:
        invoice = await BillingRepository.get_invoice(self.db, user.user_id, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        if invoice.invoice_pdf:
            return invoice.invoice_pdf

        remote = await asyncio.to_thread(self.gateway.retrieve_invoice, invoice_id=invoice.stripe_invoice_id)
        if not remote.invoice_pdf:
            raise NotFoundError("PDF not available for this invoice")
        invoice.invoice_pdf = remote.invoice_pdf
        if remote.number and not invoice.invoice_number:
            invoice.invoice_number = remote.number
        await self.db.commit()
        return remote.invoice_pdf

    async def email_invoice(self, user: BillingUser, invoice_id: int) -> None:
        invoice = await BillingRepository.get_invoice(self.db, user.user_id, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        if not user.email:
            raise ValidationError("No email address on file")
        if self.notifier is None:
            raise InternalError("Failed to email invoice")

        queued = self.notifier.dispatch(
            NotificationKind.INVOICE_EMAIL,
            user,
            {
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "amount": invoice.amount,
                "currency": invoice.currency,
                "invoice_pdf": invoice.invoice_pdf,
            },
        )
        if not queued:
            raise InternalError("Failed to email invoice")

    # -- read-only aggregates (local store only) -------------------------

    async def billing_analytics(self, user: BillingUser, period_days: int = 30) -> dict:
        if period_days < 1:
            raise ValidationError("period must be at least one day")
        now = utcnow()
        start = now - timedelta(days=period_days)

        paid = Invoice.status == InvoiceStatus.PAID.value
        total_spent = (
            await self.db.execute(
                select(func.coalesce(func.sum(Invoice.amount), 0)).where(Invoice.user_id == user.user_id, paid)
            )
        ).scalar_one()

        recent_paid = (
            await self.db.execute(
                select(Invoice.invoice_date, Invoice.amount).where(
                    Invoice.user_id == user.user_id,
                    paid,
                    Invoice.invoice_date >= start,
                )
            )
        ).all()
        by_month: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        for invoice_date, amount in recent_paid:
            by_month[as_utc(invoice_date).strftime("%Y-%m")] += Decimal(amount)

        subscription = await BillingRepository.latest_subscription(
            self.db, user.user_id, (SubscriptionStatus.ACTIVE.value,)
        )
        subscription_info = None
        if subscription is not None:
            period_end = as_utc(subscription.current_period_end)
            subscription_info = {
                "plan_id": subscription.plan_id,
                "status": subscription.status,
                "current_period_end": period_end.strftime("%Y-%m-%d") if period_end else None,
                "cancel_at_period_end": subscription.cancel_at_period_end,
                "days_until_renewal": max((period_end - now).days, 0) if period_end else None,
            }

        method_counts = (
            await self.db.execute(
                select(PaymentMethod.type, func.count(PaymentMethod.id))
                .where(PaymentMethod.user_id == user.user_id)
                .group_by(PaymentMethod.type)
                .order_by(PaymentMethod.type)
            )
        ).all()

        return {
            "total_spent": round_money(total_spent),
            "monthly_spending": [
                {"month": month, "total": round_money(total)} for month, total in sorted(by_month.items())
            ],
            "subscription": subscription_info,
            "recent_invoices": await BillingRepository.list_invoices(self.db, user.user_id, 5),
            "payment_methods": [{"type": t, "count": int(c)} for t, c in method_counts],
            "period_days": period_days,
        }

    async def payment_history(
        self,
        user: BillingUser,
        status: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        limit: int = 20,
        page: int = 1,
    ) -> dict:
        if status is not None and status not in HISTORY_STATUSES:
            raise ValidationError("status must be one of: paid, failed, pending")
        if start_date and end_date and start_date > end_date:
            raise ValidationError("start_date must not be after end_date")

        filters = [Invoice.user_id == user.user_id]
        if status:
            filters.append(Invoice.status == status)
        if start_date:
            filters.append(Invoice.invoice_date >= datetime.combine(start_date, time.min, tzinfo=UTC))
        if end_date:
            filters.append(Invoice.invoice_date <= datetime.combine(end_date, time.max, tzinfo=UTC))

        filtered_count, filtered_total = (
            await self.db.execute(
                select(func.count(Invoice.id), func.coalesce(func.sum(Invoice.amount), 0)).where(*filters)
            )
        ).one()
        rows = (
            await self.db.execute(
                select(Invoice)
                .where(*filters)
                .order_by(Invoice.invoice_date.desc(), Invoice.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
        ).scalars().all()

        by_status = dict(
            (
                await self.db.execute(
                    select(Invoice.status, func.coalesce(func.sum(Invoice.amount), 0))
                    .where(Invoice.user_id == user.user_id)
                    .group_by(Invoice.status)
                )
            ).all()
        )

        return {
            "history": {
                "data": list(rows),
                "current_page": page,
                "per_page": limit,
                "total": int(filtered_count),
                "last_page": max(math.ceil(int(filtered_count) / limit), 1),
            },
            "totals": {
                "total": round_money(filtered_total),
                "paid": round_money(by_status.get(InvoiceStatus.PAID.value, 0)),
                "failed": round_money(by_status.get(InvoiceStatus.FAILED.value, 0)),
                "pending": round_money(by_status.get(InvoiceStatus.PENDING.value, 0)),
            },
        }
