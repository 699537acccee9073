from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import BillingUser, Invoice, Payment, PaymentMethod, PayoutRequest, Subscription

logger = structlog.get_logger(__name__)

TModel = TypeVar("TModel")
TResult = TypeVar("TResult")


class BillingRepository:
    """Queries shared by the billing API, webhook and payout services.

    Nothing here commits; callers own the transaction.
    """

    @staticmethod
    async def get_user(db: AsyncSession, user_id: str) -> BillingUser | None:
        return await db.get(BillingUser, user_id)

    @staticmethod
    async def lock_user(db: AsyncSession, user_id: str) -> None:
        """Row-lock the billing user until the transaction ends.

        Guards per-user invariants such as the single default payment method.
        SQLite ignores ``FOR UPDATE``; it serializes writers anyway.
        """
        await db.execute(select(BillingUser.user_id).where(BillingUser.user_id == user_id).with_for_update())

    @staticmethod
    async def get_user_by_customer_id(db: AsyncSession, customer_id: str | None) -> BillingUser | None:
        if not customer_id:
            return None
        result = await db.execute(select(BillingUser).where(BillingUser.stripe_customer_id == customer_id))
        return result.scalars().first()

    @staticmethod
    async def claim_customer_id(db: AsyncSession, user_id: str, customer_id: str) -> bool:
        """Store ``customer_id`` only if the user has none yet. Returns whether this call won."""
        result = await db.execute(
            update(BillingUser)
            .where(BillingUser.user_id == user_id, BillingUser.stripe_customer_id.is_(None))
            .values(stripe_customer_id=customer_id)
        )
        return result.rowcount == 1

    @staticmethod
    async def claim_connect_account_id(db: AsyncSession, user_id: str, account_id: str) -> bool:
        result = await db.execute(
            update(BillingUser)
            .where(BillingUser.user_id == user_id, BillingUser.stripe_connect_account_id.is_(None))
            .values(stripe_connect_account_id=account_id)
        )
        return result.rowcount == 1

    @staticmethod
    async def upsert(
        db: AsyncSession,
        model: type[TModel],
        key: str,
        key_value: str,
        values: dict[str, Any],
    ) -> tuple[TModel, bool]:
        """Insert-or-update ``model`` keyed by the unique external id column ``key``."""
        result = await db.execute(select(model).where(getattr(model, key) == key_value))
        row = result.scalars().first()
        if row is None:
            row = model(**{key: key_value, **values})
            db.add(row)
            await db.flush()
            return row, True
        for attr, value in values.items():
            setattr(row, attr, value)
        await db.flush()
        return row, False

    @staticmethod
    async def find_by_external_id(db: AsyncSession, model: type[TModel], key: str, key_value: str) -> TModel | None:
        result = await db.execute(select(model).where(getattr(model, key) == key_value))
        return result.scalars().first()

    @staticmethod
    async def list_payment_methods(db: AsyncSession, user_id: str) -> list[PaymentMethod]:
        result = await db.execute(
            select(PaymentMethod)
            .where(PaymentMethod.user_id == user_id)
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc(), PaymentMethod.id.desc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def count_payment_methods(db: AsyncSession, user_id: str) -> int:
        result = await db.execute(select(func.count(PaymentMethod.id)).where(PaymentMethod.user_id == user_id))
        return int(result.scalar_one())

    @staticmethod
    async def get_payment_method(db: AsyncSession, user_id: str, method_id: int) -> PaymentMethod | None:
        result = await db.execute(
            select(PaymentMethod).where(PaymentMethod.id == method_id, PaymentMethod.user_id == user_id)
        )
        return result.scalars().first()

    @staticmethod
    async def clear_default_payment_methods(db: AsyncSession, user_id: str) -> None:
        await db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == user_id, PaymentMethod.is_default.is_(True))
            .values(is_default=False)
        )

    @staticmethod
    async def latest_subscription(
        db: AsyncSession, user_id: str, statuses: Iterable[str] | None = None
    ) -> Subscription | None:
        stmt = select(Subscription).where(Subscription.user_id == user_id)
        if statuses is not None:
            stmt = stmt.where(Subscription.status.in_(list(statuses)))
        stmt = stmt.order_by(Subscription.created_at.desc(), Subscription.id.desc()).limit(1)
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def get_invoice(db: AsyncSession, user_id: str, invoice_id: int) -> Invoice | None:
        result = await db.execute(select(Invoice).where(Invoice.id == invoice_id, Invoice.user_id == user_id))
        return result.scalars().first()

    @staticmethod
    async def list_invoices(db: AsyncSession, user_id: str, limit: int) -> list[Invoice]:
        result = await db.execute(
            select(Invoice)
            .where(Invoice.user_id == user_id)
            .order_by(Invoice.invoice_date.desc(), Invoice.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def sum_coach_earnings(db: AsyncSession, coach_id: str) -> Any:
        result = await db.execute(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.coach_id == coach_id,
                Payment.status == "completed",
            )
        )
        return result.scalar_one()

    @staticmethod
    async def list_payout_requests(db: AsyncSession, coach_id: str, limit: int) -> list[PayoutRequest]:
        result = await db.execute(
            select(PayoutRequest)
            .where(PayoutRequest.coach_id == coach_id)
            .order_by(PayoutRequest.requested_at.desc(), PayoutRequest.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


async def commit_with_conflict_retry(
    db: AsyncSession,
    apply: Callable[[], Awaitable[TResult]],
    *,
    operation: str,
) -> TResult:
    """Run ``apply`` and commit, redoing it once if a unique constraint fires.

    A conflict means a concurrent writer (usually the webhook racing the API, or
    the other way round) inserted the same external id first. The whole
    transaction is rolled back and replayed, so the second pass takes the
    update branch. ``apply`` must re-read every row it touches.
    """
    try:
        result = await apply()
        await db.commit()
        return result
    except IntegrityError:
        await db.rollback()
        logger.info("upsert_conflict_retry", operation=operation)
    result = await apply()
    await db.commit()
    return result
