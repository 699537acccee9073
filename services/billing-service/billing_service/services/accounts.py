from __future__ import annotations

import asyncio

import structlog
from backend_common.dependencies import CallerIdentity
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import InternalError
from ..gateway import PaymentGateway
from ..models import BillingUser
from ..repositories.billing_repository import BillingRepository

logger = structlog.get_logger(__name__)


async def get_or_create_billing_user(db: AsyncSession, caller: CallerIdentity) -> BillingUser:
    """Return the local billing row for ``caller``, creating it on first contact.

    Concurrent first requests race on the primary key; the loser rolls back and
    reads the winner's row.
    """
    user = await BillingRepository.get_user(db, caller.user_id)
    if user is None:
        db.add(
            BillingUser(
                user_id=caller.user_id,
                email=caller.email,
                name=caller.name,
                role=caller.role,
                is_active=True,
            )
        )
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info("billing_user_create_race_lost", user_id=caller.user_id)
        user = await BillingRepository.get_user(db, caller.user_id)
        if user is None:
            raise InternalError()
        return user

    changed = False
    for attr in ("email", "name"):
        value = getattr(caller, attr)
        if value and getattr(user, attr) != value:
            setattr(user, attr, value)
            changed = True
    if user.role != caller.role:
        user.role = caller.role
        changed = True
    if changed:
        await db.commit()
        await db.refresh(user)
    return user


async def ensure_gateway_customer(db: AsyncSession, gateway: PaymentGateway, user: BillingUser) -> str:
    """Get-or-create the gateway customer for ``user``.

    The gateway call carries an idempotency key derived from the user id, so
    concurrent callers receive the same customer. Locally the id is written
    once through a conditional update; whoever loses re-reads the stored id.
    """
    if user.stripe_customer_id:
        return user.stripe_customer_id

    customer_id = await asyncio.to_thread(
        gateway.create_customer,
        user_id=user.user_id,
        email=user.email,
        name=user.name,
        idempotency_key=f"customer-create-{user.user_id}",
    )
    try:
        won = await BillingRepository.claim_customer_id(db, user.user_id, customer_id)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        won = False
    await db.refresh(user)

    if won:
        logger.info("gateway_customer_created", user_id=user.user_id)
    elif user.stripe_customer_id != customer_id:
        logger.warning(
            "gateway_customer_race_lost",
            user_id=user.user_id,
            discarded_customer_id=customer_id,
        )
    if not user.stripe_customer_id:
        raise InternalError()
    return user.stripe_customer_id
