from backend_common.dependencies import CallerIdentity, make_get_caller, make_get_db_async
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from .database import AsyncSessionLocal
from .exceptions import ForbiddenError
from .models import BillingUser
from .services.accounts import get_or_create_billing_user

get_db = make_get_db_async(AsyncSessionLocal)
get_caller = make_get_caller("billing-service")


def require_coach(caller: CallerIdentity = Depends(get_caller)) -> CallerIdentity:
    if not caller.is_coach:
        raise ForbiddenError("Coach access required")
    return caller


def require_admin(caller: CallerIdentity = Depends(get_caller)) -> CallerIdentity:
    if not caller.is_admin:
        raise ForbiddenError("Admin access required")
    return caller


async def get_billing_user(
    caller: CallerIdentity = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> BillingUser:
    return await get_or_create_billing_user(db, caller)


async def get_coach_user(
    caller: CallerIdentity = Depends(require_coach),
    db: AsyncSession = Depends(get_db),
) -> BillingUser:
    return await get_or_create_billing_user(db, caller)
