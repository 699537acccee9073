from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .. import schemas
from ..dependencies import get_coach_user, get_db
from ..gateway import PaymentGateway, get_gateway
from ..models import BillingUser
from ..services.payout_service import PayoutService

router = APIRouter(prefix="/coach", tags=["coach-payouts"])


def get_payout_service(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PayoutService:
    return PayoutService(db, gateway)


@router.post("/connect-stripe", response_model=schemas.ConnectAccountResponse)
async def connect_stripe(
    payload: schemas.ConnectAccountRequest | None = None,
    coach: BillingUser = Depends(get_coach_user),
    service: PayoutService = Depends(get_payout_service),
):
    payload = payload or schemas.ConnectAccountRequest()
    url, account_id = await service.connect_account(
        coach,
        country=payload.country,
        business_type=payload.business_type,
        refresh_url=payload.refresh_url,
        return_url=payload.return_url,
    )
    return schemas.ConnectAccountResponse(onboarding_url=url, stripe_account_id=account_id)


@router.get("/stripe-status", response_model=schemas.ConnectStatusResponse)
async def stripe_status(
    coach: BillingUser = Depends(get_coach_user),
    service: PayoutService = Depends(get_payout_service),
):
    return schemas.ConnectStatusResponse.model_validate(await service.get_status(coach))


@router.get("/earnings", response_model=schemas.EarningsResponse)
async def earnings(
    coach: BillingUser = Depends(get_coach_user),
    service: PayoutService = Depends(get_payout_service),
):
    return schemas.EarningsResponse.model_validate(await service.get_earnings(coach))


@router.post("/payout", response_model=schemas.PayoutEnvelope)
async def request_payout(
    payload: schemas.PayoutRequestBody,
    coach: BillingUser = Depends(get_coach_user),
    service: PayoutService = Depends(get_payout_service),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    payout = await service.request_payout(coach, payload.amount, idempotency_key=idempotency_key)
    return schemas.PayoutEnvelope(
        message="Payout requested successfully",
        payout=schemas.PayoutResponse.model_validate(payout),
    )


@router.get("/payouts", response_model=schemas.PayoutListResponse)
async def list_payouts(
    limit: int = Query(10, ge=1, le=100),
    refresh: bool = Query(False),
    coach: BillingUser = Depends(get_coach_user),
    service: PayoutService = Depends(get_payout_service),
):
    payouts = await service.list_payouts(coach, limit=limit, refresh=refresh)
    return schemas.PayoutListResponse(payouts=[schemas.PayoutResponse.model_validate(p) for p in payouts])
