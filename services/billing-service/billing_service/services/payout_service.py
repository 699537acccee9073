from __future__ import annotations

import asyncio
import uuid
from decimal import Decimal, InvalidOperation

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..exceptions import ConflictError, GatewaySyncError, InsufficientFundsError, InternalError, ValidationError
from ..gateway import GatewayConnectedAccount, PaymentGateway
from ..metrics import PAYOUTS_REQUESTED_TOTAL
from ..models import BillingUser, PayoutRequest
from ..money import round_money, to_decimal
from ..repositories.billing_repository import BillingRepository
from ..timeutils import utcnow

logger = structlog.get_logger(__name__)

TERMINAL_PAYOUT_STATUSES = frozenset({"paid", "failed", "canceled"})

STATUS_MESSAGES = {
    "active": "Your Stripe account is fully active and ready to receive payments",
    "pending": "Your account is under review. You will be able to receive payments soon.",
    "incomplete": "Please complete your Stripe account setup to receive payments",
    "not_connected": "No Stripe Connect account linked",
}


def connect_status(account: GatewayConnectedAccount) -> str:
    if account.charges_enabled and account.payouts_enabled:
        return "active"
    if account.details_submitted:
        return "pending"
    return "incomplete"


def parse_payout_amount(amount) -> Decimal:
    try:
        value = to_decimal(amount)
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValidationError("Payout amount must be a number") from exc
    if not value.is_finite() or value <= 0:
        raise ValidationError("Payout amount must be greater than zero")
    if round_money(value) != value:
        raise ValidationError("Payout amount cannot have fractions of a cent")
    return round_money(value)


class PayoutService:
    """Connected-account onboarding and withdrawals for coaches.

    The balance check before a payout is advisory: the gateway rejects any
    over-withdrawal that slips through between the two calls.
    """

    def __init__(self, db: AsyncSession, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway
        self.settings = get_settings()

    async def connect_account(
        self,
        coach: BillingUser,
        *,
        country: str | None = None,
        business_type: str = "individual",
        refresh_url: str | None = None,
        return_url: str | None = None,
    ) -> tuple[str, str]:
        account_id = coach.stripe_connect_account_id
        if not account_id:
            account_id = await self._create_connected_account(coach, country=country, business_type=business_type)

        app_url = self.settings.APP_URL.rstrip("/")
        # Onboarding links are single-use; always issue a fresh one.
        url = await asyncio.to_thread(
            self.gateway.create_onboarding_link,
            account_id=account_id,
            refresh_url=refresh_url or f"{app_url}/coach/stripe-connect",
            return_url=return_url or f"{app_url}/coach/earnings",
        )
        logger.info("connect_onboarding_link_issued", coach_id=coach.user_id)
        return url, account_id

    async def _create_connected_account(self, coach: BillingUser, *, country: str | None, business_type: str) -> str:
        account_id = await asyncio.to_thread(
            self.gateway.create_connected_account,
            user_id=coach.user_id,
            email=coach.email,
            name=coach.name,
            country=(country or self.settings.CONNECT_DEFAULT_COUNTRY).upper(),
            business_type=business_type,
            idempotency_key=f"connect-account-{coach.user_id}",
        )
        try:
            won = await BillingRepository.claim_connect_account_id(self.db, coach.user_id, account_id)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            won = False
        await self.db.refresh(coach)
        if won:
            logger.info("connect_account_created", coach_id=coach.user_id)
        if not coach.stripe_connect_account_id:
            raise InternalError()
        return coach.stripe_connect_account_id

    async def get_status(self, coach: BillingUser) -> dict:
        if not coach.stripe_connect_account_id:
            return {
                "connected": False,
                "status": "not_connected",
                "message": STATUS_MESSAGES["not_connected"],
            }

        account = await asyncio.to_thread(
            self.gateway.retrieve_connected_account,
            account_id=coach.stripe_connect_account_id,
        )
        status = connect_status(account)
        return {
            "connected": True,
            "status": status,
            "message": STATUS_MESSAGES[status],
            "charges_enabled": account.charges_enabled,
            "payouts_enabled": account.payouts_enabled,
            "details_submitted": account.details_submitted,
            "requirements": account.requirements,
        }

    async def request_payout(self, coach: BillingUser, amount, idempotency_key: str | None = None) -> PayoutRequest:
        value = parse_payout_amount(amount)
        if not coach.stripe_connect_account_id:
            raise ConflictError("Please connect your Stripe account first")

        currency = self.settings.PAYOUT_CURRENCY
        balance = await asyncio.to_thread(
            self.gateway.retrieve_balance,
            account_id=coach.stripe_connect_account_id,
            currency=currency,
        )
        if value > balance.available:
            PAYOUTS_REQUESTED_TOTAL.labels(outcome="insufficient_funds").inc()
            logger.info(
                "payout_insufficient_funds",
                coach_id=coach.user_id,
                requested=str(value),
                available=str(balance.available),
            )
            raise InsufficientFundsError(balance.available)

        try:
            payout = await asyncio.to_thread(
                self.gateway.create_payout,
                account_id=coach.stripe_connect_account_id,
                amount=value,
                currency=currency,
                coach_id=coach.user_id,
                idempotency_key=idempotency_key or f"payout-{uuid.uuid4().hex}",
            )
        except GatewaySyncError:
            PAYOUTS_REQUESTED_TOTAL.labels(outcome="failed").inc()
            raise

        row = PayoutRequest(
            coach_id=coach.user_id,
            amount=value,
            currency=currency,
            stripe_payout_id=payout.id,
            status=payout.status,
            method=payout.method,
            arrival_date=payout.arrival_date,
            requested_at=utcnow(),
        )
        self.db.add(row)
        await self.db.commit()
        await self.db.refresh(row)
        PAYOUTS_REQUESTED_TOTAL.labels(outcome="created").inc()
        logger.info("payout_requested", coach_id=coach.user_id, payout_id=payout.id, status=payout.status)
        return row

    async def get_earnings(self, coach: BillingUser) -> dict:
        currency = self.settings.PAYOUT_CURRENCY
        total_earnings = round_money(await BillingRepository.sum_coach_earnings(self.db, coach.user_id))
        if not coach.stripe_connect_account_id:
            return {
                "connected": False,
                "total_earnings": total_earnings,
                "available_balance": Decimal("0.00"),
                "pending_balance": Decimal("0.00"),
                "currency": currency.upper(),
                "recent_payouts": [],
                "message": "Connect your Stripe account to start receiving payments",
            }

        balance = await asyncio.to_thread(
            self.gateway.retrieve_balance,
            account_id=coach.stripe_connect_account_id,
            currency=currency,
        )
        return {
            "connected": True,
            "total_earnings": total_earnings,
            "available_balance": balance.available,
            "pending_balance": balance.pending,
            "currency": currency.upper(),
            "recent_payouts": await BillingRepository.list_payout_requests(self.db, coach.user_id, 10),
            "stripe_account_id": coach.stripe_connect_account_id,
        }

    async def list_payouts(self, coach: BillingUser, limit: int = 10, refresh: bool = False) -> list[PayoutRequest]:
        rows = await BillingRepository.list_payout_requests(self.db, coach.user_id, limit)
        if not refresh or not coach.stripe_connect_account_id:
            return rows

        refreshed = 0
        for row in rows:
            if row.status in TERMINAL_PAYOUT_STATUSES:
                continue
            try:
                remote = await asyncio.to_thread(
                    self.gateway.retrieve_payout,
                    account_id=coach.stripe_connect_account_id,
                    payout_id=row.stripe_payout_id,
                )
            except GatewaySyncError:
                logger.warning("payout_refresh_failed", coach_id=coach.user_id, payout_id=row.stripe_payout_id)
                break
            row.status = remote.status
            row.arrival_date = remote.arrival_date or row.arrival_date
            row.status_refreshed_at = utcnow()
            refreshed += 1
        if refreshed:
            await self.db.commit()
        return rows
