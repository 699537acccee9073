from __future__ import annotations

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from .common import Money, UtcDatetime


class ConnectAccountRequest(BaseModel):
    country: str | None = Field(None, min_length=2, max_length=2)
    business_type: Literal["individual", "company"] = "individual"
    refresh_url: str | None = None
    return_url: str | None = None


class ConnectAccountResponse(BaseModel):
    success: bool = True
    onboarding_url: str
    stripe_account_id: str


class ConnectStatusResponse(BaseModel):
    success: bool = True
    connected: bool
    status: Literal["active", "pending", "incomplete", "not_connected"]
    message: str
    charges_enabled: bool | None = None
    payouts_enabled: bool | None = None
    details_submitted: bool | None = None
    requirements: dict[str, list[str]] | None = None


class PayoutRequestBody(BaseModel):
    amount: Decimal


class PayoutResponse(BaseModel):
    id: int
    stripe_payout_id: str
    amount: Money
    currency: str
    status: str
    method: str | None = None
    arrival_date: UtcDatetime | None = None
    requested_at: UtcDatetime
    status_refreshed_at: UtcDatetime | None = None

    class Config:
        from_attributes = True


class PayoutEnvelope(BaseModel):
    success: bool = True
    message: str
    payout: PayoutResponse


class PayoutListResponse(BaseModel):
    success: bool = True
    payouts: list[PayoutResponse]


class EarningsResponse(BaseModel):
    success: bool = True
    connected: bool
    total_earnings: Money
    available_balance: Money
    pending_balance: Money
    currency: str
    recent_payouts: list[PayoutResponse]
    stripe_account_id: str | None = None
    message: str | None = None
