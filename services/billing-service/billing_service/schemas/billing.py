from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field

from .common import Money, UtcDatetime


class SetupIntentResponse(BaseModel):
    success: bool = True
    clientSecret: str
    customerId: str


class AddPaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(..., min_length=1, max_length=255)


class PaymentMethodResponse(BaseModel):
    id: int
    stripe_payment_method_id: str
    type: str
    brand: str | None = None
    last4: str | None = None
    is_default: bool
    created_at: UtcDatetime | None = None

    class Config:
        from_attributes = True


class PaymentMethodEnvelope(BaseModel):
    success: bool = True
    message: str
    payment_method: PaymentMethodResponse


class PaymentMethodListResponse(BaseModel):
    success: bool = True
    payment_methods: list[PaymentMethodResponse]


class VerifiedPaymentMethod(BaseModel):
    stripe_payment_method_id: str
    type: str
    brand: str | None = None
    last4: str | None = None
    verified: bool = True


class VerifyPaymentMethodResponse(BaseModel):
    success: bool = True
    payment_method: VerifiedPaymentMethod


class CreateSubscriptionRequest(BaseModel):
    plan_id: str = Field(..., min_length=1, max_length=255)
    payment_method_id: str = Field(..., min_length=1, max_length=255)


class UpdateSubscriptionRequest(BaseModel):
    plan_id: str = Field(..., min_length=1, max_length=255)


class CancelSubscriptionRequest(BaseModel):
    immediately: bool = False


class SubscriptionResponse(BaseModel):
    id: int
    stripe_subscription_id: str
    plan_id: str | None = None
    status: str
    current_period_start: UtcDatetime | None = None
    current_period_end: UtcDatetime | None = None
    cancel_at_period_end: bool
    cancelled_at: UtcDatetime | None = None
    paused_at: UtcDatetime | None = None

    class Config:
        from_attributes = True


class SubscriptionEnvelope(BaseModel):
    success: bool = True
    message: str | None = None
    subscription: SubscriptionResponse | None = None
    synced: bool | None = None


class InvoiceResponse(BaseModel):
    id: int
    stripe_invoice_id: str
    invoice_number: str | None = None
    amount: Money
    currency: str
    status: str
    invoice_date: UtcDatetime | None = None
    paid_at: UtcDatetime | None = None
    invoice_pdf: str | None = None

    class Config:
        from_attributes = True


class InvoiceListResponse(BaseModel):
    success: bool = True
    invoices: list[InvoiceResponse]


class SurchargeRequest(BaseModel):
    amount: Decimal
    payment_method_type: str
    card_type: str | None = None
    state_code: str | None = None


class SurchargeResponse(BaseModel):
    success: bool = True
    original_amount: Money
    surcharge_amount: Money
    total_amount: Money
    surcharge_enabled: bool
    payment_method_type: str

    class Config:
        from_attributes = True


class SurchargeConfigBody(BaseModel):
    enabled: bool
    credit_card_rate: Money
    credit_card_fixed: Money
    debit_card_rate: Money
    debit_card_fixed: Money
    display_name: str
    restricted_states: list[str]


class SurchargeConfigResponse(BaseModel):
    success: bool = True
    config: SurchargeConfigBody


class MonthlySpending(BaseModel):
    month: str
    total: Money


class SubscriptionSummary(BaseModel):
    plan_id: str | None = None
    status: str
    current_period_end: str | None = None
    cancel_at_period_end: bool
    days_until_renewal: int | None = None


class PaymentMethodTypeCount(BaseModel):
    type: str
    count: int


class BillingAnalytics(BaseModel):
    total_spent: Money
    monthly_spending: list[MonthlySpending]
    subscription: SubscriptionSummary | None = None
    recent_invoices: list[InvoiceResponse]
    payment_methods: list[PaymentMethodTypeCount]
    period_days: int


class BillingAnalyticsResponse(BaseModel):
    success: bool = True
    analytics: BillingAnalytics


class HistoryTotals(BaseModel):
    total: Money
    paid: Money
    failed: Money
    pending: Money


class HistoryPage(BaseModel):
    data: list[InvoiceResponse]
    current_page: int
    per_page: int
    total: int
    last_page: int


class PaymentHistoryResponse(BaseModel):
    success: bool = True
    history: HistoryPage
    totals: HistoryTotals
