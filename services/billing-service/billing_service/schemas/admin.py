from __future__ import annotations

from pydantic import BaseModel, Field

from .common import Money, UtcDatetime


class CoachPaymentStatus(BaseModel):
    coach_id: str
    coach_name: str | None = None
    email: str | None = None
    stripe_connect_account_id: str | None = None
    has_stripe_connected: bool
    total_earnings: Money
    pending_payouts: Money
    is_active: bool
    last_payment_date: UtcDatetime | None = None


class CoachStatusListResponse(BaseModel):
    success: bool = True
    coaches: list[CoachPaymentStatus]


class ToggleCoachStatusRequest(BaseModel):
    is_active: bool


class BulkDisableCoachesRequest(BaseModel):
    disable_without_stripe: bool


class BulkDisableCoachesResponse(BaseModel):
    success: bool = True
    message: str
    count: int
    coach_ids: list[str]


class PaymentReminderRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=255)
    reminder_type: str = "payment_overdue"


class InvoiceDocumentResponse(BaseModel):
    id: int
    user_id: str
    stripe_invoice_id: str
    invoice_number: str | None = None
    amount: Money
    currency: str
    status: str
    admin_document_path: str | None = None
    admin_document_stored_at: UtcDatetime | None = None

    class Config:
        from_attributes = True


class InvoiceDocumentListResponse(BaseModel):
    success: bool = True
    invoices: list[InvoiceDocumentResponse]


class InvoiceDocumentStoredResponse(BaseModel):
    success: bool = True
    message: str
    document_path: str
