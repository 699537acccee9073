from .admin import (
    BulkDisableCoachesRequest,
    BulkDisableCoachesResponse,
    CoachPaymentStatus,
    CoachStatusListResponse,
    InvoiceDocumentListResponse,
    InvoiceDocumentResponse,
    InvoiceDocumentStoredResponse,
    PaymentReminderRequest,
    ToggleCoachStatusRequest,
)
from .billing import (
    AddPaymentMethodRequest,
    BillingAnalyticsResponse,
    CancelSubscriptionRequest,
    CreateSubscriptionRequest,
    InvoiceListResponse,
    InvoiceResponse,
    PaymentHistoryResponse,
    PaymentMethodEnvelope,
    PaymentMethodListResponse,
    PaymentMethodResponse,
    SetupIntentResponse,
    SubscriptionEnvelope,
    SubscriptionResponse,
    SurchargeConfigResponse,
    SurchargeRequest,
    SurchargeResponse,
    UpdateSubscriptionRequest,
    VerifiedPaymentMethod,
    VerifyPaymentMethodResponse,
)
from .coach import (
    ConnectAccountRequest,
    ConnectAccountResponse,
    ConnectStatusResponse,
    EarningsResponse,
    PayoutEnvelope,
    PayoutListResponse,
    PayoutRequestBody,
    PayoutResponse,
)
from .common import MessageResponse, Money, UtcDatetime

__all__ = [
    "AddPaymentMethodRequest",
    "BillingAnalyticsResponse",
    "BulkDisableCoachesRequest",
    "BulkDisableCoachesResponse",
    "CancelSubscriptionRequest",
    "CoachPaymentStatus",
    "CoachStatusListResponse",
    "ConnectAccountRequest",
    "ConnectAccountResponse",
    "ConnectStatusResponse",
    "CreateSubscriptionRequest",
    "EarningsResponse",
    "InvoiceDocumentListResponse",
    "InvoiceDocumentResponse",
    "InvoiceDocumentStoredResponse",
    "InvoiceListResponse",
    "InvoiceResponse",
    "MessageResponse",
    "Money",
    "PaymentHistoryResponse",
    "PaymentMethodEnvelope",
    "PaymentMethodListResponse",
    "PaymentMethodResponse",
    "PaymentReminderRequest",
    "PayoutEnvelope",
    "PayoutListResponse",
    "PayoutRequestBody",
    "PayoutResponse",
    "SetupIntentResponse",
    "SubscriptionEnvelope",
    "SubscriptionResponse",
    "SurchargeConfigResponse",
    "SurchargeRequest",
    "SurchargeResponse",
    "ToggleCoachStatusRequest",
    "UpdateSubscriptionRequest",
    "VerifiedPaymentMethod",
    "VerifyPaymentMethodResponse",
    "UtcDatetime",
]
