from .audit import AdminAction
from .billing import (
    BillingUser,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from .payouts import PayoutRequest

__all__ = [
    "AdminAction",
    "BillingUser",
    "Invoice",
    "InvoiceStatus",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "PayoutRequest",
    "Subscription",
    "SubscriptionStatus",
]
