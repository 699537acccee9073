"""Payment gateway adapter.

Services talk to the payment processor only through :class:`PaymentGateway`.
:class:`StripeGateway` is the production implementation; it returns plain
dataclasses so nothing outside this module touches Stripe objects, and it turns
every ``stripe.StripeError`` into :class:`GatewaySyncError` after logging the
operation name.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any, Protocol

import stripe
import structlog

from .config import get_settings
from .exceptions import GatewaySyncError, InternalError, InvalidPayloadError, SignatureError
from .metrics import GATEWAY_FAILURES_TOTAL
from .money import from_minor_units, to_minor_units
from .timeutils import from_timestamp

logger = structlog.get_logger(__name__)

SETUP_INTENT_PAYMENT_METHOD_TYPES = ["card", "us_bank_account"]


@dataclass
class SetupIntentResult:
    id: str
    client_secret: str


@dataclass
class GatewayPaymentMethod:
    id: str
    type: str
    brand: str | None
    last4: str | None
    customer_id: str | None = None


@dataclass
class GatewaySubscription:
    id: str
    customer_id: str | None
    status: str
    plan_id: str | None
    item_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool


@dataclass
class GatewayInvoice:
    id: str
    number: str | None
    invoice_pdf: str | None


@dataclass
class GatewayBalance:
    currency: str
    available: Decimal
    pending: Decimal


@dataclass
class GatewayPayout:
    id: str
    amount: Decimal
    currency: str
    status: str
    method: str | None
    arrival_date: datetime | None
    created: datetime | None
    description: str | None = None


@dataclass
class GatewayConnectedAccount:
    id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool
    requirements: dict[str, list[str]] = field(default_factory=dict)


class PaymentGateway(Protocol):
    def create_customer(
        self, *, user_id: str, email: str | None, name: str | None, idempotency_key: str
    ) -> str: ...

    def create_setup_intent(self, *, customer_id: str, user_id: str) -> SetupIntentResult: ...

    def attach_payment_method(self, *, payment_method_id: str, customer_id: str) -> GatewayPaymentMethod: ...

    def retrieve_payment_method(self, *, payment_method_id: str) -> GatewayPaymentMethod: ...

    def detach_payment_method(self, *, payment_method_id: str) -> None: ...

    def set_default_payment_method(self, *, customer_id: str, payment_method_id: str) -> None: ...

    def create_subscription(
        self, *, customer_id: str, plan_id: str, user_id: str, idempotency_key: str
    ) -> GatewaySubscription: ...

    def retrieve_subscription(self, *, subscription_id: str) -> GatewaySubscription: ...

    def update_subscription(self, *, subscription_id: str, plan_id: str) -> GatewaySubscription: ...

    def cancel_subscription(self, *, subscription_id: str, at_period_end: bool) -> GatewaySubscription: ...

    def pause_subscription(self, *, subscription_id: str) -> GatewaySubscription: ...

    def resume_subscription(self, *, subscription_id: str) -> GatewaySubscription: ...

    def retrieve_invoice(self, *, invoice_id: str) -> GatewayInvoice: ...

    def retrieve_balance(self, *, account_id: str, currency: str) -> GatewayBalance: ...

    def create_payout(
        self, *, account_id: str, amount: Decimal, currency: str, coach_id: str, idempotency_key: str
    ) -> GatewayPayout: ...

    def retrieve_payout(self, *, account_id: str, payout_id: str) -> GatewayPayout: ...

    def create_connected_account(
        self,
        *,
        user_id: str,
        email: str | None,
        name: str | None,
        country: str,
        business_type: str,
        idempotency_key: str,
    ) -> str: ...

    def retrieve_connected_account(self, *, account_id: str) -> GatewayConnectedAccount: ...

    def create_onboarding_link(self, *, account_id: str, refresh_url: str, return_url: str) -> str: ...

    def verify_webhook_signature(self, *, payload: bytes, signature: str | None) -> dict[str, Any]: ...


def verify_stripe_signature(payload: bytes, signature: str | None, secret: str, tolerance: int) -> dict[str, Any]:
    """Check a ``Stripe-Signature`` header against the raw body and return the parsed event."""
    if not secret:
        logger.error("webhook_secret_not_configured")
        raise InternalError("Webhook secret not configured")
    if not signature:
        raise SignatureError("Missing signature header")
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidPayloadError() from exc
    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise SignatureError() from exc
    try:
        event = json.loads(body)
    except ValueError as exc:
        raise InvalidPayloadError() from exc
    if not isinstance(event, dict) or not event.get("type"):
        raise InvalidPayloadError()
    return event


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def payment_method_from_payload(pm: Any) -> GatewayPaymentMethod:
    pm_type = str(_get(pm, "type", "card"))
    if pm_type == "card":
        details = _get(pm, "card")
        brand = _get(details, "brand")
    else:
        details = _get(pm, pm_type)
        brand = _get(details, "bank_name") or "Bank Account"
    customer = _get(pm, "customer")
    return GatewayPaymentMethod(
        id=str(pm["id"]),
        type=pm_type,
        brand=brand,
        last4=_get(details, "last4"),
        customer_id=_get(customer, "id") if isinstance(customer, dict) else customer,
    )


def subscription_from_payload(obj: Any) -> GatewaySubscription:
    """Build a :class:`GatewaySubscription` from a Stripe subscription object or webhook dict.

    Newer API versions moved the billing period onto the subscription item, so
    fall back to the first item when the top-level fields are absent.
    """
    items = _get(_get(obj, "items"), "data", [])
    first_item = items[0] if items else None
    price = _get(first_item, "price")
    period_start = _get(obj, "current_period_start") or _get(first_item, "current_period_start")
    period_end = _get(obj, "current_period_end") or _get(first_item, "current_period_end")
    customer = _get(obj, "customer")
    if not isinstance(customer, str):
        customer = _get(customer, "id")
    return GatewaySubscription(
        id=str(_get(obj, "id")),
        customer_id=customer,
        status=_normalize_subscription_status(_get(obj, "status", "incomplete"), _get(obj, "pause_collection")),
        plan_id=_get(price, "id"),
        item_id=_get(first_item, "id"),
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        cancel_at_period_end=bool(_get(obj, "cancel_at_period_end", False)),
    )


def _normalize_subscription_status(status: str, pause_collection: Any = None) -> str:
    # Stripe spells it "canceled"; locally it is "cancelled" everywhere.
    if status == "canceled":
        return "cancelled"
    # Collection-paused subscriptions stay "active" at Stripe.
    if status == "active" and pause_collection:
        return "paused"
    return status


def _payout_from_stripe(obj: Any) -> GatewayPayout:
    return GatewayPayout(
        id=str(_get(obj, "id")),
        amount=from_minor_units(_get(obj, "amount", 0)),
        currency=str(_get(obj, "currency", "usd")),
        status=str(_get(obj, "status", "pending")),
        method=_get(obj, "method"),
        arrival_date=from_timestamp(_get(obj, "arrival_date")),
        created=from_timestamp(_get(obj, "created")),
        description=_get(obj, "description"),
    )


class StripeGateway:
    def __init__(self, api_key: str, *, timeout: float = 10.0, max_network_retries: int = 1):
        if not api_key:
            raise GatewaySyncError("configure", "Payment provider is not configured")
        self._api_key = api_key
        stripe.api_key = api_key
        stripe.max_network_retries = max_network_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def _fail(self, operation: str, exc: stripe.StripeError, **context: Any) -> GatewaySyncError:
        GATEWAY_FAILURES_TOTAL.labels(operation=operation).inc()
        logger.error(
            "gateway_call_failed",
            operation=operation,
            stripe_code=getattr(exc, "code", None),
            http_status=getattr(exc, "http_status", None),
            request_id=getattr(exc, "request_id", None),
            **context,
        )
        return GatewaySyncError(operation)

    def create_customer(self, *, user_id: str, email: str | None, name: str | None, idempotency_key: str) -> str:
        try:
            customer = stripe.Customer.create(
                email=email,
                name=name,
                metadata={"user_id": user_id},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise self._fail("create_customer", exc, user_id=user_id) from exc
        return str(customer["id"])

    def create_setup_intent(self, *, customer_id: str, user_id: str) -> SetupIntentResult:
        try:
            intent = stripe.SetupIntent.create(
                customer=customer_id,
                payment_method_types=SETUP_INTENT_PAYMENT_METHOD_TYPES,
                metadata={"user_id": user_id},
            )
        except stripe.StripeError as exc:
            raise self._fail("create_setup_intent", exc, user_id=user_id) from exc
        return SetupIntentResult(id=str(intent["id"]), client_secret=str(intent["client_secret"]))

    def attach_payment_method(self, *, payment_method_id: str, customer_id: str) -> GatewayPaymentMethod:
        try:
            pm = stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
        except stripe.StripeError as exc:
            raise self._fail("attach_payment_method", exc, customer_id=customer_id) from exc
        return payment_method_from_payload(pm)

    def retrieve_payment_method(self, *, payment_method_id: str) -> GatewayPaymentMethod:
        try:
            pm = stripe.PaymentMethod.retrieve(payment_method_id)
        except stripe.StripeError as exc:
            raise self._fail("retrieve_payment_method", exc, payment_method_id=payment_method_id) from exc
        return payment_method_from_payload(pm)

    def detach_payment_method(self, *, payment_method_id: str) -> None:
        try:
            stripe.PaymentMethod.detach(payment_method_id)
        except stripe.StripeError as exc:
            raise self._fail("detach_payment_method", exc, payment_method_id=payment_method_id) from exc

    def set_default_payment_method(self, *, customer_id: str, payment_method_id: str) -> None:
        try:
            stripe.Customer.modify(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
            )
        except stripe.StripeError as exc:
            raise self._fail("set_default_payment_method", exc, customer_id=customer_id) from exc

    def create_subscription(
        self, *, customer_id: str, plan_id: str, user_id: str, idempotency_key: str
    ) -> GatewaySubscription:
        try:
            sub = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": plan_id}],
                expand=["latest_invoice.payment_intent"],
                metadata={"user_id": user_id},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise self._fail("create_subscription", exc, user_id=user_id) from exc
        return subscription_from_payload(sub)

    def retrieve_subscription(self, *, subscription_id: str) -> GatewaySubscription:
        try:
            sub = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as exc:
            raise self._fail("retrieve_subscription", exc, subscription_id=subscription_id) from exc
        return subscription_from_payload(sub)

    def update_subscription(self, *, subscription_id: str, plan_id: str) -> GatewaySubscription:
        current = self.retrieve_subscription(subscription_id=subscription_id)
        try:
            sub = stripe.Subscription.modify(
                subscription_id,
                items=[{"id": current.item_id, "price": plan_id}],
                proration_behavior="create_prorations",
            )
        except stripe.StripeError as exc:
            raise self._fail("update_subscription", exc, subscription_id=subscription_id) from exc
        return subscription_from_payload(sub)

    def cancel_subscription(self, *, subscription_id: str, at_period_end: bool) -> GatewaySubscription:
        try:
            if at_period_end:
                sub = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
            else:
                sub = stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as exc:
            raise self._fail("cancel_subscription", exc, subscription_id=subscription_id) from exc
        return subscription_from_payload(sub)

    def pause_subscription(self, *, subscription_id: str) -> GatewaySubscription:
        try:
            sub = stripe.Subscription.modify(subscription_id, pause_collection={"behavior": "void"})
        except stripe.StripeError as exc:
            raise self._fail("pause_subscription", exc, subscription_id=subscription_id) from exc
        return subscription_from_payload(sub)

    def resume_subscription(self, *, subscription_id: str) -> GatewaySubscription:
        try:
            # An empty string unsets pause_collection.
            sub = stripe.Subscription.modify(subscription_id, pause_collection="")
        except stripe.StripeError as exc:
            raise self._fail("resume_subscription", exc, subscription_id=subscription_id) from exc
        return subscription_from_payload(sub)

    def retrieve_invoice(self, *, invoice_id: str) -> GatewayInvoice:
        try:
            inv = stripe.Invoice.retrieve(invoice_id)
        except stripe.StripeError as exc:
            raise self._fail("retrieve_invoice", exc, invoice_id=invoice_id) from exc
        return GatewayInvoice(id=str(inv["id"]), number=_get(inv, "number"), invoice_pdf=_get(inv, "invoice_pdf"))

    def retrieve_balance(self, *, account_id: str, currency: str) -> GatewayBalance:
        try:
            balance = stripe.Balance.retrieve(stripe_account=account_id)
        except stripe.StripeError as exc:
            raise self._fail("retrieve_balance", exc, account_id=account_id) from exc
        available = sum(
            (from_minor_units(_get(b, "amount", 0)) for b in _get(balance, "available", []) if _get(b, "currency") == currency),
            Decimal("0.00"),
        )
        pending = sum(
            (from_minor_units(_get(b, "amount", 0)) for b in _get(balance, "pending", []) if _get(b, "currency") == currency),
            Decimal("0.00"),
        )
        return GatewayBalance(currency=currency, available=available, pending=pending)

    def create_payout(
        self, *, account_id: str, amount: Decimal, currency: str, coach_id: str, idempotency_key: str
    ) -> GatewayPayout:
        try:
            payout = stripe.Payout.create(
                amount=to_minor_units(amount),
                currency=currency,
                method="instant",
                description="Coach payout",
                metadata={"user_id": coach_id},
                stripe_account=account_id,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise self._fail("create_payout", exc, coach_id=coach_id) from exc
        return _payout_from_stripe(payout)

    def retrieve_payout(self, *, account_id: str, payout_id: str) -> GatewayPayout:
        try:
            payout = stripe.Payout.retrieve(payout_id, stripe_account=account_id)
        except stripe.StripeError as exc:
            raise self._fail("retrieve_payout", exc, payout_id=payout_id) from exc
        return _payout_from_stripe(payout)

    def create_connected_account(
        self,
        *,
        user_id: str,
        email: str | None,
        name: str | None,
        country: str,
        business_type: str,
        idempotency_key: str,
    ) -> str:
        try:
            account = stripe.Account.create(
                type="express",
                country=country,
                email=email,
                capabilities={
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
                business_type=business_type,
                metadata={"user_id": user_id, "coach_name": name or ""},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise self._fail("create_connected_account", exc, coach_id=user_id) from exc
        return str(account["id"])

    def retrieve_connected_account(self, *, account_id: str) -> GatewayConnectedAccount:
        try:
            account = stripe.Account.retrieve(account_id)
        except stripe.StripeError as exc:
            raise self._fail("retrieve_connected_account", exc, account_id=account_id) from exc
        requirements = _get(account, "requirements")
        return GatewayConnectedAccount(
            id=str(account["id"]),
            charges_enabled=bool(_get(account, "charges_enabled", False)),
            payouts_enabled=bool(_get(account, "payouts_enabled", False)),
            details_submitted=bool(_get(account, "details_submitted", False)),
            requirements={
                "currently_due": list(_get(requirements, "currently_due", [])),
                "eventually_due": list(_get(requirements, "eventually_due", [])),
                "past_due": list(_get(requirements, "past_due", [])),
            },
        )

    def create_onboarding_link(self, *, account_id: str, refresh_url: str, return_url: str) -> str:
        try:
            link = stripe.AccountLink.create(
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            )
        except stripe.StripeError as exc:
            raise self._fail("create_onboarding_link", exc, account_id=account_id) from exc
        return str(link["url"])

    def verify_webhook_signature(self, *, payload: bytes, signature: str | None) -> dict[str, Any]:
        settings = get_settings()
        return verify_stripe_signature(
            payload,
            signature,
            settings.STRIPE_WEBHOOK_SECRET,
            settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )


@lru_cache(maxsize=1)
def _stripe_gateway() -> StripeGateway:
    settings = get_settings()
    return StripeGateway(
        settings.STRIPE_SECRET_KEY,
        timeout=settings.STRIPE_TIMEOUT_SECONDS,
        max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
    )


def get_gateway() -> PaymentGateway:
    return _stripe_gateway()
