"""Webhook reconciliation: the one place where gateway truth overwrites local state.

Every handled event type maps, through ``EVENT_HANDLERS``, to the pydantic model
its ``data.object`` is validated against and a single async handler. Handlers
upsert by the gateway's object id, so replays converge on the same rows.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import pydantic
import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from .exceptions import InvalidPayloadError
from .gateway import subscription_from_payload
from .metrics import WEBHOOK_EVENTS_TOTAL
from .models import (
    BillingUser,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from .money import from_minor_units
from .notifications import NotificationDispatcher, NotificationKind
from .repositories.billing_repository import BillingRepository, commit_with_conflict_retry
from .timeutils import from_timestamp, utcnow

logger = structlog.get_logger(__name__)


class WebhookEventType(str, Enum):
    PAYMENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SETUP_INTENT_SUCCEEDED = "setup_intent.succeeded"
    PAYMENT_METHOD_ATTACHED = "payment_method.attached"
    PAYMENT_METHOD_DETACHED = "payment_method.detached"


class Outcome(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    IGNORED = "ignored"


# -- payload variants --------------------------------------------------------


class _GatewayObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    customer: str | None = None

    @field_validator("customer", mode="before")
    @classmethod
    def _customer_id(cls, value: Any) -> Any:
        # Expanded customers arrive as objects.
        if isinstance(value, dict):
            return value.get("id")
        return value


class PaymentIntentPayload(_GatewayObject):
    amount: int = 0
    amount_received: int | None = None
    currency: str = "usd"
    created: int | None = None
    payment_method_types: list[str] = Field(default_factory=list)
    last_payment_error: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def failure_message(self) -> str:
        return (self.last_payment_error or {}).get("message") or "Unknown error"


class SubscriptionPayload(_GatewayObject):
    status: str


class InvoicePayload(_GatewayObject):
    number: str | None = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str = "usd"
    created: int | None = None
    invoice_pdf: str | None = None
    status_transitions: dict[str, Any] = Field(default_factory=dict)

    @field_validator("status_transitions", mode="before")
    @classmethod
    def _transitions(cls, value: Any) -> Any:
        return value or {}


class PaymentMethodPayload(_GatewayObject):
    type: str | None = None


class SetupIntentPayload(_GatewayObject):
    payment_method: str | None = None

    @field_validator("payment_method", mode="before")
    @classmethod
    def _payment_method_id(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("id")
        return value


# -- processor ---------------------------------------------------------------


class WebhookProcessor:
    def __init__(self, db: AsyncSession, notifier: NotificationDispatcher, *, livemode: bool):
        self.db = db
        self.notifier = notifier
        self.livemode = livemode

    async def process(self, event: dict[str, Any]) -> Outcome:
        """Apply one verified event. Raises on handler failure so the gateway retries."""
        event_type = str(event.get("type"))
        event_id = event.get("id")
        try:
            kind = WebhookEventType(event_type)
        except ValueError:
            logger.info("webhook_event_unhandled", event_type=event_type, event_id=event_id)
            WEBHOOK_EVENTS_TOTAL.labels(event_type="unhandled", outcome=Outcome.IGNORED.value).inc()
            return Outcome.IGNORED

        if "livemode" in event and bool(event["livemode"]) != self.livemode:
            logger.warning(
                "webhook_event_wrong_mode",
                event_type=event_type,
                event_id=event_id,
                event_livemode=bool(event["livemode"]),
            )
            WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type, outcome=Outcome.IGNORED.value).inc()
            return Outcome.IGNORED

        route = EVENT_HANDLERS[kind]
        data = event.get("data")
        if not isinstance(data, dict):
            logger.warning("webhook_payload_invalid", event_type=event_type, event_id=event_id)
            raise InvalidPayloadError()
        raw_object = data.get("object")
        try:
            payload = route.payload_model.model_validate(raw_object)
        except pydantic.ValidationError as exc:
            logger.warning("webhook_payload_invalid", event_type=event_type, event_id=event_id)
            raise InvalidPayloadError() from exc

        structlog.contextvars.bind_contextvars(event_type=event_type, event_id=event_id)
        try:
            outcome = await route.handler(self, payload)
        finally:
            structlog.contextvars.unbind_contextvars("event_type", "event_id")
        WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type, outcome=outcome.value).inc()
        return outcome

    async def user_for_customer(self, customer_id: str | None) -> BillingUser | None:
        user = await BillingRepository.get_user_by_customer_id(self.db, customer_id)
        if user is None:
            logger.warning("webhook_user_not_found", customer_id=customer_id)
        return user

    def notify(self, kind: NotificationKind, user: BillingUser, context: dict[str, Any]) -> None:
        self.notifier.dispatch(kind, user, context)


# -- handlers ----------------------------------------------------------------


async def handle_payment_succeeded(ctx: WebhookProcessor, pi: PaymentIntentPayload) -> Outcome:
    async def apply() -> Outcome:
        user = await ctx.user_for_customer(pi.customer)
        if user is None:
            return Outcome.SKIPPED
        existing = await BillingRepository.find_by_external_id(ctx.db, Payment, "transaction_id", pi.id)
        values = {
            "user_id": user.user_id,
            "amount": from_minor_units(pi.amount_received if pi.amount_received is not None else pi.amount),
            "currency": pi.currency.upper(),
            "status": PaymentStatus.COMPLETED.value,
            "payment_method": pi.payment_method_types[0] if pi.payment_method_types else "card",
            "payment_date": (existing.payment_date if existing is not None else None)
            or from_timestamp(pi.created)
            or utcnow(),
            "failure_message": None,
        }
        coach_id = pi.metadata.get("coach_id")
        if coach_id:
            values["coach_id"] = str(coach_id)
        await BillingRepository.upsert(ctx.db, Payment, "transaction_id", pi.id, values)
        return Outcome.PROCESSED

    outcome = await commit_with_conflict_retry(ctx.db, apply, operation="payment_succeeded")
    logger.info("payment_recorded", transaction_id=pi.id, outcome=outcome.value)
    return outcome


async def handle_payment_failed(ctx: WebhookProcessor, pi: PaymentIntentPayload) -> Outcome:
    async def apply() -> tuple[Outcome, BillingUser | None]:
        user = await ctx.user_for_customer(pi.customer)
        if user is None:
            return Outcome.SKIPPED, None
        existing = await BillingRepository.find_by_external_id(ctx.db, Payment, "transaction_id", pi.id)
        if existing is not None and existing.status == PaymentStatus.COMPLETED.value:
            logger.info("stale_payment_failure_ignored", transaction_id=pi.id)
            return Outcome.SKIPPED, None
        await BillingRepository.upsert(
            ctx.db,
            Payment,
            "transaction_id",
            pi.id,
            {
                "user_id": user.user_id,
                "amount": from_minor_units(pi.amount),
                "currency": pi.currency.upper(),
                "status": PaymentStatus.FAILED.value,
                "payment_method": pi.payment_method_types[0] if pi.payment_method_types else "card",
                "failure_message": pi.failure_message,
            },
        )
        return Outcome.PROCESSED, user

    outcome, user = await commit_with_conflict_retry(ctx.db, apply, operation="payment_failed")
    logger.warning("payment_failed", transaction_id=pi.id, outcome=outcome.value)
    if user is not None:
        ctx.notify(
            NotificationKind.PAYMENT_FAILED,
            user,
            {"amount": from_minor_units(pi.amount), "currency": pi.currency.upper(), "error": pi.failure_message},
        )
    return outcome


async def handle_subscription_created(ctx: WebhookProcessor, payload: SubscriptionPayload) -> Outcome:
    gsub = subscription_from_payload(payload.model_dump())

    async def apply() -> Outcome:
        user = await ctx.user_for_customer(gsub.customer_id)
        if user is None:
            return Outcome.SKIPPED
        subscription, created = await BillingRepository.upsert(
            ctx.db,
            Subscription,
            "stripe_subscription_id",
            gsub.id,
            {
                "user_id": user.user_id,
                "plan_id": gsub.plan_id,
                "status": gsub.status,
                "current_period_start": gsub.current_period_start,
                "current_period_end": gsub.current_period_end,
                "cancel_at_period_end": gsub.cancel_at_period_end,
            },
        )
        user.subscription_status = subscription.status
        user.subscription_expires_at = subscription.current_period_end
        logger.info("subscription_mirrored", subscription_id=gsub.id, created=created)
        return Outcome.PROCESSED

    return await commit_with_conflict_retry(ctx.db, apply, operation="subscription_created")


async def handle_subscription_updated(ctx: WebhookProcessor, payload: SubscriptionPayload) -> Outcome:
    gsub = subscription_from_payload(payload.model_dump())
    subscription = await BillingRepository.find_by_external_id(
        ctx.db, Subscription, "stripe_subscription_id", gsub.id
    )
    if subscription is None:
        # Never guess the owner; subscription.created or the API inserts it.
        logger.warning("webhook_subscription_not_found", subscription_id=gsub.id)
        return Outcome.SKIPPED

    subscription.status = gsub.status
    if gsub.plan_id:
        subscription.plan_id = gsub.plan_id
    if gsub.current_period_start is not None:
        subscription.current_period_start = gsub.current_period_start
    if gsub.current_period_end is not None:
        subscription.current_period_end = gsub.current_period_end
    subscription.cancel_at_period_end = gsub.cancel_at_period_end
    if gsub.status == SubscriptionStatus.CANCELLED.value:
        subscription.cancelled_at = subscription.cancelled_at or utcnow()
    if gsub.status == SubscriptionStatus.PAUSED.value:
        subscription.paused_at = subscription.paused_at or utcnow()
    else:
        subscription.paused_at = None

    owner = await BillingRepository.get_user(ctx.db, subscription.user_id)
    if owner is not None:
        owner.subscription_status = subscription.status
        owner.subscription_expires_at = subscription.current_period_end
    await ctx.db.commit()
    logger.info("subscription_mirrored", subscription_id=gsub.id, status=gsub.status)
    return Outcome.PROCESSED


async def handle_subscription_deleted(ctx: WebhookProcessor, payload: SubscriptionPayload) -> Outcome:
    subscription = await BillingRepository.find_by_external_id(
        ctx.db, Subscription, "stripe_subscription_id", payload.id
    )
    if subscription is not None:
        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.cancelled_at = subscription.cancelled_at or utcnow()
        subscription.cancel_at_period_end = False

    user = await ctx.user_for_customer(payload.customer)
    if user is not None:
        user.subscription_status = SubscriptionStatus.CANCELLED.value
        user.subscription_expires_at = None

    if subscription is None and user is None:
        return Outcome.SKIPPED
    await ctx.db.commit()
    logger.info("subscription_cancelled_by_gateway", subscription_id=payload.id)
    return Outcome.PROCESSED


async def handle_invoice_payment_succeeded(ctx: WebhookProcessor, inv: InvoicePayload) -> Outcome:
    async def apply() -> tuple[Outcome, BillingUser | None]:
        user = await ctx.user_for_customer(inv.customer)
        if user is None:
            return Outcome.SKIPPED, None
        existing = await BillingRepository.find_by_external_id(ctx.db, Invoice, "stripe_invoice_id", inv.id)
        already_paid = existing is not None and existing.status == InvoiceStatus.PAID.value
        await BillingRepository.upsert(
            ctx.db,
            Invoice,
            "stripe_invoice_id",
            inv.id,
            {
                "user_id": user.user_id,
                "invoice_number": inv.number or (existing.invoice_number if existing is not None else None),
                "amount": from_minor_units(inv.amount_paid),
                "currency": inv.currency.upper(),
                "status": InvoiceStatus.PAID.value,
                "invoice_date": from_timestamp(inv.created),
                "paid_at": (existing.paid_at if already_paid else None)
                or from_timestamp(inv.status_transitions.get("paid_at"))
                or utcnow(),
                "invoice_pdf": inv.invoice_pdf or (existing.invoice_pdf if existing is not None else None),
            },
        )
        # Replays must not re-send the receipt.
        return Outcome.PROCESSED, (None if already_paid else user)

    outcome, notify_user = await commit_with_conflict_retry(ctx.db, apply, operation="invoice_payment_succeeded")
    logger.info("invoice_paid", invoice_id=inv.id, outcome=outcome.value)
    if notify_user is not None:
        ctx.notify(
            NotificationKind.INVOICE_PAID,
            notify_user,
            {
                "invoice_number": inv.number,
                "amount": from_minor_units(inv.amount_paid),
                "currency": inv.currency.upper(),
                "invoice_pdf": inv.invoice_pdf,
            },
        )
    return outcome


async def handle_invoice_payment_failed(ctx: WebhookProcessor, inv: InvoicePayload) -> Outcome:
    async def apply() -> tuple[Outcome, BillingUser | None]:
        user = await ctx.user_for_customer(inv.customer)
        if user is None:
            return Outcome.SKIPPED, None
        existing = await BillingRepository.find_by_external_id(ctx.db, Invoice, "stripe_invoice_id", inv.id)
        if existing is not None and existing.status == InvoiceStatus.PAID.value:
            logger.info("stale_invoice_failure_ignored", invoice_id=inv.id)
            return Outcome.SKIPPED, None
        await BillingRepository.upsert(
            ctx.db,
            Invoice,
            "stripe_invoice_id",
            inv.id,
            {
                "user_id": user.user_id,
                "invoice_number": inv.number or (existing.invoice_number if existing is not None else None),
                "amount": from_minor_units(inv.amount_due),
                "currency": inv.currency.upper(),
                "status": InvoiceStatus.FAILED.value,
                "invoice_date": from_timestamp(inv.created),
            },
        )
        return Outcome.PROCESSED, user

    outcome, user = await commit_with_conflict_retry(ctx.db, apply, operation="invoice_payment_failed")
    logger.warning("invoice_payment_failed", invoice_id=inv.id, outcome=outcome.value)
    if user is not None:
        ctx.notify(
            NotificationKind.INVOICE_PAYMENT_FAILED,
            user,
            {
                "invoice_number": inv.number,
                "amount": from_minor_units(inv.amount_due),
                "currency": inv.currency.upper(),
            },
        )
    return outcome


async def handle_setup_intent_succeeded(ctx: WebhookProcessor, payload: SetupIntentPayload) -> Outcome:
    # The API records the method when the client confirms it.
    logger.info("setup_intent_succeeded", setup_intent_id=payload.id)
    return Outcome.IGNORED


async def handle_payment_method_attached(ctx: WebhookProcessor, payload: PaymentMethodPayload) -> Outcome:
    logger.info("payment_method_attached", payment_method_id=payload.id)
    return Outcome.IGNORED


async def handle_payment_method_detached(ctx: WebhookProcessor, payload: PaymentMethodPayload) -> Outcome:
    method = await BillingRepository.find_by_external_id(
        ctx.db, PaymentMethod, "stripe_payment_method_id", payload.id
    )
    if method is None:
        return Outcome.SKIPPED
    was_default = method.is_default
    await ctx.db.delete(method)
    await ctx.db.commit()
    logger.info("payment_method_removed", payment_method_id=payload.id, was_default=was_default)
    return Outcome.PROCESSED


@dataclass(frozen=True)
class EventRoute:
    payload_model: type[BaseModel]
    handler: Callable[[WebhookProcessor, Any], Awaitable[Outcome]]


EVENT_HANDLERS: dict[WebhookEventType, EventRoute] = {
    WebhookEventType.PAYMENT_SUCCEEDED: EventRoute(PaymentIntentPayload, handle_payment_succeeded),
    WebhookEventType.PAYMENT_FAILED: EventRoute(PaymentIntentPayload, handle_payment_failed),
    WebhookEventType.SUBSCRIPTION_CREATED: EventRoute(SubscriptionPayload, handle_subscription_created),
    WebhookEventType.SUBSCRIPTION_UPDATED: EventRoute(SubscriptionPayload, handle_subscription_updated),
    WebhookEventType.SUBSCRIPTION_DELETED: EventRoute(SubscriptionPayload, handle_subscription_deleted),
    WebhookEventType.INVOICE_PAYMENT_SUCCEEDED: EventRoute(InvoicePayload, handle_invoice_payment_succeeded),
    WebhookEventType.INVOICE_PAYMENT_FAILED: EventRoute(InvoicePayload, handle_invoice_payment_failed),
    WebhookEventType.SETUP_INTENT_SUCCEEDED: EventRoute(SetupIntentPayload, handle_setup_intent_succeeded),
    WebhookEventType.PAYMENT_METHOD_ATTACHED: EventRoute(PaymentMethodPayload, handle_payment_method_attached),
    WebhookEventType.PAYMENT_METHOD_DETACHED: EventRoute(PaymentMethodPayload, handle_payment_method_detached),
}

_unrouted = set(WebhookEventType) - set(EVENT_HANDLERS)
if _unrouted:
    raise RuntimeError(f"Webhook event types without a handler: {sorted(e.value for e in _unrouted)}")
