from __future__ import annotations

from datetime import date

from backend_common.dependencies import CallerIdentity
from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from .. import schemas
from ..dependencies import get_billing_user, get_caller, get_db
from ..gateway import PaymentGateway, get_gateway
from ..models import BillingUser
from ..notifications import NotificationDispatcher, get_notifier
from ..services.billing_service import BillingService
from ..services.surcharge import calculate_surcharge, surcharge_config

router = APIRouter(prefix="/billing", tags=["billing"])


def get_billing_service(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> BillingService:
    return BillingService(db, gateway, notifier)


@router.post("/setup-intent", response_model=schemas.SetupIntentResponse)
async def create_setup_intent(
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    intent, customer_id = await service.create_setup_intent(user)
    return schemas.SetupIntentResponse(clientSecret=intent.client_secret, customerId=customer_id)


@router.post("/payment-methods", response_model=schemas.PaymentMethodEnvelope)
async def add_payment_method(
    payload: schemas.AddPaymentMethodRequest,
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    method = await service.add_payment_method(user, payload.payment_method_id)
    return schemas.PaymentMethodEnvelope(
        message="Payment method added successfully",
        payment_method=schemas.PaymentMethodResponse.model_validate(method),
    )


@router.get("/payment-methods", response_model=schemas.PaymentMethodListResponse)
async def list_payment_methods(
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    methods = await service.list_payment_methods(user)
    return schemas.PaymentMethodListResponse(
        payment_methods=[schemas.PaymentMethodResponse.model_validate(m) for m in methods]
    )


@router.put("/payment-methods/{method_id}/default", response_model=schemas.MessageResponse)
async def set_default_payment_method(
    method_id: int,
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    await service.set_default_payment_method(user, method_id)
    return schemas.MessageResponse(message="Default payment method updated")


@router.get("/payment-methods/{method_id}/verify", response_model=schemas.VerifyPaymentMethodResponse)
async def verify_payment_method(
    method_id: int,
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    remote = await service.verify_payment_method(user, method_id)
    return schemas.VerifyPaymentMethodResponse(
        payment_method=schemas.VerifiedPaymentMethod(
            stripe_payment_method_id=remote.id,
            type=remote.type,
            brand=remote.brand,
            last4=remote.last4,
        )
    )


@router.delete("/payment-methods/{method_id}", response_model=schemas.MessageResponse)
async def delete_payment_method(
    method_id: int,
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    await service.delete_payment_method(user, method_id)
    return schemas.MessageResponse(message="Payment method deleted successfully")


@router.post("/subscriptions", response_model=schemas.SubscriptionEnvelope)
async def create_subscription(
    payload: schemas.CreateSubscriptionRequest,
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    subscription = await service.create_subscription(
        user, payload.plan_id, payload.payment_method_id, idempotency_key=idempotency_key
    )
    return schemas.SubscriptionEnvelope(
        message="Subscription created successfully",
        subscription=schemas.SubscriptionResponse.model_validate(subscription),
    )


@router.get("/subscription", response_model=schemas.SubscriptionEnvelope)
async def get_subscription(
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    subscription, synced = await service.get_subscription(user)
    if subscription is None:
        return schemas.SubscriptionEnvelope(subscription=None)
    return schemas.SubscriptionEnvelope(
        subscription=schemas.SubscriptionResponse.model_validate(subscription),
        synced=synced,
    )


@router.put("/subscription", response_model=schemas.SubscriptionEnvelope)
async def update_subscription(
    payload: schemas.UpdateSubscriptionRequest,
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    subscription = await service.update_subscription(user, payload.plan_id)
    return schemas.SubscriptionEnvelope(
        message="Subscription updated successfully",
        subscription=schemas.SubscriptionResponse.model_validate(subscription),
    )


@router.delete("/subscription", response_model=schemas.SubscriptionEnvelope)
async def cancel_subscription(
    payload: schemas.CancelSubscriptionRequest | None = None,
    immediately: bool = Query(False),
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    immediately = payload.immediately if payload is not None else immediately
    subscription = await service.cancel_subscription(user, immediately=immediately)
    message = (
        "Subscription cancelled immediately"
        if immediately
        else "Subscription will cancel at end of billing period"
    )
    return schemas.SubscriptionEnvelope(
        message=message,
        subscription=schemas.SubscriptionResponse.model_validate(subscription),
    )


@router.post("/subscription/pause", response_model=schemas.SubscriptionEnvelope)
async def pause_subscription(
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    subscription = await service.pause_subscription(user)
    return schemas.SubscriptionEnvelope(
        message="Subscription paused successfully",
        subscription=schemas.SubscriptionResponse.model_validate(subscription),
    )


@router.post("/subscription/resume", response_model=schemas.SubscriptionEnvelope)
async def resume_subscription(
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    subscription = await service.resume_subscription(user)
    return schemas.SubscriptionEnvelope(
        message="Subscription resumed successfully",
        subscription=schemas.SubscriptionResponse.model_validate(subscription),
    )


@router.get("/invoices", response_model=schemas.InvoiceListResponse)
async def list_invoices(
    limit: int = Query(10, ge=1, le=100),
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    invoices = await service.list_invoices(user, limit)
    return schemas.InvoiceListResponse(invoices=[schemas.InvoiceResponse.model_validate(i) for i in invoices])


@router.get("/invoices/{invoice_id}/pdf")
async def download_invoice_pdf(
    invoice_id: int,
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    url = await service.invoice_pdf_url(user, invoice_id)
    return RedirectResponse(url, status_code=302)


@router.post("/invoices/{invoice_id}/email", response_model=schemas.MessageResponse)
async def email_invoice(
    invoice_id: int,
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    await service.email_invoice(user, invoice_id)
    return schemas.MessageResponse(message="Invoice emailed successfully")


@router.get("/analytics", response_model=schemas.BillingAnalyticsResponse)
async def billing_analytics(
    period: int = Query(30, ge=1, le=3650),
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    analytics = await service.billing_analytics(user, period_days=period)
    return schemas.BillingAnalyticsResponse.model_validate({"analytics": analytics})


@router.get("/history", response_model=schemas.PaymentHistoryResponse)
async def payment_history(
    status: str | None = Query(None),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    page: int = Query(1, ge=1),
    user: BillingUser = Depends(get_billing_user),
    service: BillingService = Depends(get_billing_service),
):
    history = await service.payment_history(
        user, status=status, start_date=start_date, end_date=end_date, limit=limit, page=page
    )
    return schemas.PaymentHistoryResponse.model_validate(history)


@router.post("/surcharge/calculate", response_model=schemas.SurchargeResponse)
async def calculate_surcharge_endpoint(
    payload: schemas.SurchargeRequest,
    caller: CallerIdentity = Depends(get_caller),
):
    quote = calculate_surcharge(
        payload.amount,
        payload.payment_method_type,
        payload.card_type,
        payload.state_code,
    )
    return schemas.SurchargeResponse.model_validate(quote)


@router.get("/surcharge/config", response_model=schemas.SurchargeConfigResponse)
async def get_surcharge_config(caller: CallerIdentity = Depends(get_caller)):
    return schemas.SurchargeConfigResponse.model_validate({"config": surcharge_config().as_dict()})
