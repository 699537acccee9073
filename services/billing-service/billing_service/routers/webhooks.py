import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..dependencies import get_db
from ..exceptions import BillingError
from ..gateway import PaymentGateway, get_gateway
from ..metrics import WEBHOOK_EVENTS_TOTAL
from ..notifications import NotificationDispatcher, get_notifier
from ..webhooks import WebhookProcessor

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payment-gateway")
@router.post("/stripe", include_in_schema=False)
async def payment_gateway_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    payload: bytes = await request.body()
    signature = request.headers.get("stripe-signature") or request.headers.get("x-signature")
    event = gateway.verify_webhook_signature(payload=payload, signature=signature)

    event_type = str(event.get("type"))
    processor = WebhookProcessor(db, notifier, livemode=get_settings().stripe_livemode)
    try:
        outcome = await processor.process(event)
    except BillingError:
        await db.rollback()
        raise
    except Exception:
        await db.rollback()
        logger.exception("webhook_handler_failed", event_type=event_type, event_id=event.get("id"))
        WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type, outcome="failed").inc()
        return JSONResponse(status_code=500, content={"success": False, "message": "Webhook handling failed"})

    logger.info("webhook_event_handled", event_type=event_type, outcome=outcome.value)
    return {"success": True}
