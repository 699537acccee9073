from __future__ import annotations

from enum import Enum
from typing import Any

import structlog
from backend_common.celery_utils import enqueue_task

from .config import get_settings
from .metrics import NOTIFICATIONS_ENQUEUED_TOTAL
from .models import BillingUser
from .tasks.notification_tasks import send_billing_notification_task

logger = structlog.get_logger(__name__)


class NotificationKind(str, Enum):
    PAYMENT_FAILED = "payment_failed"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    INVOICE_EMAIL = "invoice_email"
    PAYMENT_REMINDER = "payment_reminder"


class NotificationDispatcher:
    """Fire-and-forget hand-off of billing emails/pushes to the task queue.

    Dispatch never raises: a broker outage is logged and counted, and the
    caller's billing mutation stands.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def dispatch(self, kind: NotificationKind, user: BillingUser, context: dict[str, Any] | None = None) -> bool:
        if not self.enabled:
            return False

        try:
            enqueue_task(
                send_billing_notification_task,
                logger=logger,
                log_event="billing_notification_enqueued",
                task_kwargs={
                    "kind": kind.value,
                    "user_id": user.user_id,
                    "email": user.email,
                    "context": _jsonable(context or {}),
                },
                log_extra={"kind": kind.value, "user_id": user.user_id},
            )
        except Exception:
            NOTIFICATIONS_ENQUEUED_TOTAL.labels(kind=kind.value, outcome="failed").inc()
            logger.exception("billing_notification_enqueue_failed", kind=kind.value, user_id=user.user_id)
            return False
        NOTIFICATIONS_ENQUEUED_TOTAL.labels(kind=kind.value, outcome="enqueued").inc()
        return True


def _jsonable(context: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in context.items():
        if value is None or isinstance(value, bool | int | float | str):
            out[key] = value
        elif hasattr(value, "isoformat"):
            out[key] = value.isoformat()
        else:
            out[key] = str(value)
    return out


def get_notifier() -> NotificationDispatcher:
    return NotificationDispatcher(enabled=get_settings().NOTIFICATIONS_ENABLED)
