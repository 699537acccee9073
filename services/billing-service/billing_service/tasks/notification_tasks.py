from __future__ import annotations

from typing import Any

import httpx
from celery import shared_task
from celery.utils.log import get_task_logger

from ..celery_app import DEFAULT_QUEUE
from ..config import get_settings

logger = get_task_logger(__name__)


@shared_task(
    bind=True,
    name="billing.send_notification",
    queue=DEFAULT_QUEUE,
    max_retries=5,
)
def send_billing_notification_task(
    self,
    *,
    kind: str,
    user_id: str,
    email: str | None,
    context: dict[str, Any],
) -> dict[str, Any]:
    settings = get_settings()
    url = f"{settings.NOTIFICATIONS_SERVICE_URL.rstrip('/')}/notifications/billing"
    payload = {"kind": kind, "user_id": user_id, "email": email, "context": context}
    try:
        with httpx.Client(timeout=settings.NOTIFICATIONS_TIMEOUT_SECONDS) as client:
            resp = client.post(url, json=payload)
            resp.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("billing notification %s for user %s failed: %s", kind, user_id, exc)
        raise self.retry(exc=exc, countdown=min(60 * 2**self.request.retries, 900))
    return {"ok": True, "kind": kind, "user_id": user_id}
