from __future__ import annotations

from celery import Celery

from .config import get_settings

settings = get_settings()
DEFAULT_QUEUE = settings.CELERY_BILLING_QUEUE

celery_app = Celery(
    "billing_service",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue=DEFAULT_QUEUE,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_time_limit=120,
    result_expires=3600,
    # Enqueue fails fast when the broker is unreachable.
    broker_connection_timeout=2,
    broker_transport_options={"max_retries": 1, "socket_timeout": 2, "socket_connect_timeout": 2},
)

celery_app.conf.include = ["billing_service.tasks.notification_tasks"]
