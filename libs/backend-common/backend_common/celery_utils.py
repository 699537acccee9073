from __future__ import annotations

from typing import Any


def enqueue_task(
    task_fn,
    *,
    logger,
    log_event: str,
    task_kwargs: dict[str, Any],
    log_extra: dict[str, Any] | None = None,
    queue: str | None = None,
    countdown: float | None = None,
) -> dict[str, Any]:
    signature = task_fn.s(**task_kwargs)
    options: dict[str, Any] = {}
    if queue:
        options["queue"] = queue
    if countdown is not None:
        options["countdown"] = countdown
    async_result = signature.apply_async(**options)

    log_payload: dict[str, Any] = {
        "task_id": async_result.id,
        "task_name": getattr(task_fn, "name", getattr(task_fn, "__name__", None)),
    }
    if log_extra:
        log_payload.update(log_extra)

    try:
        logger.info(log_event, **log_payload)
    except Exception:
        # Logging must not break the primary flow
        logger.exception("failed_to_log_task_enqueued", log_event=log_event)

    return {
        "task_id": async_result.id,
        "status": async_result.status,
    }
