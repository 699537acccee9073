import logging
import os
import sys
from collections.abc import Iterable

import sentry_sdk
import structlog
from asgi_correlation_id.context import correlation_id
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from structlog.contextvars import merge_contextvars

DEV_ENVIRONMENTS = frozenset({"local", "dev", "test"})

# Card and bank fields that must never reach a log sink.
SENSITIVE_KEYS = frozenset(
    {
        "card",
        "number",
        "cvc",
        "exp_month",
        "exp_year",
        "account_number",
        "routing_number",
        "bank_account",
        "client_secret",
    }
)
REDACTED = "[redacted]"


def _scrub(value):
    if isinstance(value, dict):
        return {k: (REDACTED if k in SENSITIVE_KEYS else _scrub(v)) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_scrub(v) for v in value]
    return value


def scrub_payment_details(logger, method_name, event_dict):
    """Drop card and bank fields from log events before they are rendered."""
    for key in list(event_dict.keys()):
        if key in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(event_dict[key], dict | list | tuple):
            event_dict[key] = _scrub(event_dict[key])
    return event_dict


def _service_context(service_name: str, app_env: str):
    def processor(logger, method_name, event_dict):
        event_dict.setdefault("service", service_name)
        event_dict.setdefault("env", app_env)
        cid = correlation_id.get(None)
        if cid is not None:
            event_dict["correlation_id"] = cid
            sentry_sdk.set_tag("correlation_id", cid)
        return event_dict

    return processor


def _init_sentry(service_name: str, app_env: str, extra_integrations: Iterable[object] | None) -> None:
    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        return

    integrations: list[object] = [FastApiIntegration(), *(extra_integrations or ())]
    integrations.append(LoggingIntegration(level=logging.INFO, event_level=logging.ERROR))
    sentry_sdk.init(
        dsn=dsn,
        environment=app_env,
        integrations=integrations,
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
        send_default_pii=False,
    )
    sentry_sdk.set_tag("service", service_name)


def configure_logging(default_service_name: str, extra_sentry_integrations: Iterable[object] | None = None) -> None:
    """Route stdlib and structlog output through one pipeline.

    Console rendering in local, dev and test environments, JSON elsewhere.
    Payment details are scrubbed before any renderer sees the event.
    """
    service_name = os.getenv("SERVICE_NAME", default_service_name)
    app_env = os.getenv("APP_ENV", "local")
    log_level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)

    _init_sentry(service_name, app_env, extra_sentry_integrations)

    processors = [
        merge_contextvars,
        _service_context(service_name, app_env),
        scrub_payment_details,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if app_env in DEV_ENVIRONMENTS:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level, force=True)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
