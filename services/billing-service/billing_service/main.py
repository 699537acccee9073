import structlog
from backend_common.fastapi_app import add_envelope_error_handler, create_service_app
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sentry_sdk import set_tag

from .exceptions import BillingError
from .logging_config import configure_logging
from .routers.admin import router as admin_router
from .routers.billing import router as billing_router
from .routers.coach import router as coach_router
from .routers.webhooks import router as webhooks_router

configure_logging()
set_tag("service", "billing-service")
logger = structlog.get_logger(__name__)

app = create_service_app(
    title="billing-service",
    version="0.1.0",
    description="Subscriptions, payment methods, invoices and coach payouts on top of Stripe",
)

add_envelope_error_handler(app, BillingError)


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Invalid request"))
    return JSONResponse(status_code=422, content={"success": False, "message": message})


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(billing_router)
app.include_router(coach_router)
app.include_router(admin_router)
app.include_router(webhooks_router)
