import uuid
from collections.abc import Sequence
from typing import Any

from asgi_correlation_id import CorrelationIdMiddleware
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator


def add_envelope_error_handler(app: FastAPI, exc_class: type[Exception]) -> None:
    """Render ``exc_class`` errors as ``{"success": false, "message": ...}``.

    The exception must expose ``status_code`` and ``message`` attributes.
    """

    @app.exception_handler(exc_class)
    async def envelope_error_handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(
            status_code=getattr(exc, "status_code", 500),
            content={"success": False, "message": getattr(exc, "message", "Internal error")},
        )


def create_service_app(
    *,
    title: str,
    version: str = "0.1.0",
    description: str | None = None,
    metrics_endpoint: str | None = "/metrics",
    cors_allow_origins: Sequence[str] | None = ("*",),
    correlation_header_name: str | None = "X-Request-ID",
    **fastapi_kwargs: Any,
) -> FastAPI:
    """Build a FastAPI app with the platform middleware stack.

    Pass ``None`` for ``metrics_endpoint``, ``cors_allow_origins`` or
    ``correlation_header_name`` to leave that layer out.
    """
    app = FastAPI(title=title, version=version, description=description, **fastapi_kwargs)

    if metrics_endpoint:
        Instrumentator().instrument(app).expose(app, endpoint=metrics_endpoint, include_in_schema=False)

    if cors_allow_origins is not None:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cors_allow_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    if correlation_header_name:
        app.add_middleware(
            CorrelationIdMiddleware,
            header_name=correlation_header_name,
            generator=lambda: str(uuid.uuid4()),
            update_request_header=True,
        )

    return app
