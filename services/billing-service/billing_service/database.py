import logging
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from backend_common.database import (
    create_async_engine_and_session,
    ensure_async_driver_url,
    get_required_env_url,
)
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

DATABASE_URL = ensure_async_driver_url(get_required_env_url("BILLING_DATABASE_URL"))

parsed = urlparse(DATABASE_URL)
if parsed.scheme.startswith("postgresql+asyncpg"):
    q = dict(parse_qsl(parsed.query, keep_blank_values=True))
    sslmode = (q.pop("sslmode", None) or "").strip().lower()
    if sslmode in {"require", "verify-full", "verify-ca"}:
        q.setdefault("ssl", "true")
    elif sslmode == "disable":
        q.setdefault("ssl", "false")
    q.pop("channel_binding", None)
    DATABASE_URL = urlunparse(parsed._replace(query=urlencode(q, doseq=True)))

logger.info(f"Using DB URL scheme: {parsed.scheme}")

engine, AsyncSessionLocal = create_async_engine_and_session(DATABASE_URL, autoflush=False)
Base = declarative_base()
