from logging.config import fileConfig
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from alembic import context
from backend_common.database import to_sync_driver_url
from sqlalchemy import engine_from_config, pool

from billing_service import models  # noqa: F401
from billing_service.database import DATABASE_URL, Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata

# Alembic runs on the sync driver even though the service is async.
DB_URL = to_sync_driver_url(DATABASE_URL)
parsed = urlparse(DB_URL)
if parsed.scheme.startswith("postgresql"):
    q = dict(parse_qsl(parsed.query, keep_blank_values=True))
    ssl_val = (q.pop("ssl", None) or "").strip().lower()
    if ssl_val in {"true", "1", "require"}:
        q.setdefault("sslmode", "require")
    elif ssl_val in {"false", "0"}:
        q.setdefault("sslmode", "disable")
    DB_URL = urlunparse(parsed._replace(query=urlencode(q, doseq=True)))

config.set_main_option("sqlalchemy.url", DB_URL.replace("%", "%%"))


def run_migrations_offline() -> None:
    context.configure(
        url=DB_URL,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
