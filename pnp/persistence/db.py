from __future__ import annotations

import ssl
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from pnp.core.config import Settings, get_settings
from pnp.core.errors import FatalConfigError
from pnp.domain.models import Base


def _ssl_argument(settings: Settings) -> ssl.SSLContext | bool:
    # Map libpq-style sslmode onto asyncpg's ssl argument.
    mode = (settings.pg_sslmode or "require").lower()
    if mode == "disable":
        return False
    if mode in {"verify-ca", "verify-full"}:
        if not settings.pg_sslrootcertfilepath:
            raise FatalConfigError(f"PG_SSLMODE={mode} requires PG_SSLROOTCERTFILEPATH")
        context = ssl.create_default_context(cafile=settings.pg_sslrootcertfilepath)
        context.check_hostname = mode == "verify-full"
        return context
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def build_engine(settings: Settings | None = None) -> AsyncEngine:
    settings = settings or get_settings()
    url = settings.resolved_database_url()
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Bound asyncpg pools; connection acquisition waits up to the pool timeout.
    if not url.startswith("sqlite"):
        if settings.db_max_open_conns:
            engine_kwargs["pool_size"] = max(1, int(settings.db_max_open_conns))
            engine_kwargs["max_overflow"] = 0
        engine_kwargs["pool_timeout"] = settings.db_pool_timeout_s
        engine_kwargs["pool_recycle"] = 1800
        if settings.database_url is None:
            engine_kwargs["connect_args"] = {"ssl": _ssl_argument(settings)}
    return create_async_engine(url, **engine_kwargs)


engine = build_engine()
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(target: AsyncEngine | None = None) -> None:
    # Local and test databases only; production schema is managed outside the pipeline.
    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

