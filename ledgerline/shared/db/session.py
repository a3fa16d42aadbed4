import ssl
import time
from typing import AsyncGenerator, Any, Dict

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from ledgerline.shared.core.config import Settings, get_settings

logger = structlog.get_logger()
settings = get_settings()


def build_connect_args(settings: Settings) -> Dict[str, Any]:
    """SSL context and driver options for the configured DB_SSL_MODE."""
    ssl_mode = settings.DB_SSL_MODE.lower()
    connect_args: Dict[str, Any] = {}
    if "postgresql" in settings.DATABASE_URL:
        connect_args["statement_cache_size"] = 0

    if "sqlite" in settings.DATABASE_URL:
        return connect_args
    if ssl_mode == "disable":
        logger.warning("database_ssl_disabled",
                       msg="SSL disabled - do not use in production")
        connect_args["ssl"] = False
    elif ssl_mode == "require":
        ssl_context = ssl.create_default_context()
        if settings.DB_SSL_CA_CERT_PATH:
            ssl_context.load_verify_locations(cafile=settings.DB_SSL_CA_CERT_PATH)
            ssl_context.verify_mode = ssl.CERT_REQUIRED
        elif settings.is_production:
            raise ValueError("DB_SSL_CA_CERT_PATH is mandatory when DB_SSL_MODE=require in production.")
        else:
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
            logger.warning("database_ssl_require_insecure",
                           msg="SSL enabled but CA verification skipped")
        connect_args["ssl"] = ssl_context
    elif ssl_mode in ("verify-ca", "verify-full"):
        if not settings.DB_SSL_CA_CERT_PATH:
            raise ValueError(f"DB_SSL_CA_CERT_PATH required for ssl_mode={ssl_mode}")
        ssl_context = ssl.create_default_context(cafile=settings.DB_SSL_CA_CERT_PATH)
        ssl_context.verify_mode = ssl.CERT_REQUIRED
        ssl_context.check_hostname = (ssl_mode == "verify-full")
        connect_args["ssl"] = ssl_context
    else:
        raise ValueError(f"Invalid DB_SSL_MODE: {ssl_mode}. Use: disable, require, verify-ca, verify-full")
    return connect_args


# NullPool for SQLite and tests to avoid connections leaking across event loops
pool_args = {}
if settings.TESTING or "sqlite" in settings.DATABASE_URL:
    from sqlalchemy.pool import NullPool
    pool_args["poolclass"] = NullPool
else:
    pool_args["pool_size"] = settings.DB_POOL_SIZE
    pool_args["max_overflow"] = settings.DB_MAX_OVERFLOW

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
    pool_recycle=300,
    connect_args=build_connect_args(settings),
    **pool_args
)

SLOW_QUERY_THRESHOLD_SECONDS = 0.2


@event.listens_for(engine.sync_engine, "before_cursor_execute")
def before_cursor_execute(conn, _cursor, _statement, _parameters, _context, _executemany):
    """Record query start time."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


@event.listens_for(engine.sync_engine, "after_cursor_execute")
def after_cursor_execute(conn, _cursor, statement, parameters, _context, _executemany):
    """Log slow queries."""
    total = time.perf_counter() - conn.info["query_start_time"].pop(-1)
    if total > SLOW_QUERY_THRESHOLD_SECONDS:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            statement=statement[:200] + "..." if len(statement) > 200 else statement,
        )


# expire_on_commit=False keeps loaded subscriptions usable after commit in async code
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that provides a database session."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()
