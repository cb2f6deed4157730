import asyncio
from collections.abc import AsyncGenerator, Awaitable
from typing import Any, TypeVar
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from slotbook.core.config import settings
from slotbook.core.exceptions import StoreTimeoutError

T = TypeVar("T")


def to_async_url(url: str) -> str:
    """Map a plain postgresql:// URL onto asyncpg. asyncpg does not accept
    psycopg params like sslmode/channel_binding, so those are stripped."""
    parsed = urlparse(url)
    if parsed.scheme != "postgresql":
        return url
    query = parse_qs(parsed.query, keep_blank_values=True)
    query.pop("sslmode", None)
    query.pop("channel_binding", None)
    new_query = urlencode(query, doseq=True)
    return urlunparse(
        ("postgresql+asyncpg", parsed.netloc, parsed.path, parsed.params, new_query, parsed.fragment)
    )


async_database_url = to_async_url(settings.database_url)

_engine_kwargs: dict[str, Any] = {"echo": settings.env == "development", "pool_pre_ping": True}
if async_database_url.startswith("sqlite"):
    _engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    _engine_kwargs.update(pool_size=5, max_overflow=10)
    if settings.database_ssl:
        _engine_kwargs["connect_args"] = {"ssl": True}

engine = create_async_engine(async_database_url, **_engine_kwargs)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def run_with_timeout(awaitable: Awaitable[T], timeout: float | None = None) -> T:
    """Bound one store round-trip; a timeout fails this call only."""
    limit = settings.store_timeout_seconds if timeout is None else timeout
    try:
        return await asyncio.wait_for(awaitable, timeout=limit)
    except TimeoutError as e:
        raise StoreTimeoutError(f"Store call exceeded {limit:g}s") from e
