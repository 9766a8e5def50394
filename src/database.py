"""
Settlement record persistence (SQLAlchemy async; asyncpg in production)
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _connect_args(database_url: str, ssl_mode: str) -> dict:
    # asyncpg negotiates TLS by default; ssl_mode=disable has to switch it off explicitly
    if database_url.startswith("postgresql+asyncpg") and ssl_mode.strip().lower() == "disable":
        return {"ssl": False}
    return {}


class Base(DeclarativeBase):
    pass


class SettlementRecordRow(Base):
    """Idempotency ledger entry, one per transaction envelope fingerprint"""

    __tablename__ = "settlement_records"

    fingerprint: Mapped[str] = mapped_column(String(64), primary_key=True)
    requirements_digest: Mapped[str] = mapped_column(String(64), nullable=False)
    network: Mapped[str] = mapped_column(String(32), nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    transaction: Mapped[str] = mapped_column(Text, nullable=False, default="")
    payer: Mapped[Optional[str]] = mapped_column(String(69), nullable=True)
    error_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


async def init_database(
    database_url: str,
    *,
    pool_size: int,
    max_overflow: int,
    pool_recycle: int,
    pool_pre_ping: bool = True,
    ssl_mode: str = "disable",
) -> None:
    """Create the engine and session factory, then make sure settlement_records exists."""
    global _engine, _session_factory

    _engine = create_async_engine(
        database_url,
        echo=False,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
        connect_args=_connect_args(database_url, ssl_mode),
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_database() -> None:
    """Dispose the engine; safe to call when the database was never initialized."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def get_session() -> AsyncSession:
    """
    Open a session for use as `async with get_session() as session`.

    Raises:
        RuntimeError: If init_database has not run
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_database first.")
    return _session_factory()
