"""
RAPPORT Persistent Store
========================
Schema and connection pool for sessions, ordered transcript messages and
analysis results.

- PostgreSQL through asyncpg in production, SQLite through aiosqlite for local
  runs and tests.
- One engine per process: created on startup, disposed on shutdown, and handed
  to every component that touches the store.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from . import config

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands timestamps back without an offset; everything is stored in UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


class SessionRecord(Base):
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    scenario_id: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    messages: Mapped[list["TranscriptMessageRecord"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="TranscriptMessageRecord.position",
    )
    analysis: Mapped[Optional["AnalysisRecord"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class TranscriptMessageRecord(Base):
    __tablename__ = "transcript_messages"
    __table_args__ = (
        UniqueConstraint("session_id", "position", name="transcript_messages_session_position_key"),
        CheckConstraint("position >= 0", name="transcript_messages_position_check"),
        CheckConstraint("role IN ('user', 'assistant')", name="transcript_messages_role_check"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    session: Mapped[SessionRecord] = relationship(back_populates="messages")


class AnalysisRecord(Base):
    __tablename__ = "analyses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    # Opaque to the store: the shape is a contract with the scoring prompt
    result: Mapped[dict] = mapped_column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    session: Mapped[SessionRecord] = relationship(back_populates="analysis")


def normalize_database_url(url: str) -> str:
    """Point bare PostgreSQL/SQLite URLs at their async drivers."""
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    if url.startswith("sqlite://") and not url.startswith("sqlite+"):
        return "sqlite+aiosqlite://" + url[len("sqlite://"):]
    return url


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Owns the async engine (the connection pool) and hands out transactions."""

    def __init__(self, url: Optional[str] = None, ssl: Optional[bool] = None):
        url = url if url is not None else config.DATABASE_URL
        if not url:
            raise ValueError("CRITICAL ERROR: DATABASE_URL environment variable not set.")
        self.url = normalize_database_url(url)
        self.ssl = config.DATABASE_SSL if ssl is None else ssl
        self.engine: AsyncEngine = self._create_engine()
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def _create_engine(self) -> AsyncEngine:
        backend = make_url(self.url).get_backend_name()
        if backend == "postgresql":
            connect_args = {"command_timeout": config.DB_STATEMENT_TIMEOUT}
            if self.ssl:
                connect_args["ssl"] = "require"
            return create_async_engine(
                self.url,
                pool_size=config.DB_POOL_SIZE,
                max_overflow=0,
                pool_timeout=config.DB_POOL_TIMEOUT,
                pool_pre_ping=True,
                connect_args=connect_args,
            )

        engine = create_async_engine(self.url)
        if backend == "sqlite":
            event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    @retry(
        stop=stop_after_attempt(config.DB_CONNECT_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((OperationalError, OSError)),
        reraise=True,
    )
    async def connect(self) -> None:
        """Verify the store is reachable and create missing tables."""
        async with self.engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database ready ({self.dialect})")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """One unit of work: commits on success, rolls back on any exception."""
        async with self.sessionmaker() as session:
            async with session.begin():
                yield session

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("Database pool closed")
