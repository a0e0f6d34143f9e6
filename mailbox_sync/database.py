"""
Database module: entity store for mailboxes, synchronized local records and advisory locks
PostgreSQL via asyncpg in production, SQLite via aiosqlite for tests and local runs
"""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Type

import structlog
from sqlalchemy import Boolean, DateTime, Integer, JSON, String, Text, TypeDecorator, delete, func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from .models.sync_models import ensure_utc

logger = structlog.get_logger(__name__)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every dialect"""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = ensure_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base"""
    pass


class MailboxModel(Base):
    """Configured mailbox account"""
    __tablename__ = "mailboxes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sender_email_address: Mapped[str] = mapped_column(String(255), index=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    owner_user_name: Mapped[str] = mapped_column(String(255), default="")
    owner_time_zone: Mapped[str] = mapped_column(String(64), default="UTC")
    mailbox_type: Mapped[str] = mapped_column(String(32), default="exchange")
    credentials: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    is_shared: Mapped[bool] = mapped_column(Boolean, default=False)
    allow_synchronization: Mapped[bool] = mapped_column(Boolean, default=True)
    synchronization_stopped: Mapped[bool] = mapped_column(Boolean, default=False)
    import_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    export_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    sync_all_folders: Mapped[bool] = mapped_column(Boolean, default=True)
    folder_ids: Mapped[List[str]] = mapped_column(JSON, default=list)
    import_from: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    task_checkpoint: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    event_checkpoint: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    email_checkpoint: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    error_code: Mapped[Optional[str]] = mapped_column(String(255))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())


class LocalRecordModel(Base):
    """Local activity / mail record mapped to a remote item"""
    __tablename__ = "local_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    mailbox_id: Mapped[str] = mapped_column(String(64), index=True)
    kind: Mapped[str] = mapped_column(String(16), index=True)
    title: Mapped[str] = mapped_column(String(500), default="")
    start: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    due: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    priority: Mapped[str] = mapped_column(String(32), default="normal")
    status: Mapped[str] = mapped_column(String(32), default="not_started")
    time_zone: Mapped[str] = mapped_column(String(64), default="UTC")
    location: Mapped[str] = mapped_column(String(500), default="")
    body: Mapped[str] = mapped_column(Text, default="")
    fingerprint: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    remote_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(500), index=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    modified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)


class SyncLockModel(Base):
    """Advisory per-record lock held by one sync session"""
    __tablename__ = "sync_locks"

    key: Mapped[str] = mapped_column(String(500), primary_key=True)
    owner: Mapped[str] = mapped_column(String(64), index=True)
    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime)


RECORD_TYPES: Dict[str, Type[Base]] = {
    "mailbox": MailboxModel,
    "local_record": LocalRecordModel,
    "sync_lock": SyncLockModel,
}


@dataclass(frozen=True)
class Range:
    """Inclusive range filter for query(); either bound may be omitted"""
    low: Any = None
    high: Any = None


class DatabaseError(Exception):
    """Database operation error"""
    pass


class EntityStore(Protocol):
    """Entity store contract consumed by the synchronization services"""

    async def fetch_by_id(self, record_type: str, record_id: str) -> Optional[Dict[str, Any]]: ...

    async def fetch_by_column(self, record_type: str, column: str, value: Any) -> List[Dict[str, Any]]: ...

    async def insert(self, record_type: str, values: Dict[str, Any]) -> Dict[str, Any]: ...

    async def update(self, record_type: str, record_id: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    async def delete(self, record_type: str, record_id: str) -> bool: ...

    async def query(self, record_type: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]: ...

    async def acquire_lock(self, key: str, owner: str, ttl_seconds: int) -> bool: ...

    async def release_lock(self, key: str, owner: str) -> bool: ...

    async def release_locks(self, owner: str) -> int: ...


class Database:
    """Entity store over SQLAlchemy async"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def initialize(self):
        """Initialize database connection and create tables"""
        try:
            if self.database_url.startswith("postgresql://"):
                logger.warning("Database URL missing +asyncpg driver specification, adding it")
                self.database_url = self.database_url.replace("postgresql://", "postgresql+asyncpg://")

            engine_kwargs: Dict[str, Any] = {
                "echo": os.getenv("DB_ECHO", "false").lower() == "true",
            }

            if self.database_url.startswith("sqlite"):
                if ":memory:" in self.database_url:
                    engine_kwargs.update({
                        "poolclass": StaticPool,
                        "connect_args": {"check_same_thread": False},
                    })
            else:
                engine_kwargs.update({
                    "pool_size": 10,
                    "max_overflow": 20,
                    "pool_pre_ping": True,
                    "pool_recycle": 3600
                })

            logger.info("Creating async engine", url=self.database_url.split("@")[-1])
            self.engine = create_async_engine(self.database_url, **engine_kwargs)

            self.session_factory = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Failed to initialize database", error=str(e))
            raise DatabaseError(f"Database initialization failed: {str(e)}") from e

    async def close(self):
        """Close database connections"""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    async def health_check(self) -> str:
        """Check database health"""
        try:
            async with self.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()
                return "healthy"
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return "unhealthy"

    # Generic record operations

    async def fetch_by_id(self, record_type: str, record_id: str) -> Optional[Dict[str, Any]]:
        model = self._model(record_type)
        try:
            async with self.session_factory() as session:
                row = await session.get(model, record_id)
                return self._to_dict(row) if row else None
        except Exception as e:
            logger.error("Failed to fetch record", record_type=record_type, record_id=record_id, error=str(e))
            raise DatabaseError(f"Fetch failed: {str(e)}") from e

    async def fetch_by_column(self, record_type: str, column: str, value: Any) -> List[Dict[str, Any]]:
        return await self.query(record_type, {column: value})

    async def insert(self, record_type: str, values: Dict[str, Any]) -> Dict[str, Any]:
        model = self._model(record_type)
        try:
            async with self.session_factory() as session:
                row = model(**values)
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return self._to_dict(row)
        except IntegrityError as e:
            raise DatabaseError(f"Insert conflict for {record_type}: {str(e.orig)}") from e
        except Exception as e:
            logger.error("Failed to insert record", record_type=record_type, error=str(e))
            raise DatabaseError(f"Insert failed: {str(e)}") from e

    async def update(self, record_type: str, record_id: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        model = self._model(record_type)
        try:
            async with self.session_factory() as session:
                row = await session.get(model, record_id)
                if row is None:
                    return None
                for key, value in values.items():
                    setattr(row, key, value)
                await session.commit()
                await session.refresh(row)
                return self._to_dict(row)
        except Exception as e:
            logger.error("Failed to update record", record_type=record_type, record_id=record_id, error=str(e))
            raise DatabaseError(f"Update failed: {str(e)}") from e

    async def delete(self, record_type: str, record_id: str) -> bool:
        model = self._model(record_type)
        try:
            async with self.session_factory() as session:
                row = await session.get(model, record_id)
                if row is None:
                    return False
                await session.delete(row)
                await session.commit()
                return True
        except Exception as e:
            logger.error("Failed to delete record", record_type=record_type, record_id=record_id, error=str(e))
            raise DatabaseError(f"Delete failed: {str(e)}") from e

    async def query(self, record_type: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Filtered query

        Args:
            record_type: Named record type
            filters: column -> value (equality), None (IS NULL) or Range (inclusive bounds)
        """
        model = self._model(record_type)
        statement = select(model)
        for column_name, value in filters.items():
            column = getattr(model, column_name)
            if value is None:
                statement = statement.where(column.is_(None))
            elif isinstance(value, Range):
                if value.low is not None:
                    statement = statement.where(column >= value.low)
                if value.high is not None:
                    statement = statement.where(column <= value.high)
            else:
                statement = statement.where(column == value)

        try:
            async with self.session_factory() as session:
                result = await session.execute(statement)
                return [self._to_dict(row) for row in result.scalars().all()]
        except Exception as e:
            logger.error("Failed to query records", record_type=record_type, error=str(e))
            raise DatabaseError(f"Query failed: {str(e)}") from e

    # Advisory locks

    async def acquire_lock(self, key: str, owner: str, ttl_seconds: int) -> bool:
        """Take the lock unless a different owner holds an unexpired one"""
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=ttl_seconds)
        async with self.session_factory() as session:
            try:
                session.add(SyncLockModel(key=key, owner=owner, acquired_at=now, expires_at=expires_at))
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()

            result = await session.execute(
                update(SyncLockModel)
                .where(SyncLockModel.key == key)
                .where((SyncLockModel.expires_at < now) | (SyncLockModel.owner == owner))
                .values(owner=owner, acquired_at=now, expires_at=expires_at)
            )
            await session.commit()
            return result.rowcount == 1

    async def release_lock(self, key: str, owner: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(SyncLockModel)
                .where(SyncLockModel.key == key)
                .where(SyncLockModel.owner == owner)
            )
            await session.commit()
            return result.rowcount > 0

    async def release_locks(self, owner: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(SyncLockModel).where(SyncLockModel.owner == owner)
            )
            await session.commit()
            return result.rowcount

    def _model(self, record_type: str) -> Type[Base]:
        try:
            return RECORD_TYPES[record_type]
        except KeyError:
            raise DatabaseError(f"Unknown record type: {record_type}")

    @staticmethod
    def _to_dict(row: Base) -> Dict[str, Any]:
        return {column.key: getattr(row, column.key) for column in row.__mapper__.column_attrs}
