import json
import ssl
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import BigInteger, Boolean, DateTime, String, Text, delete, func, or_, select, text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from webhook_inbox.common.config import StorageConfig, StorageType
from webhook_inbox.common.errors import NotFoundError
from webhook_inbox.common.models import (
    HealthState,
    StorageHealthStatus,
    StorageStats,
    TypeCount,
    WebhookListResponse,
    WebhookMessage,
    WebhookQuery,
    WebhookRequest,
    ensure_utc,
    normalize_updates,
)
from webhook_inbox.storage.base import StorageAdapter, storage_operation

ASYNC_DRIVERS = {
    StorageType.SQLITE: "sqlite+aiosqlite",
    StorageType.POSTGRESQL: "postgresql+asyncpg",
    StorageType.MYSQL: "mysql+aiomysql",
}
DEFAULT_SQLITE_PATH = "./webhooks.db"


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC, so every dialect compares the same way."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            value = ensure_utc(value).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class Base(DeclarativeBase):
    pass


class WebhookMessageRecord(Base):
    __tablename__ = "webhook_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    type: Mapped[str] = mapped_column(String(100), index=True)
    title: Mapped[str] = mapped_column(String(500))
    content: Mapped[str] = mapped_column(Text)
    # JSON text, parsed back on read
    values: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[int] = mapped_column(BigInteger)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    signature: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)


def build_database_url(config: StorageConfig) -> URL:
    """Resolve the async SQLAlchemy URL for a relational storage config."""
    driver = ASYNC_DRIVERS.get(config.type)
    if driver is None:
        raise ValueError(f"Not a relational storage type: {config.type}")

    if config.connection_string:
        url = make_url(config.connection_string)
        if "+" not in url.drivername:
            url = url.set(drivername=driver)
        return url

    if config.type == StorageType.SQLITE:
        return URL.create(driver, database=config.database or DEFAULT_SQLITE_PATH)

    return URL.create(
        driver,
        username=config.username,
        password=config.password,
        host=config.host or "localhost",
        port=config.port,
        database=config.database or "webhooks",
    )


def create_engine_for(config: StorageConfig) -> AsyncEngine:
    url = build_database_url(config)
    engine_kwargs: Dict[str, Any] = {"pool_pre_ping": True}
    if config.type != StorageType.SQLITE:
        engine_kwargs["pool_size"] = config.max_connections
        if config.ssl:
            engine_kwargs["connect_args"] = {"ssl": ssl.create_default_context()}
    return create_async_engine(url, **engine_kwargs)


class SQLAlchemyStorageAdapter(StorageAdapter):
    """Relational message store for SQLite, PostgreSQL and MySQL."""

    backend_errors = (SQLAlchemyError, OSError)

    def __init__(self, config: StorageConfig, engine: Optional[AsyncEngine] = None):
        self.config = config
        self.backend_name = config.type.value
        self.timeout = config.timeout
        self.engine = engine or create_engine_for(config)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)
        self._initialized = False
        self._closed = False

    @staticmethod
    def _dump_values(values: Any) -> Optional[str]:
        return json.dumps(values) if values is not None else None

    def _new_record(self, data: WebhookRequest) -> WebhookMessageRecord:
        return WebhookMessageRecord(
            id=str(uuid.uuid4()),
            type=data.type,
            title=data.title,
            content=data.content,
            values=self._dump_values(data.values),
            timestamp=int(data.timestamp),
            received_at=datetime.now(timezone.utc),
            user_agent=data.user_agent,
            source_ip=data.source_ip,
            signature=data.signature,
            processed=data.processed,
        )

    @staticmethod
    def _to_message(record: WebhookMessageRecord) -> WebhookMessage:
        return WebhookMessage(
            id=record.id,
            type=record.type,
            title=record.title,
            content=record.content,
            values=json.loads(record.values) if record.values is not None else None,
            timestamp=int(record.timestamp),
            received_at=record.received_at,
            user_agent=record.user_agent,
            source_ip=record.source_ip,
            signature=record.signature,
            processed=bool(record.processed),
        )

    @staticmethod
    def _filters(query: WebhookQuery) -> list:
        conditions = []
        if query.type:
            conditions.append(WebhookMessageRecord.type == query.type)
        if query.processed is not None:
            conditions.append(WebhookMessageRecord.processed == query.processed)
        if query.start_date:
            conditions.append(WebhookMessageRecord.received_at >= query.start_date)
        if query.end_date:
            conditions.append(WebhookMessageRecord.received_at <= query.end_date)
        if query.search:
            conditions.append(
                or_(
                    WebhookMessageRecord.title.icontains(query.search, autoescape=True),
                    WebhookMessageRecord.content.icontains(query.search, autoescape=True),
                    WebhookMessageRecord.type.icontains(query.search, autoescape=True),
                )
            )
        return conditions

    @storage_operation("initialize")
    async def initialize(self) -> None:
        if self._initialized:
            return

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self._initialized = True
        logger.info(
            f"{self.backend_name} storage initialized "
            f"({self.engine.url.render_as_string(hide_password=True)})"
        )

    @storage_operation("store_message")
    async def store_message(self, data: WebhookRequest) -> WebhookMessage:
        record = self._new_record(data)
        async with self.session_factory() as session:
            session.add(record)
            await session.commit()
        return self._to_message(record)

    @storage_operation("store_messages")
    async def store_messages(self, data: List[WebhookRequest]) -> List[WebhookMessage]:
        if not data:
            return []

        records = [self._new_record(item) for item in data]
        # Single transaction: the batch lands completely or not at all
        async with self.session_factory() as session:
            session.add_all(records)
            await session.commit()
        return [self._to_message(record) for record in records]

    @storage_operation("get_messages")
    async def get_messages(self, query: WebhookQuery) -> WebhookListResponse:
        conditions = self._filters(query)
        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(WebhookMessageRecord).where(*conditions)
            )
            result = await session.scalars(
                select(WebhookMessageRecord)
                .where(*conditions)
                .order_by(WebhookMessageRecord.received_at.desc())
                .offset(query.offset)
                .limit(query.page_size)
            )
            records = result.all()

        return WebhookListResponse.build(
            [self._to_message(record) for record in records], total or 0, query
        )

    @storage_operation("get_message_by_id")
    async def get_message_by_id(self, message_id: str) -> Optional[WebhookMessage]:
        async with self.session_factory() as session:
            record = await session.get(WebhookMessageRecord, message_id)
        return self._to_message(record) if record else None

    @storage_operation("update_message")
    async def update_message(self, message_id: str, updates: Dict[str, Any]) -> WebhookMessage:
        fields = normalize_updates(updates)
        async with self.session_factory() as session:
            record = await session.get(WebhookMessageRecord, message_id)
            if record is None:
                raise NotFoundError(message_id)

            for name, value in fields.items():
                if name == "values":
                    value = self._dump_values(value)
                setattr(record, name, value)

            await session.commit()
        return self._to_message(record)

    @storage_operation("delete_message")
    async def delete_message(self, message_id: str) -> None:
        async with self.session_factory() as session:
            record = await session.get(WebhookMessageRecord, message_id)
            if record is None:
                raise NotFoundError(message_id)
            await session.delete(record)
            await session.commit()

    @storage_operation("get_stats")
    async def get_stats(self) -> StorageStats:
        cutoff = datetime.now(timezone.utc) - timedelta(hours=24)
        type_count = func.count(WebhookMessageRecord.id)

        async with self.session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(WebhookMessageRecord))
            rows = await session.execute(
                select(WebhookMessageRecord.type, type_count)
                .group_by(WebhookMessageRecord.type)
                .order_by(type_count.desc(), WebhookMessageRecord.type.asc())
            )
            by_type = [TypeCount(type=row[0], count=row[1]) for row in rows.all()]
            last_24_hours = await session.scalar(
                select(func.count())
                .select_from(WebhookMessageRecord)
                .where(WebhookMessageRecord.received_at >= cutoff)
            )

        return StorageStats(total=total or 0, by_type=by_type, last_24_hours=last_24_hours or 0)

    @storage_operation("cleanup_old_messages")
    async def cleanup_old_messages(self, older_than_days: int) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        async with self.session_factory() as session:
            result = await session.execute(
                delete(WebhookMessageRecord)
                .where(WebhookMessageRecord.received_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        deleted = result.rowcount or 0
        logger.info(f"Removed {deleted} messages older than {older_than_days} days from {self.backend_name}")
        return deleted

    async def get_health_status(self) -> StorageHealthStatus:
        try:
            await self._ping()
        except Exception as e:
            return StorageHealthStatus(status=HealthState.UNHEALTHY, details={"error": str(e)})
        return StorageHealthStatus(
            status=HealthState.HEALTHY,
            details={"connection": "active", "dialect": self.engine.dialect.name},
        )

    @storage_operation("health")
    async def _ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.engine.dispose()
        logger.info(f"{self.backend_name} storage closed")
