"""
Durable storage for the bridge.

Tables owned by the bridge (token cache, config cache, sync queue) plus the
minimal collaborator tables the bridge reads and writes (products, accounts,
replenishment requests).

All timestamps are naive UTC so comparisons behave the same on SQLite and
PostgreSQL.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

from esl_bridge.models import Priority, RequestStatus, SyncEntity, SyncOperation, SyncStatus


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum(enum_cls: type, name: str) -> Enum:
    # Store enum values, not member names.
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=lambda members: [m.value for m in members],
    )


class Base(DeclarativeBase):
    pass


# ---------- BRIDGE STATE ----------
class CachedToken(Base):
    __tablename__ = "platform_token_cache"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    token: Mapped[str] = mapped_column(Text, nullable=False)
    owner_account: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_refreshed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class StoreConfig(Base):
    __tablename__ = "platform_config"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(String(255))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class SyncQueueItem(Base):
    __tablename__ = "platform_sync_queue"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entity_type: Mapped[SyncEntity] = mapped_column(_enum(SyncEntity, "sync_entity"), nullable=False)
    entity_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    operation: Mapped[SyncOperation] = mapped_column(_enum(SyncOperation, "sync_operation"), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    status: Mapped[SyncStatus] = mapped_column(
        _enum(SyncStatus, "sync_status"), nullable=False, default=SyncStatus.PENDING
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_error: Mapped[str | None] = mapped_column(Text)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_sync_queue_status_scheduled", "status", "scheduled_at"),
    )


# ---------- COLLABORATOR ENTITIES ----------
class Account(Base):
    __tablename__ = "accounts"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(64))
    location: Mapped[str | None] = mapped_column(String(255))
    standard_order_qty: Mapped[int | None] = mapped_column(Integer)

    # Hardware binding
    eink_device_id: Mapped[str | None] = mapped_column(String(64), index=True)
    bound_label: Mapped[str | None] = mapped_column(String(64), index=True)

    # Platform sync state
    platform_synced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    platform_synced_at: Mapped[datetime | None] = mapped_column(DateTime)
    platform_sync_error: Mapped[str | None] = mapped_column(Text)
    platform_goods_id: Mapped[str | None] = mapped_column(String(64))


class ReplenishmentRequest(Base):
    __tablename__ = "replenishment_requests"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    requested_by_id: Mapped[int] = mapped_column(ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False)
    request_method: Mapped[str] = mapped_column(String(32), nullable=False)
    device_info: Mapped[str | None] = mapped_column(String(64))
    requested_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[Priority] = mapped_column(_enum(Priority, "request_priority"), nullable=False)
    status: Mapped[RequestStatus] = mapped_column(
        _enum(RequestStatus, "request_status"), nullable=False, default=RequestStatus.PENDING
    )
    location: Mapped[str | None] = mapped_column(String(255))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    product: Mapped[Product] = relationship()

    __table_args__ = (
        Index(
            "ix_requests_dedup",
            "product_id", "device_info", "request_method", "status", "created_at",
        ),
    )


# ---------- ENGINE / SESSIONS ----------
def build_engine(database_url: str) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(bind=engine)
