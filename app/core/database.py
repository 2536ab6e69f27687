"""
Database models and session management
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    text,
)
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.pool import StaticPool

from core.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Stores UTC, always hands back timezone-aware datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class DeviceRow(Base):
    """Rentable device and its current hourly price"""
    __tablename__ = "devices"

    device_id = Column(String(64), primary_key=True)
    owner_id = Column(String(64), ForeignKey("owners.owner_id"), index=True, nullable=True)
    name = Column(String(255), nullable=True)
    price_per_hour = Column(Numeric(12, 2), nullable=True)
    utilization = Column(Float, nullable=True)
    updated_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))


class OwnerRow(Base):
    """Device owner; rev_share is the operator's fraction of gross"""
    __tablename__ = "owners"

    owner_id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=True)
    rev_share = Column(Numeric(6, 4), nullable=True)


class MetricSample(Base):
    """Telemetry history"""
    __tablename__ = "metric_samples"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String(64), nullable=False)
    timestamp = Column(UTCDateTime, nullable=False)
    cpu = Column(Float, nullable=True)
    memory = Column(Float, nullable=True)
    uptime = Column(Float, nullable=True)
    utilization = Column(Float, nullable=True)
    earnings = Column(Float, nullable=True)
    status = Column(String(32), nullable=True)
    interval_hours = Column(Float, nullable=False, default=1.0)

    __table_args__ = (
        Index("ix_metric_samples_device_ts", "device_id", "timestamp"),
        Index("ix_metric_samples_ts", "timestamp"),
    )


class AlertRow(Base):
    """Alert lifecycle: active until resolved, at most one active per (entity, type)"""
    __tablename__ = "alerts"

    id = Column(String(32), primary_key=True)
    entity_id = Column(String(64), nullable=False, index=True)
    type = Column(String(32), nullable=False)
    severity = Column(String(16), nullable=False)
    message = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default="active")
    created_at = Column(UTCDateTime, nullable=False)
    resolved_at = Column(UTCDateTime, nullable=True)
    resolution_note = Column(Text, nullable=True)

    __table_args__ = (
        Index(
            "uq_alerts_active_entity_type",
            "entity_id",
            "type",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )


class StatementRow(Base):
    """Generated statement header. Append-only."""
    __tablename__ = "statements"

    id = Column(String(32), primary_key=True)
    owner_id = Column(String(64), nullable=True, index=True)
    period_start = Column(UTCDateTime, nullable=False)
    period_end = Column(UTCDateTime, nullable=False)
    rev_share = Column(Numeric(6, 4), nullable=False)
    total_gross = Column(Numeric(14, 2), nullable=False)
    total_operator_cut = Column(Numeric(14, 2), nullable=False)
    total_owner_cut = Column(Numeric(14, 2), nullable=False)
    device_count = Column(Integer, nullable=False)
    devices_with_no_activity = Column(Integer, nullable=False, default=0)
    average_utilization = Column(Numeric(10, 4), nullable=True)
    average_uptime = Column(Numeric(10, 4), nullable=True)
    top_device_id = Column(String(64), nullable=True)
    generated_at = Column(UTCDateTime, nullable=False, index=True)
    errors = Column(JSON, nullable=True)

    lines = relationship(
        "StatementLine",
        back_populates="statement",
        order_by="StatementLine.device_id",
        lazy="selectin",
    )


class StatementLine(Base):
    """Per-device statement record"""
    __tablename__ = "statement_lines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    statement_id = Column(String(32), ForeignKey("statements.id"), nullable=False, index=True)
    device_id = Column(String(64), nullable=False)
    utilization_hours = Column(Numeric(14, 4), nullable=False)
    total_hours = Column(Numeric(14, 4), nullable=False)
    gross_revenue = Column(Numeric(14, 2), nullable=False)
    rev_share = Column(Numeric(6, 4), nullable=False)
    operator_cut = Column(Numeric(14, 2), nullable=False)
    owner_cut = Column(Numeric(14, 2), nullable=False)
    uptime = Column(Numeric(10, 4), nullable=True)
    sample_count = Column(Integer, nullable=False)

    statement = relationship("StatementRow", back_populates="lines")


def make_engine(url: str):
    """Async engine; in-memory SQLite shares one connection across sessions."""
    kwargs = {"echo": False}
    in_memory = ":memory:" in url or url.rstrip("/").endswith(":")
    if url.startswith("sqlite") and in_memory:
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_async_engine(url, **kwargs)


def make_session_factory(bind):
    return async_sessionmaker(bind, expire_on_commit=False)


engine = make_engine(settings.DATABASE_URL)
AsyncSessionLocal = make_session_factory(engine)


async def init_db(bind=None):
    """Create tables that do not exist yet"""
    bind = bind or engine
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")
