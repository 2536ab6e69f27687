"""
SQLAlchemy-backed implementations of the fleet stores
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from core.database import (
    AlertRow,
    AsyncSessionLocal,
    DeviceRow,
    MetricSample,
    OwnerRow,
    StatementLine,
    StatementRow,
)
from core.errors import NotFoundError
from core.models import (
    Alert,
    AlertStatus,
    AlertType,
    Device,
    MetricSnapshot,
    Owner,
    Severity,
    StatementError,
    StatementRecord,
    StatementSummary,
)
from core.stores import AlertStore, DeviceDirectory, MetricStore, PriceStore, StatementStore

logger = logging.getLogger(__name__)


def _alert_from_row(row: AlertRow) -> Alert:
    return Alert(
        id=row.id,
        entity_id=row.entity_id,
        type=AlertType(row.type),
        severity=Severity(row.severity),
        message=row.message,
        created_at=row.created_at,
        status=AlertStatus(row.status),
        resolved_at=row.resolved_at,
        resolution_note=row.resolution_note,
    )


class SqlAlertStore(AlertStore):
    """Alert store; the partial unique index enforces one active alert per pair"""

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory

    async def create(self, alert: Alert) -> Alert:
        async with self.session_factory() as db:
            db.add(AlertRow(
                id=alert.id,
                entity_id=alert.entity_id,
                type=alert.type.value,
                severity=alert.severity.value,
                message=alert.message,
                status=alert.status.value,
                created_at=alert.created_at,
            ))
            try:
                await db.commit()
                return alert
            except IntegrityError as e:
                await db.rollback()
                conflict = e

        existing = await self.find_active(alert.entity_id, alert.type)
        if existing is None:
            raise conflict
        logger.info(
            "Active %s alert already exists for %s, keeping %s",
            alert.type.value,
            alert.entity_id,
            existing.id,
        )
        return existing

    async def get(self, alert_id: str) -> Optional[Alert]:
        async with self.session_factory() as db:
            row = await db.get(AlertRow, alert_id)
            return _alert_from_row(row) if row else None

    async def find_active(self, entity_id: str, alert_type: AlertType) -> Optional[Alert]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(AlertRow).where(
                    AlertRow.entity_id == entity_id,
                    AlertRow.type == alert_type.value,
                    AlertRow.status == AlertStatus.ACTIVE.value,
                )
            )
            row = result.scalars().first()
            return _alert_from_row(row) if row else None

    async def list_active(
        self,
        severity: Optional[Severity] = None,
        entity_id: Optional[str] = None,
    ) -> List[Alert]:
        query = select(AlertRow).where(AlertRow.status == AlertStatus.ACTIVE.value)
        if entity_id:
            query = query.where(AlertRow.entity_id == entity_id)
        query = query.order_by(AlertRow.created_at.desc())

        async with self.session_factory() as db:
            result = await db.execute(query)
            alerts = [_alert_from_row(row) for row in result.scalars().all()]

        if severity is not None:
            alerts = [a for a in alerts if a.severity >= severity]
        return alerts

    async def mark_resolved(
        self,
        alert_id: str,
        resolved_at: datetime,
        note: Optional[str] = None,
    ) -> Alert:
        async with self.session_factory() as db:
            row = await db.get(AlertRow, alert_id)
            if row is None:
                raise NotFoundError("alert", alert_id)
            if row.status != AlertStatus.ACTIVE.value:
                return _alert_from_row(row)
            row.status = AlertStatus.RESOLVED.value
            row.resolved_at = resolved_at
            row.resolution_note = note
            await db.commit()
            return _alert_from_row(row)

    async def purge_resolved_before(self, cutoff: datetime) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                delete(AlertRow).where(
                    AlertRow.status == AlertStatus.RESOLVED.value,
                    AlertRow.resolved_at < cutoff,
                )
            )
            await db.commit()
            return result.rowcount or 0


def _statement_from_row(row: StatementRow) -> StatementSummary:
    records = tuple(
        StatementRecord(
            device_id=line.device_id,
            period_start=row.period_start,
            period_end=row.period_end,
            utilization_hours=Decimal(line.utilization_hours),
            total_hours=Decimal(line.total_hours),
            gross_revenue=Decimal(line.gross_revenue),
            rev_share_percent=Decimal(line.rev_share),
            operator_cut=Decimal(line.operator_cut),
            owner_cut=Decimal(line.owner_cut),
            uptime=Decimal(line.uptime) if line.uptime is not None else None,
            sample_count=line.sample_count,
        )
        for line in row.lines
    )
    return StatementSummary(
        statement_id=row.id,
        owner_id=row.owner_id,
        period_start=row.period_start,
        period_end=row.period_end,
        rev_share_percent=Decimal(row.rev_share),
        records=records,
        total_gross=Decimal(row.total_gross),
        total_operator_cut=Decimal(row.total_operator_cut),
        total_owner_cut=Decimal(row.total_owner_cut),
        device_count=row.device_count,
        devices_with_no_activity=row.devices_with_no_activity,
        average_utilization=Decimal(row.average_utilization) if row.average_utilization is not None else None,
        average_uptime=Decimal(row.average_uptime) if row.average_uptime is not None else None,
        top_device_id=row.top_device_id,
        generated_at=row.generated_at,
        errors=tuple(StatementError(**e) for e in (row.errors or [])),
    )


class SqlStatementStore(StatementStore):
    """Append-only: statements are inserted, never updated or deleted"""

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory

    async def append(self, summary: StatementSummary) -> None:
        async with self.session_factory() as db:
            db.add(StatementRow(
                id=summary.statement_id,
                owner_id=summary.owner_id,
                period_start=summary.period_start,
                period_end=summary.period_end,
                rev_share=summary.rev_share_percent,
                total_gross=summary.total_gross,
                total_operator_cut=summary.total_operator_cut,
                total_owner_cut=summary.total_owner_cut,
                device_count=summary.device_count,
                devices_with_no_activity=summary.devices_with_no_activity,
                average_utilization=summary.average_utilization,
                average_uptime=summary.average_uptime,
                top_device_id=summary.top_device_id,
                generated_at=summary.generated_at,
                errors=[{"device_id": e.device_id, "error": e.error} for e in summary.errors],
            ))
            for record in summary.records:
                db.add(StatementLine(
                    statement_id=summary.statement_id,
                    device_id=record.device_id,
                    utilization_hours=record.utilization_hours,
                    total_hours=record.total_hours,
                    gross_revenue=record.gross_revenue,
                    rev_share=record.rev_share_percent,
                    operator_cut=record.operator_cut,
                    owner_cut=record.owner_cut,
                    uptime=record.uptime,
                    sample_count=record.sample_count,
                ))
            await db.commit()

    async def list_for_owner(self, owner_id: Optional[str]) -> List[StatementSummary]:
        query = select(StatementRow)
        if owner_id is None:
            query = query.where(StatementRow.owner_id.is_(None))
        else:
            query = query.where(StatementRow.owner_id == owner_id)
        query = query.order_by(StatementRow.generated_at)

        async with self.session_factory() as db:
            result = await db.execute(query)
            return [_statement_from_row(row) for row in result.scalars().all()]


def _snapshot_from_row(row: MetricSample) -> MetricSnapshot:
    return MetricSnapshot(
        entity_id=row.device_id,
        timestamp=row.timestamp,
        cpu=row.cpu,
        memory=row.memory,
        uptime=row.uptime,
        utilization=row.utilization,
        earnings=row.earnings,
        status=row.status,
        interval_hours=row.interval_hours,
    )


class SqlMetricStore(MetricStore):
    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory

    async def record(self, samples: Iterable[MetricSnapshot]) -> int:
        rows = [
            MetricSample(
                device_id=s.entity_id,
                timestamp=s.timestamp,
                cpu=s.cpu,
                memory=s.memory,
                uptime=s.uptime,
                utilization=s.utilization,
                earnings=s.earnings,
                status=s.status,
                interval_hours=s.interval_hours,
            )
            for s in samples
        ]
        if not rows:
            return 0
        async with self.session_factory() as db:
            db.add_all(rows)
            await db.commit()
        return len(rows)

    async def samples_between(
        self, device_id: str, start: datetime, end: datetime
    ) -> List[MetricSnapshot]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(MetricSample)
                .where(
                    MetricSample.device_id == device_id,
                    MetricSample.timestamp >= start,
                    MetricSample.timestamp < end,
                )
                .order_by(MetricSample.timestamp)
            )
            return [_snapshot_from_row(row) for row in result.scalars().all()]

    async def latest_timestamp(self, device_id: str) -> Optional[datetime]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(MetricSample.timestamp)
                .where(MetricSample.device_id == device_id)
                .order_by(MetricSample.timestamp.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def purge_before(self, cutoff: datetime) -> int:
        async with self.session_factory() as db:
            result = await db.execute(delete(MetricSample).where(MetricSample.timestamp < cutoff))
            await db.commit()
            return result.rowcount or 0


def _device_from_row(row: DeviceRow) -> Device:
    return Device(
        device_id=row.device_id,
        owner_id=row.owner_id,
        name=row.name,
        price_per_hour=Decimal(row.price_per_hour) if row.price_per_hour is not None else None,
        utilization=row.utilization,
    )


def _owner_from_row(row: OwnerRow) -> Owner:
    return Owner(
        owner_id=row.owner_id,
        email=row.email,
        rev_share=Decimal(row.rev_share) if row.rev_share is not None else None,
    )


class SqlDeviceDirectory(DeviceDirectory, PriceStore):
    """Devices, owners and device prices"""

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory

    async def list_devices(self) -> List[Device]:
        async with self.session_factory() as db:
            result = await db.execute(select(DeviceRow).order_by(DeviceRow.device_id))
            return [_device_from_row(row) for row in result.scalars().all()]

    async def get_device(self, device_id: str) -> Device:
        async with self.session_factory() as db:
            row = await db.get(DeviceRow, device_id)
            if row is None:
                raise NotFoundError("device", device_id)
            return _device_from_row(row)

    async def list_owners(self) -> List[Owner]:
        async with self.session_factory() as db:
            result = await db.execute(select(OwnerRow).order_by(OwnerRow.owner_id))
            return [_owner_from_row(row) for row in result.scalars().all()]

    async def get_owner(self, owner_id: str) -> Owner:
        async with self.session_factory() as db:
            row = await db.get(OwnerRow, owner_id)
            if row is None:
                raise NotFoundError("owner", owner_id)
            return _owner_from_row(row)

    async def devices_for_owner(self, owner_id: str) -> List[Device]:
        await self.get_owner(owner_id)
        async with self.session_factory() as db:
            result = await db.execute(
                select(DeviceRow).where(DeviceRow.owner_id == owner_id).order_by(DeviceRow.device_id)
            )
            return [_device_from_row(row) for row in result.scalars().all()]

    async def get_price(self, device_id: str) -> Optional[Decimal]:
        return (await self.get_device(device_id)).price_per_hour

    async def set_price(self, device_id: str, price: Decimal) -> None:
        async with self.session_factory() as db:
            row = await db.get(DeviceRow, device_id)
            if row is None:
                raise NotFoundError("device", device_id)
            row.price_per_hour = price
            await db.commit()

    async def save_owner(self, owner: Owner) -> None:
        async with self.session_factory() as db:
            await db.merge(OwnerRow(owner_id=owner.owner_id, email=owner.email, rev_share=owner.rev_share))
            await db.commit()

    async def save_device(self, device: Device) -> None:
        async with self.session_factory() as db:
            await db.merge(DeviceRow(
                device_id=device.device_id,
                owner_id=device.owner_id,
                name=device.name,
                price_per_hour=device.price_per_hour,
                utilization=device.utilization,
            ))
            await db.commit()
