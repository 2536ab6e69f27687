"""
Statement generation: exact operator/owner revenue splits per device and period.

Money is Decimal end to end. The operator cut is rounded half-up to cents and
the owner cut is the remainder, so operator_cut + owner_cut == gross exactly.
"""
from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Iterable, List, Optional, Sequence

from core.errors import ValidationError
from core.models import MetricSnapshot, StatementError, StatementRecord, StatementSummary
from core.stores import MetricStore, StatementStore

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
EXPORT_FORMATS = ("json", "csv")


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _fmt(value: Optional[Decimal]) -> str:
    return "" if value is None else str(round2(value))


def validate_rev_share(value) -> Decimal:
    """Return rev share as a Decimal fraction, rejecting anything outside [0, 1]."""
    try:
        share = _to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"rev_share_percent is not a number: {value!r}", field="rev_share_percent")
    if not share.is_finite() or share < 0 or share > 1:
        raise ValidationError(
            f"rev_share_percent must be a fraction in [0, 1], got {value}",
            field="rev_share_percent",
        )
    return share


def normalize_rev_share(fraction=None, percent=None) -> Decimal:
    """
    Normalize a boundary rev-share value to a fraction in [0, 1].

    Callers say which unit they send: ``fraction`` (0.15) or ``percent`` (15).
    Values are never reinterpreted by magnitude, so fraction=15 is rejected.
    """
    if (fraction is None) == (percent is None):
        raise ValidationError("Provide exactly one of rev share fraction or percent", field="rev_share_percent")
    if percent is not None:
        try:
            pct = _to_decimal(percent)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"rev share percent is not a number: {percent!r}", field="rev_share_percent")
        if not pct.is_finite() or pct < 0 or pct > 100:
            raise ValidationError(
                f"rev share percent must be in [0, 100], got {percent}",
                field="rev_share_percent",
            )
        return pct / 100
    return validate_rev_share(fraction)


def validate_period(period_start: datetime, period_end: datetime) -> tuple[datetime, datetime]:
    """Check the period and return it timezone-aware; naive bounds are read as UTC."""
    if (period_start.tzinfo is None) != (period_end.tzinfo is None):
        raise ValidationError("period_start and period_end must both be timezone-aware or both naive", field="period")
    if period_start.tzinfo is None:
        period_start = period_start.replace(tzinfo=timezone.utc)
        period_end = period_end.replace(tzinfo=timezone.utc)
    if period_start >= period_end:
        raise ValidationError(
            f"period_start ({period_start.isoformat()}) must be before period_end ({period_end.isoformat()})",
            field="period",
        )
    return period_start, period_end


def previous_week_period(now: datetime) -> tuple[datetime, datetime]:
    """[Monday 00:00, next Monday 00:00) of the week before the one containing now."""
    this_monday = (now - timedelta(days=now.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
    return this_monday - timedelta(days=7), this_monday


def split_revenue(gross: Decimal, rev_share: Decimal) -> tuple[Decimal, Decimal]:
    operator_cut = round2(gross * rev_share)
    return operator_cut, gross - operator_cut


def build_record(
    device_id: str,
    samples: Sequence[MetricSnapshot],
    period_start: datetime,
    period_end: datetime,
    rev_share: Decimal,
) -> Optional[StatementRecord]:
    """Aggregate one device's samples in [period_start, period_end). None when there are none."""
    in_period = [s for s in samples if period_start <= s.timestamp < period_end]
    if not in_period:
        return None

    total_hours = Decimal("0")
    utilization_hours = Decimal("0")
    gross = Decimal("0")
    uptimes = []

    for sample in in_period:
        hours = _to_decimal(sample.interval_hours)
        if hours < 0:
            raise ValueError(f"negative interval_hours at {sample.timestamp.isoformat()}")
        total_hours += hours
        if sample.utilization is not None:
            utilization_hours += hours * _to_decimal(sample.utilization) / 100
        if sample.earnings is not None:
            gross += _to_decimal(sample.earnings)
        if sample.uptime is not None:
            uptimes.append(_to_decimal(sample.uptime))

    gross = round2(gross)
    if gross < 0:
        raise ValueError(f"negative gross revenue {gross}")
    operator_cut, owner_cut = split_revenue(gross, rev_share)

    return StatementRecord(
        device_id=device_id,
        period_start=period_start,
        period_end=period_end,
        utilization_hours=utilization_hours,
        total_hours=total_hours,
        gross_revenue=gross,
        rev_share_percent=rev_share,
        operator_cut=operator_cut,
        owner_cut=owner_cut,
        uptime=sum(uptimes) / len(uptimes) if uptimes else None,
        sample_count=len(in_period),
    )


def summarize(
    records: Sequence[StatementRecord],
    period_start: datetime,
    period_end: datetime,
    rev_share: Decimal,
    inactive: int,
    generated_at: datetime,
    owner_id: Optional[str] = None,
    errors: Sequence[StatementError] = (),
) -> StatementSummary:
    records = tuple(sorted(records, key=lambda r: r.device_id))
    utilizations = [r.utilization_percent for r in records if r.total_hours]
    uptimes = [r.uptime for r in records if r.uptime is not None]

    top_device_id = None
    top_gross = Decimal("0")
    for record in records:
        if record.gross_revenue > top_gross:
            top_gross = record.gross_revenue
            top_device_id = record.device_id

    return StatementSummary(
        owner_id=owner_id,
        period_start=period_start,
        period_end=period_end,
        rev_share_percent=rev_share,
        records=records,
        total_gross=sum((r.gross_revenue for r in records), Decimal("0")),
        total_operator_cut=sum((r.operator_cut for r in records), Decimal("0")),
        total_owner_cut=sum((r.owner_cut for r in records), Decimal("0")),
        device_count=len(records),
        devices_with_no_activity=inactive,
        average_utilization=sum(utilizations) / len(utilizations) if utilizations else None,
        average_uptime=sum(uptimes) / len(uptimes) if uptimes else None,
        top_device_id=top_device_id,
        generated_at=generated_at,
        errors=tuple(errors),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatementGenerator:
    """Builds statements from the metric store and appends them to the statement store."""

    def __init__(
        self,
        metrics: MetricStore,
        statements: Optional[StatementStore] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.metrics = metrics
        self.statements = statements
        self.clock = clock

    async def generate(
        self,
        device_ids: Iterable[str],
        period_start: datetime,
        period_end: datetime,
        rev_share_percent,
        owner_id: Optional[str] = None,
    ) -> StatementSummary:
        """
        Generate a statement for the devices over [period_start, period_end).

        Raises ValidationError before reading any store. Per-device failures
        are collected into summary.errors. Each call produces a new statement;
        earlier statements for overlapping periods are left untouched.
        """
        rev_share = validate_rev_share(rev_share_percent)
        period_start, period_end = validate_period(period_start, period_end)
        device_ids = list(dict.fromkeys(device_ids))
        if not device_ids:
            raise ValidationError("device set is empty", field="device_ids")

        records: List[StatementRecord] = []
        errors: List[StatementError] = []
        inactive = 0

        for device_id in device_ids:
            try:
                samples = await self.metrics.samples_between(device_id, period_start, period_end)
                record = build_record(device_id, samples, period_start, period_end, rev_share)
            except Exception as e:
                logger.exception("Statement aggregation failed for device %s: %s", device_id, e)
                errors.append(StatementError(device_id=device_id, error=str(e)))
                continue
            if record is None:
                inactive += 1
                continue
            records.append(record)

        summary = summarize(
            records,
            period_start,
            period_end,
            rev_share,
            inactive,
            generated_at=self.clock(),
            owner_id=owner_id,
            errors=errors,
        )

        if self.statements is not None:
            await self.statements.append(summary)

        logger.info(
            "Generated statement %s: %s devices (%s inactive, %s errors), gross %s",
            summary.statement_id,
            summary.device_count,
            summary.devices_with_no_activity,
            len(summary.errors),
            summary.total_gross,
        )
        return summary

    @staticmethod
    def export(summary: StatementSummary, fmt: str = "json") -> str:
        """Serialize deterministically; same summary content gives identical bytes."""
        fmt = (fmt or "").lower()
        if fmt == "json":
            return export_json(summary)
        if fmt == "csv":
            return export_csv(summary)
        raise ValidationError(f"Unsupported export format '{fmt}', expected one of {', '.join(EXPORT_FORMATS)}", field="format")


def _record_payload(record: StatementRecord) -> dict:
    return {
        "device_id": record.device_id,
        "period_start": record.period_start.isoformat(),
        "period_end": record.period_end.isoformat(),
        "utilization_hours": _fmt(record.utilization_hours),
        "total_hours": _fmt(record.total_hours),
        "utilization_percent": _fmt(record.utilization_percent),
        "gross_revenue": _fmt(record.gross_revenue),
        "rev_share_percent": str(record.rev_share_percent.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)),
        "operator_cut": _fmt(record.operator_cut),
        "owner_cut": _fmt(record.owner_cut),
        "uptime": _fmt(record.uptime),
        "sample_count": record.sample_count,
    }


def export_json(summary: StatementSummary) -> str:
    payload = {
        "owner_id": summary.owner_id,
        "period_start": summary.period_start.isoformat(),
        "period_end": summary.period_end.isoformat(),
        "rev_share_percent": str(summary.rev_share_percent.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)),
        "total_gross": _fmt(summary.total_gross),
        "total_operator_cut": _fmt(summary.total_operator_cut),
        "total_owner_cut": _fmt(summary.total_owner_cut),
        "device_count": summary.device_count,
        "devices_with_no_activity": summary.devices_with_no_activity,
        "average_utilization": _fmt(summary.average_utilization),
        "average_uptime": _fmt(summary.average_uptime),
        "top_device_id": summary.top_device_id,
        "records": [_record_payload(r) for r in sorted(summary.records, key=lambda r: r.device_id)],
        "errors": [
            {"device_id": e.device_id, "error": e.error}
            for e in sorted(summary.errors, key=lambda e: e.device_id)
        ],
    }
    return json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False) + "\n"


CSV_COLUMNS = [
    "device_id",
    "period_start",
    "period_end",
    "utilization_hours",
    "total_hours",
    "utilization_percent",
    "gross_revenue",
    "rev_share_percent",
    "operator_cut",
    "owner_cut",
    "uptime",
    "sample_count",
]


def export_csv(summary: StatementSummary) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")

    writer.writerow(["Statement Summary", f"Period: {summary.period_start.isoformat()} to {summary.period_end.isoformat()}"])
    writer.writerow(["Owner", summary.owner_id or ""])
    writer.writerow(["Devices", summary.device_count])
    writer.writerow(["Devices With No Activity", summary.devices_with_no_activity])
    writer.writerow(["Total Gross Revenue", _fmt(summary.total_gross)])
    writer.writerow(["Total Operator Cut", _fmt(summary.total_operator_cut)])
    writer.writerow(["Total Owner Cut", _fmt(summary.total_owner_cut)])
    writer.writerow(["Average Utilization %", _fmt(summary.average_utilization)])
    writer.writerow(["Average Uptime %", _fmt(summary.average_uptime)])
    if summary.top_device_id:
        writer.writerow(["Top Device", summary.top_device_id])
    writer.writerow([])

    writer.writerow(CSV_COLUMNS)
    for record in sorted(summary.records, key=lambda r: r.device_id):
        payload = _record_payload(record)
        writer.writerow([payload[column] for column in CSV_COLUMNS])

    if summary.errors:
        writer.writerow([])
        writer.writerow(["Errors"])
        writer.writerow(["device_id", "error"])
        for error in sorted(summary.errors, key=lambda e: e.device_id):
            writer.writerow([error.device_id, error.error])

    return buffer.getvalue()
