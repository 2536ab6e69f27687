"""Domain records shared by the scheduler, alert engine, statements and repricing."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class JobName(str, Enum):
    """Jobs declared by the fleet ops service."""

    CONNECTOR_POLL = "connector-poll"
    ALERT_SCAN = "alert-scan"
    STATEMENT_GENERATION = "statement-generation"
    RETENTION_CLEANUP = "retention-cleanup"
    REPRICING_SCAN = "repricing-scan"


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class TriggerOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    OVERLAP_SKIPPED = "overlap_skipped"
    NOT_FOUND = "not_found"


@dataclass
class JobResult:
    """Outcome of the last finished run of a job."""

    success: bool
    finished_at: datetime
    duration_seconds: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "error": self.error,
        }


@dataclass
class TriggerResult:
    name: str
    outcome: TriggerOutcome
    result: Optional[JobResult] = None

    @property
    def executed(self) -> bool:
        return self.outcome in (TriggerOutcome.COMPLETED, TriggerOutcome.FAILED)


@dataclass
class JobStatus:
    name: str
    schedule: str
    state: JobState
    last_run_at: Optional[datetime]
    last_result: Optional[JobResult]
    next_run_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "schedule": self.schedule,
            "state": self.state.value,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
        }


@dataclass
class MetricSnapshot:
    """One telemetry reading for a device.

    Percent fields (cpu, memory, uptime, utilization) are 0-100. Any field may
    be missing when the source did not report it.
    """

    entity_id: str
    timestamp: datetime
    cpu: Optional[float] = None
    memory: Optional[float] = None
    uptime: Optional[float] = None
    utilization: Optional[float] = None
    earnings: Optional[float] = None
    status: Optional[str] = None
    interval_hours: float = 1.0
    earnings_baseline: Optional[float] = None


class AlertType(str, Enum):
    OFFLINE = "offline"
    CPU_HIGH = "cpu_high"
    MEMORY_HIGH = "memory_high"
    UPTIME_LOW = "uptime_low"
    UTILIZATION_LOW = "utilization_low"
    EARNINGS_DROP = "earnings_drop"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class AlertStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


@dataclass
class Alert:
    entity_id: str
    type: AlertType
    severity: Severity
    message: str
    created_at: datetime
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: AlertStatus = AlertStatus.ACTIVE
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == AlertStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution_note": self.resolution_note,
        }


class Direction(str, Enum):
    ROSE = "rose"
    FELL = "fell"


@dataclass(frozen=True)
class CrossingEvent:
    entity_id: str
    predicate: str
    alert_type: AlertType
    direction: Direction
    observed_at: datetime
    value: Any = None


@dataclass(frozen=True)
class StatementRecord:
    """Per-device line of a statement. Never mutated after creation."""

    device_id: str
    period_start: datetime
    period_end: datetime
    utilization_hours: Decimal
    total_hours: Decimal
    gross_revenue: Decimal
    rev_share_percent: Decimal
    operator_cut: Decimal
    owner_cut: Decimal
    uptime: Optional[Decimal]
    sample_count: int

    @property
    def utilization_percent(self) -> Decimal:
        if not self.total_hours:
            return Decimal("0")
        return self.utilization_hours / self.total_hours * 100


@dataclass(frozen=True)
class StatementError:
    device_id: str
    error: str


@dataclass(frozen=True)
class StatementSummary:
    period_start: datetime
    period_end: datetime
    rev_share_percent: Decimal
    records: Tuple[StatementRecord, ...]
    total_gross: Decimal
    total_operator_cut: Decimal
    total_owner_cut: Decimal
    device_count: int
    devices_with_no_activity: int
    average_utilization: Optional[Decimal]
    average_uptime: Optional[Decimal]
    top_device_id: Optional[str]
    generated_at: datetime
    owner_id: Optional[str] = None
    errors: Tuple[StatementError, ...] = ()
    statement_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class Device:
    device_id: str
    owner_id: Optional[str] = None
    name: Optional[str] = None
    price_per_hour: Optional[Decimal] = None
    utilization: Optional[float] = None


@dataclass
class Owner:
    owner_id: str
    email: Optional[str] = None
    rev_share: Optional[Decimal] = None


@dataclass(frozen=True)
class PricingSuggestion:
    device_id: str
    current_price: Decimal
    suggested_price: Decimal
    reason: str
    expected_impact: Decimal
    utilization_at_suggestion: float
    adjustment_percent: Decimal

    @property
    def is_increase(self) -> bool:
        return self.suggested_price > self.current_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "current_price": str(self.current_price),
            "suggested_price": str(self.suggested_price),
            "reason": self.reason,
            "expected_impact": str(self.expected_impact),
            "utilization_at_suggestion": self.utilization_at_suggestion,
            "adjustment_percent": str(self.adjustment_percent),
        }


@dataclass
class ApplyResult:
    device_id: str
    success: bool
    new_price: Decimal
    previous_price: Optional[Decimal] = None
    dry_run: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "success": self.success,
            "new_price": str(self.new_price),
            "previous_price": str(self.previous_price) if self.previous_price is not None else None,
            "dry_run": self.dry_run,
            "error": self.error,
        }


@dataclass
class AlertScanResult:
    created: List[Alert] = field(default_factory=list)
    resolved: List[Alert] = field(default_factory=list)
    errors: List[Tuple[str, str]] = field(default_factory=list)
