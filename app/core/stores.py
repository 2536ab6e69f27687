"""
Store contracts for the collaborators the fleet ops core reads and writes,
plus in-memory implementations used for development and tests.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from core.errors import NotFoundError
from core.models import (
    Alert,
    AlertStatus,
    AlertType,
    Device,
    MetricSnapshot,
    Owner,
    Severity,
    StatementSummary,
)

logger = logging.getLogger(__name__)


class AlertStore(ABC):
    """Alert persistence. At most one active alert per (entity_id, type)."""

    @abstractmethod
    async def create(self, alert: Alert) -> Alert:
        """Persist a new active alert."""

    @abstractmethod
    async def get(self, alert_id: str) -> Optional[Alert]:
        """Return the alert or None."""

    @abstractmethod
    async def find_active(self, entity_id: str, alert_type: AlertType) -> Optional[Alert]:
        """Return the active alert for the pair, if any."""

    @abstractmethod
    async def list_active(
        self,
        severity: Optional[Severity] = None,
        entity_id: Optional[str] = None,
    ) -> List[Alert]:
        """Active alerts, newest first. severity is a minimum."""

    @abstractmethod
    async def mark_resolved(
        self,
        alert_id: str,
        resolved_at: datetime,
        note: Optional[str] = None,
    ) -> Alert:
        """Move an alert to resolved. Resolving a resolved alert returns it unchanged."""

    @abstractmethod
    async def purge_resolved_before(self, cutoff: datetime) -> int:
        """Delete resolved alerts resolved before cutoff. Returns count."""


class StatementStore(ABC):
    """Append-only statement persistence."""

    @abstractmethod
    async def append(self, summary: StatementSummary) -> None:
        """Persist a full statement in one write."""

    @abstractmethod
    async def list_for_owner(self, owner_id: Optional[str]) -> List[StatementSummary]:
        """Statements for an owner, oldest first."""


class MetricStore(ABC):
    """Telemetry history used for statements and baselines."""

    @abstractmethod
    async def record(self, samples: Iterable[MetricSnapshot]) -> int:
        """Append samples. Returns count stored."""

    @abstractmethod
    async def samples_between(
        self, device_id: str, start: datetime, end: datetime
    ) -> List[MetricSnapshot]:
        """Samples with start <= timestamp < end, oldest first."""

    @abstractmethod
    async def latest_timestamp(self, device_id: str) -> Optional[datetime]:
        """Timestamp of the newest stored sample for the device."""

    @abstractmethod
    async def purge_before(self, cutoff: datetime) -> int:
        """Delete samples older than cutoff. Returns count."""


class DeviceDirectory(ABC):
    """Device and owner lookup."""

    @abstractmethod
    async def list_devices(self) -> List[Device]:
        """All devices."""

    @abstractmethod
    async def get_device(self, device_id: str) -> Device:
        """Raise NotFoundError for unknown ids."""

    @abstractmethod
    async def list_owners(self) -> List[Owner]:
        """All owners."""

    @abstractmethod
    async def get_owner(self, owner_id: str) -> Owner:
        """Raise NotFoundError for unknown ids."""

    async def devices_for_owner(self, owner_id: str) -> List[Device]:
        await self.get_owner(owner_id)
        return [d for d in await self.list_devices() if d.owner_id == owner_id]


class PriceStore(ABC):
    """Per-device hourly price."""

    @abstractmethod
    async def get_price(self, device_id: str) -> Optional[Decimal]:
        """Current price or None."""

    @abstractmethod
    async def set_price(self, device_id: str, price: Decimal) -> None:
        """Set a device price. Raise NotFoundError for unknown devices."""


class Notifier(ABC):
    """Outbound hand-off for alerts and statements."""

    @abstractmethod
    async def notify_alert(self, alert: Alert) -> None:
        """Deliver a newly created alert."""

    @abstractmethod
    async def notify_statement(self, summary: StatementSummary) -> None:
        """Deliver a generated statement."""


class LoggingNotifier(Notifier):
    """Default notifier: writes a log line per alert and statement."""

    async def notify_alert(self, alert: Alert) -> None:
        logger.info(
            "Alert %s [%s] %s: %s",
            alert.type.value,
            alert.severity.value,
            alert.entity_id,
            alert.message,
        )

    async def notify_statement(self, summary: StatementSummary) -> None:
        logger.info(
            "Statement %s for owner %s: %s devices, gross %s, owner cut %s",
            summary.statement_id,
            summary.owner_id or "N/A",
            summary.device_count,
            summary.total_gross,
            summary.total_owner_cut,
        )


class InMemoryAlertStore(AlertStore):
    def __init__(self):
        self._alerts: Dict[str, Alert] = {}
        self.writes = 0

    async def create(self, alert: Alert) -> Alert:
        existing = await self.find_active(alert.entity_id, alert.type)
        if existing is not None:
            return existing
        self._alerts[alert.id] = alert
        self.writes += 1
        return alert

    async def get(self, alert_id: str) -> Optional[Alert]:
        return self._alerts.get(alert_id)

    async def find_active(self, entity_id: str, alert_type: AlertType) -> Optional[Alert]:
        for alert in self._alerts.values():
            if alert.is_active and alert.entity_id == entity_id and alert.type == alert_type:
                return alert
        return None

    async def list_active(
        self,
        severity: Optional[Severity] = None,
        entity_id: Optional[str] = None,
    ) -> List[Alert]:
        alerts = [
            a for a in self._alerts.values()
            if a.is_active
            and (severity is None or a.severity >= severity)
            and (entity_id is None or a.entity_id == entity_id)
        ]
        return sorted(alerts, key=lambda a: a.created_at, reverse=True)

    async def mark_resolved(
        self,
        alert_id: str,
        resolved_at: datetime,
        note: Optional[str] = None,
    ) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise NotFoundError("alert", alert_id)
        if not alert.is_active:
            return alert
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = resolved_at
        alert.resolution_note = note
        self.writes += 1
        return alert

    async def purge_resolved_before(self, cutoff: datetime) -> int:
        stale = [
            alert_id for alert_id, a in self._alerts.items()
            if not a.is_active and a.resolved_at is not None and a.resolved_at < cutoff
        ]
        for alert_id in stale:
            del self._alerts[alert_id]
        return len(stale)

    def all(self) -> List[Alert]:
        return list(self._alerts.values())


class InMemoryStatementStore(StatementStore):
    def __init__(self):
        self._statements: List[StatementSummary] = []

    async def append(self, summary: StatementSummary) -> None:
        self._statements.append(summary)

    async def list_for_owner(self, owner_id: Optional[str]) -> List[StatementSummary]:
        return [s for s in self._statements if s.owner_id == owner_id]

    def all(self) -> List[StatementSummary]:
        return list(self._statements)


class InMemoryMetricStore(MetricStore):
    def __init__(self, samples: Optional[Iterable[MetricSnapshot]] = None):
        self._samples: Dict[str, List[MetricSnapshot]] = {}
        if samples:
            for sample in samples:
                self._samples.setdefault(sample.entity_id, []).append(sample)

    async def record(self, samples: Iterable[MetricSnapshot]) -> int:
        count = 0
        for sample in samples:
            self._samples.setdefault(sample.entity_id, []).append(sample)
            count += 1
        return count

    async def samples_between(
        self, device_id: str, start: datetime, end: datetime
    ) -> List[MetricSnapshot]:
        samples = [s for s in self._samples.get(device_id, []) if start <= s.timestamp < end]
        return sorted(samples, key=lambda s: s.timestamp)

    async def latest_timestamp(self, device_id: str) -> Optional[datetime]:
        samples = self._samples.get(device_id)
        if not samples:
            return None
        return max(s.timestamp for s in samples)

    async def purge_before(self, cutoff: datetime) -> int:
        removed = 0
        for device_id, samples in self._samples.items():
            kept = [s for s in samples if s.timestamp >= cutoff]
            removed += len(samples) - len(kept)
            self._samples[device_id] = kept
        return removed


class InMemoryDeviceDirectory(DeviceDirectory, PriceStore):
    """Device directory that doubles as the price store."""

    def __init__(self, devices: Iterable[Device] = (), owners: Iterable[Owner] = ()):
        self._devices: Dict[str, Device] = {d.device_id: d for d in devices}
        self._owners: Dict[str, Owner] = {o.owner_id: o for o in owners}

    async def list_devices(self) -> List[Device]:
        return sorted(self._devices.values(), key=lambda d: d.device_id)

    async def get_device(self, device_id: str) -> Device:
        device = self._devices.get(device_id)
        if device is None:
            raise NotFoundError("device", device_id)
        return device

    async def list_owners(self) -> List[Owner]:
        return sorted(self._owners.values(), key=lambda o: o.owner_id)

    async def get_owner(self, owner_id: str) -> Owner:
        owner = self._owners.get(owner_id)
        if owner is None:
            raise NotFoundError("owner", owner_id)
        return owner

    async def get_price(self, device_id: str) -> Optional[Decimal]:
        return (await self.get_device(device_id)).price_per_hour

    async def set_price(self, device_id: str, price: Decimal) -> None:
        device = await self.get_device(device_id)
        device.price_per_hour = price
