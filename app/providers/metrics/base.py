"""Metric source provider contract (v1)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from core.models import MetricSnapshot


class MetricSource(ABC):
    """Base interface for device telemetry sources."""

    source_id: str = "unknown"

    @abstractmethod
    async def fetch_latest(self, device_ids: Iterable[str]) -> List[MetricSnapshot]:
        """Return the newest snapshot for each device that reported one."""

    @abstractmethod
    async def fetch_since(self, device_id: str, since: Optional[datetime]) -> List[MetricSnapshot]:
        """Return snapshots newer than since (all history when None), oldest first."""

    async def health_check(self) -> Dict[str, object]:
        """Basic liveness contract. Sources can override for richer checks."""
        return {
            "status": "ok",
            "source_id": self.source_id,
        }


class StaticMetricSource(MetricSource):
    """Deterministic in-memory source fed by the caller."""

    source_id = "static"

    def __init__(self, snapshots: Iterable[MetricSnapshot] = ()):
        self._history: Dict[str, List[MetricSnapshot]] = {}
        self.push(snapshots)

    def push(self, snapshots: Iterable[MetricSnapshot]) -> None:
        for snapshot in snapshots:
            history = self._history.setdefault(snapshot.entity_id, [])
            history.append(snapshot)
            history.sort(key=lambda s: s.timestamp)

    async def fetch_latest(self, device_ids: Iterable[str]) -> List[MetricSnapshot]:
        latest = []
        for device_id in device_ids:
            history = self._history.get(device_id)
            if history:
                latest.append(history[-1])
        return latest

    async def fetch_since(self, device_id: str, since: Optional[datetime]) -> List[MetricSnapshot]:
        history = self._history.get(device_id, [])
        if since is None:
            return list(history)
        return [s for s in history if s.timestamp > since]
