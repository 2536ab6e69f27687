"""
Alert engine: turns metric snapshots into alert store mutations.

Alerts follow predicate transitions, not levels. A predicate going
False -> True (Rose) opens an alert, True -> False (Fell) resolves it, and a
predicate that stays put never touches the store. This keeps a device that
sits above a threshold for hours at exactly one alert.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from core.config import AppConfig, _as_dict, _as_float, app_config
from core.errors import NotFoundError
from core.models import (
    Alert,
    AlertScanResult,
    AlertType,
    CrossingEvent,
    Direction,
    MetricSnapshot,
    Severity,
)
from core.stores import AlertStore

logger = logging.getLogger(__name__)


ObservedState = Dict[str, Dict[str, bool]]


@dataclass(frozen=True)
class AlertRule:
    """A named boolean predicate over one snapshot field."""

    name: str
    alert_type: AlertType
    severity: Severity
    field: str
    check: Callable[[MetricSnapshot], Optional[bool]]
    describe: Callable[[MetricSnapshot], str]


@dataclass
class Evaluation:
    events: List[CrossingEvent] = field(default_factory=list)
    new_observed: Dict[str, bool] = field(default_factory=dict)


DEFAULT_SEVERITIES = {
    AlertType.OFFLINE: Severity.HIGH,
    AlertType.CPU_HIGH: Severity.MEDIUM,
    AlertType.MEMORY_HIGH: Severity.MEDIUM,
    AlertType.UPTIME_LOW: Severity.LOW,
    AlertType.UTILIZATION_LOW: Severity.LOW,
    AlertType.EARNINGS_DROP: Severity.MEDIUM,
}


def _above(attr: str, threshold: float) -> Callable[[MetricSnapshot], Optional[bool]]:
    def check(snapshot: MetricSnapshot) -> Optional[bool]:
        value = getattr(snapshot, attr)
        return None if value is None else value > threshold
    return check


def _below(attr: str, threshold: float) -> Callable[[MetricSnapshot], Optional[bool]]:
    def check(snapshot: MetricSnapshot) -> Optional[bool]:
        value = getattr(snapshot, attr)
        return None if value is None else value < threshold
    return check


def _is_offline(snapshot: MetricSnapshot) -> Optional[bool]:
    if snapshot.status is None:
        return None
    return snapshot.status.lower() == "offline"


def _earnings_dropped(drop_percent: float) -> Callable[[MetricSnapshot], Optional[bool]]:
    def check(snapshot: MetricSnapshot) -> Optional[bool]:
        if snapshot.earnings is None or not snapshot.earnings_baseline:
            return None
        return snapshot.earnings < snapshot.earnings_baseline * (1 - drop_percent / 100)
    return check


def build_rules(config: Optional[AppConfig] = None) -> List[AlertRule]:
    """Build the rule table from configuration (thresholds and severities)."""
    config = config or app_config
    thresholds = _as_dict(config.get("alerts.thresholds", {}))
    overrides = _as_dict(config.get("alerts.severity", {}))

    def severity_for(alert_type: AlertType) -> Severity:
        override = overrides.get(alert_type.value)
        if override:
            try:
                return Severity(str(override).lower())
            except ValueError:
                logger.warning("Ignoring unknown severity '%s' for %s", override, alert_type.value)
        return DEFAULT_SEVERITIES[alert_type]

    cpu_high = _as_float(thresholds.get("cpu_high"), 80.0)
    memory_high = _as_float(thresholds.get("memory_high"), 90.0)
    uptime_low = _as_float(thresholds.get("uptime_low"), 95.0)
    utilization_low = _as_float(thresholds.get("utilization_low"), 30.0)
    drop_percent = _as_float(config.get("alerts.earnings_drop_percent"), 30.0)

    return [
        AlertRule(
            name="cpuHigh",
            alert_type=AlertType.CPU_HIGH,
            severity=severity_for(AlertType.CPU_HIGH),
            field="cpu",
            check=_above("cpu", cpu_high),
            describe=lambda s: f"CPU usage {s.cpu:.1f}% above {cpu_high:g}%",
        ),
        AlertRule(
            name="memHigh",
            alert_type=AlertType.MEMORY_HIGH,
            severity=severity_for(AlertType.MEMORY_HIGH),
            field="memory",
            check=_above("memory", memory_high),
            describe=lambda s: f"Memory usage {s.memory:.1f}% above {memory_high:g}%",
        ),
        AlertRule(
            name="uptimeLow",
            alert_type=AlertType.UPTIME_LOW,
            severity=severity_for(AlertType.UPTIME_LOW),
            field="uptime",
            check=_below("uptime", uptime_low),
            describe=lambda s: f"Uptime {s.uptime:.1f}% below {uptime_low:g}%",
        ),
        AlertRule(
            name="offline",
            alert_type=AlertType.OFFLINE,
            severity=severity_for(AlertType.OFFLINE),
            field="status",
            check=_is_offline,
            describe=lambda s: "Device is offline",
        ),
        AlertRule(
            name="utilizationLow",
            alert_type=AlertType.UTILIZATION_LOW,
            severity=severity_for(AlertType.UTILIZATION_LOW),
            field="utilization",
            check=_below("utilization", utilization_low),
            describe=lambda s: f"Utilization {s.utilization:.1f}% below {utilization_low:g}%",
        ),
        AlertRule(
            name="earningsDrop",
            alert_type=AlertType.EARNINGS_DROP,
            severity=severity_for(AlertType.EARNINGS_DROP),
            field="earnings",
            check=_earnings_dropped(drop_percent),
            describe=lambda s: (
                f"Earnings {s.earnings:.2f} dropped more than {drop_percent:g}% "
                f"below baseline {s.earnings_baseline:.2f}"
            ),
        ),
    ]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertEngine:
    """Crossing detector plus the alert store mutations it drives."""

    def __init__(
        self,
        store: AlertStore,
        rules: Optional[List[AlertRule]] = None,
        clock: Callable[[], datetime] = _utcnow,
        config: Optional[AppConfig] = None,
    ):
        self.store = store
        self.rules = rules if rules is not None else build_rules(config)
        self.clock = clock
        self._rules_by_name = {rule.name: rule for rule in self.rules}
        self._observed: ObservedState = {}

    def evaluate(
        self,
        entity_id: str,
        snapshot: MetricSnapshot,
        previous_observed: Mapping[str, bool],
    ) -> Evaluation:
        """
        Diff the rules' current values against the previous observation.

        Pure: no store access and no mutation of previous_observed.
        A predicate with no previous value is only seeded, so the first
        observation of an entity never produces a Rose. A predicate whose
        input field is missing keeps its previous value.
        """
        evaluation = Evaluation(new_observed=dict(previous_observed))

        for rule in self.rules:
            current = rule.check(snapshot)
            if current is None:
                continue

            evaluation.new_observed[rule.name] = current
            previous = previous_observed.get(rule.name)
            if previous is None or previous == current:
                continue

            evaluation.events.append(
                CrossingEvent(
                    entity_id=entity_id,
                    predicate=rule.name,
                    alert_type=rule.alert_type,
                    direction=Direction.ROSE if current else Direction.FELL,
                    observed_at=snapshot.timestamp,
                    value=getattr(snapshot, rule.field, None),
                )
            )

        return evaluation

    async def process(self, snapshot: MetricSnapshot) -> AlertScanResult:
        """
        Evaluate one snapshot and apply its crossings to the store.

        The observed state is committed only after every store write for the
        snapshot succeeded, so a failed write is retried on the next scan.
        """
        entity_id = snapshot.entity_id
        previous = self._observed.get(entity_id, {})
        evaluation = self.evaluate(entity_id, snapshot, previous)
        result = AlertScanResult()

        for event in evaluation.events:
            rule = self._rules_by_name[event.predicate]
            if event.direction == Direction.ROSE:
                alert = await self._open(rule, snapshot)
                if alert is not None:
                    result.created.append(alert)
            else:
                alert = await self._close(event)
                if alert is not None:
                    result.resolved.append(alert)

        self._observed[entity_id] = evaluation.new_observed
        return result

    async def process_batch(self, snapshots: Iterable[MetricSnapshot]) -> AlertScanResult:
        """Process snapshots in order; one entity's failure never stops the rest."""
        total = AlertScanResult()
        for snapshot in snapshots:
            try:
                result = await self.process(snapshot)
            except Exception as e:
                logger.exception("Alert evaluation failed for %s: %s", snapshot.entity_id, e)
                total.errors.append((snapshot.entity_id, str(e)))
                continue
            total.created.extend(result.created)
            total.resolved.extend(result.resolved)
        return total

    async def _open(self, rule: AlertRule, snapshot: MetricSnapshot) -> Optional[Alert]:
        existing = await self.store.find_active(snapshot.entity_id, rule.alert_type)
        if existing is not None:
            logger.debug(
                "Active %s alert already open for %s (%s)",
                rule.alert_type.value,
                snapshot.entity_id,
                existing.id,
            )
            return None

        alert = Alert(
            entity_id=snapshot.entity_id,
            type=rule.alert_type,
            severity=rule.severity,
            message=rule.describe(snapshot),
            created_at=self.clock(),
        )
        created = await self.store.create(alert)
        logger.info(
            "Alert opened: %s [%s] for %s",
            created.type.value,
            created.severity.value,
            created.entity_id,
        )
        return created

    async def _close(self, event: CrossingEvent) -> Optional[Alert]:
        active = await self.store.find_active(event.entity_id, event.alert_type)
        if active is None:
            return None
        resolved = await self.store.mark_resolved(active.id, self.clock(), note="auto-resolved")
        logger.info("Alert auto-resolved: %s for %s", event.alert_type.value, event.entity_id)
        return resolved

    async def list_active(
        self,
        severity: Optional[Severity] = None,
        entity_id: Optional[str] = None,
    ) -> List[Alert]:
        """Active alerts, newest first, optionally at or above a severity."""
        return await self.store.list_active(severity=severity, entity_id=entity_id)

    async def resolve(self, alert_id: str, note: Optional[str] = None) -> Alert:
        """Manually resolve an alert. Resolving a resolved alert is a no-op."""
        alert = await self.store.get(alert_id)
        if alert is None:
            raise NotFoundError("alert", alert_id)
        if not alert.is_active:
            return alert
        resolved = await self.store.mark_resolved(alert_id, self.clock(), note=note)
        logger.info("Alert %s resolved manually%s", alert_id, f": {note}" if note else "")
        return resolved

    def observed_state(self) -> ObservedState:
        return {entity_id: dict(preds) for entity_id, preds in self._observed.items()}

    def reset_observed(self, entity_id: Optional[str] = None):
        if entity_id is None:
            self._observed.clear()
        else:
            self._observed.pop(entity_id, None)
