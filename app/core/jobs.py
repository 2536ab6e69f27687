"""
Fleet job handlers: connector polling, alert scans, weekly statements,
retention cleanup and repricing scans.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from core.alerts import AlertEngine
from core.config import AppConfig, _as_bool, _as_dict, _as_int, app_config
from core.models import AlertScanResult, JobName, MetricSnapshot, StatementSummary
from core.repricing import RepricingAdvisor, Thresholds
from core.scheduler import JobScheduler
from core.statements import StatementGenerator, normalize_rev_share, previous_week_period
from core.stores import AlertStore, DeviceDirectory, MetricStore, Notifier
from providers.metrics.base import MetricSource

logger = logging.getLogger(__name__)


DEFAULT_SCHEDULES = {
    JobName.CONNECTOR_POLL: "0 * * * *",
    JobName.ALERT_SCAN: "*/15 * * * *",
    JobName.STATEMENT_GENERATION: "0 9 * * 1",
    JobName.RETENTION_CLEANUP: "0 2 * * *",
    JobName.REPRICING_SCAN: "0 */6 * * *",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FleetJobs:
    """The five recurring fleet jobs and the collaborators they use."""

    def __init__(
        self,
        source: MetricSource,
        directory: DeviceDirectory,
        metrics: MetricStore,
        alerts: AlertStore,
        alert_engine: AlertEngine,
        statements: StatementGenerator,
        advisor: RepricingAdvisor,
        notifier: Notifier,
        config: Optional[AppConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.source = source
        self.directory = directory
        self.metrics = metrics
        self.alerts = alerts
        self.alert_engine = alert_engine
        self.statements = statements
        self.advisor = advisor
        self.notifier = notifier
        self.config = config or app_config
        self.clock = clock
        self.last_scan: Optional[AlertScanResult] = None
        self.last_statements: List[StatementSummary] = []

    def handlers(self) -> Dict[JobName, Callable]:
        return {
            JobName.CONNECTOR_POLL: self.poll_connectors,
            JobName.ALERT_SCAN: self.scan_alerts,
            JobName.STATEMENT_GENERATION: self.generate_weekly_statements,
            JobName.RETENTION_CLEANUP: self.cleanup_retention,
            JobName.REPRICING_SCAN: self.scan_repricing,
        }

    def register_all(self, scheduler: JobScheduler) -> List[str]:
        """Register every enabled job on the scheduler with its configured schedule."""
        tz = self.config.get("scheduler.timezone", "UTC") or "UTC"
        job_config = _as_dict(self.config.get("scheduler.jobs", {}))
        registered = []

        for name, handler in self.handlers().items():
            cfg = _as_dict(job_config.get(name.value, {}))
            if not _as_bool(cfg.get("enabled", True), True):
                logger.info("Job %s disabled by configuration", name.value)
                continue
            schedule = cfg.get("schedule") or DEFAULT_SCHEDULES[name]
            scheduler.register(name.value, schedule, handler, timezone=tz)
            registered.append(name.value)

        return registered

    async def poll_connectors(self):
        """Pull new samples for every device into the metric store."""
        devices = await self.directory.list_devices()
        recorded = 0
        failures = 0

        for device in devices:
            try:
                since = await self.metrics.latest_timestamp(device.device_id)
                samples = await self.source.fetch_since(device.device_id, since)
                if samples:
                    recorded += await self.metrics.record(samples)
            except Exception as e:
                failures += 1
                logger.error("Connector poll failed for device %s: %s", device.device_id, e)

        logger.info(
            "Connector poll recorded %s samples from %s devices (%s failed)",
            recorded,
            len(devices),
            failures,
        )
        if devices and failures == len(devices):
            raise RuntimeError(f"Connector poll failed for all {failures} devices")

    async def _earnings_baseline(self, snapshot: MetricSnapshot) -> Optional[float]:
        days = _as_int(self.config.get("alerts.earnings_baseline_days", 7), 7)
        history = await self.metrics.samples_between(
            snapshot.entity_id,
            snapshot.timestamp - timedelta(days=days),
            snapshot.timestamp,
        )
        earnings = [s.earnings for s in history if s.earnings is not None]
        if not earnings:
            return None
        return sum(earnings) / len(earnings)

    async def scan_alerts(self):
        """Evaluate the latest snapshot of every device and notify new alerts."""
        devices = await self.directory.list_devices()
        snapshots = await self.source.fetch_latest([d.device_id for d in devices])

        for snapshot in snapshots:
            if snapshot.earnings_baseline is None:
                try:
                    snapshot.earnings_baseline = await self._earnings_baseline(snapshot)
                except Exception as e:
                    logger.warning("No earnings baseline for %s: %s", snapshot.entity_id, e)

        result = await self.alert_engine.process_batch(snapshots)
        self.last_scan = result

        for alert in result.created:
            try:
                await self.notifier.notify_alert(alert)
            except Exception as e:
                logger.error("Failed to send alert notification for %s: %s", alert.id, e)

        logger.info(
            "Alert scan: %s snapshots, %s opened, %s resolved, %s errors",
            len(snapshots),
            len(result.created),
            len(result.resolved),
            len(result.errors),
        )

    async def generate_weekly_statements(self):
        """Generate last week's statement for every owner."""
        period_start, period_end = previous_week_period(self.clock())
        default_share = self.config.get("statements.default_rev_share", 0.15)
        summaries = []

        for owner in await self.directory.list_owners():
            try:
                devices = await self.directory.devices_for_owner(owner.owner_id)
                if not devices:
                    logger.info("Owner %s has no devices, skipping statement", owner.owner_id)
                    continue
                share = owner.rev_share if owner.rev_share is not None else default_share
                summary = await self.statements.generate(
                    [d.device_id for d in devices],
                    period_start,
                    period_end,
                    normalize_rev_share(fraction=share),
                    owner_id=owner.owner_id,
                )
            except Exception as e:
                logger.error("Error generating statement for owner %s: %s", owner.owner_id, e)
                continue

            summaries.append(summary)
            try:
                await self.notifier.notify_statement(summary)
            except Exception as e:
                logger.error("Failed to send statement %s: %s", summary.statement_id, e)

        self.last_statements = summaries
        logger.info(
            "Generated %s weekly statements for %s to %s",
            len(summaries),
            period_start.isoformat(),
            period_end.isoformat(),
        )

    async def cleanup_retention(self):
        """Purge old resolved alerts and metric samples."""
        now = self.clock()
        alert_days = _as_int(self.config.get("alerts.retention_days", 30), 30)
        metric_days = _as_int(self.config.get("metrics.retention_days", 90), 90)

        purged_alerts = await self.alerts.purge_resolved_before(now - timedelta(days=alert_days))
        purged_samples = await self.metrics.purge_before(now - timedelta(days=metric_days))
        logger.info(
            "Retention cleanup removed %s resolved alerts (>%sd) and %s metric samples (>%sd)",
            purged_alerts,
            alert_days,
            purged_samples,
            metric_days,
        )

    async def scan_repricing(self):
        """Find repricing candidates; apply them only when auto_apply is on."""
        devices = await self.directory.list_devices()
        latest = await self.source.fetch_latest([d.device_id for d in devices])
        utilization = {s.entity_id: s.utilization for s in latest if s.utilization is not None}

        thresholds = Thresholds.from_config(self.config)
        suggestions = self.advisor.scan(devices, utilization, thresholds)
        if not suggestions:
            logger.info("Repricing scan: no candidates among %s devices", len(devices))
            return

        logger.info("Found %s devices that may benefit from repricing", len(suggestions))
        if not _as_bool(self.config.get("repricing.auto_apply", False), False):
            return

        results = await self.advisor.apply_batch(suggestions)
        applied = sum(1 for r in results if r.success)
        logger.info("Auto-applied %s of %s price changes", applied, len(results))

