from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from core.config import AppConfig
from core.models import Alert, AlertStatus, AlertType, Device, MetricSnapshot, Owner, Severity, TriggerOutcome
from core.scheduler import JobScheduler
from core.service import build_fleet_ops
from core.stores import InMemoryAlertStore, InMemoryDeviceDirectory, InMemoryMetricStore, Notifier
from providers.metrics import StaticMetricSource

NOW = datetime(2024, 3, 13, 10, 0, tzinfo=timezone.utc)


class _FakeScheduler:
    def __init__(self):
        self.running = False
        self.add_job_calls: list[dict] = []

    def get_jobs(self):
        return []

    def get_job(self, job_id):
        return None

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False

    def remove_all_jobs(self):
        pass

    def add_job(self, func, trigger=None, **kwargs):
        self.add_job_calls.append({"func": func, "trigger": trigger, **kwargs})


class _RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.alerts = []
        self.statements = []
        self.fail = fail

    async def notify_alert(self, alert):
        if self.fail:
            raise ConnectionError("smtp down")
        self.alerts.append(alert)

    async def notify_statement(self, summary):
        if self.fail:
            raise ConnectionError("smtp down")
        self.statements.append(summary)


def _snap(device, hours_ago, **fields):
    return MetricSnapshot(entity_id=device, timestamp=NOW - timedelta(hours=hours_ago), **fields)


def _fleet(config=None, source=None, notifier=None, devices=None, owners=None):
    directory = InMemoryDeviceDirectory(
        devices if devices is not None else [
            Device("dev-1", owner_id="owner-1", price_per_hour=Decimal("2.00")),
            Device("dev-2", owner_id="owner-1", price_per_hour=Decimal("3.00")),
        ],
        owners if owners is not None else [Owner("owner-1", email="o@example.com", rev_share=Decimal("0.2"))],
    )
    fleet = build_fleet_ops(
        config=config or AppConfig(data={}),
        directory=directory,
        source=source or StaticMetricSource(),
        notifier=notifier or _RecordingNotifier(),
        scheduler=JobScheduler(scheduler=_FakeScheduler()),
    )
    fleet.jobs.clock = lambda: NOW
    return fleet


def test_all_declared_jobs_registered_with_default_schedules():
    fleet = _fleet()

    schedules = {job.name: job.schedule for job in (fleet.scheduler.get_job(n) for n in fleet.scheduler.job_names())}

    assert schedules == {
        "connector-poll": "0 * * * *",
        "alert-scan": "*/15 * * * *",
        "statement-generation": "0 9 * * 1",
        "retention-cleanup": "0 2 * * *",
        "repricing-scan": "0 */6 * * *",
    }


def test_disabled_job_is_not_registered_and_schedule_override_applies():
    config = AppConfig(data={
        "scheduler": {
            "timezone": "Europe/London",
            "jobs": {
                "repricing-scan": {"enabled": False},
                "alert-scan": {"schedule": "*/5 * * * *"},
            },
        }
    })

    fleet = _fleet(config=config)

    assert "repricing-scan" not in fleet.scheduler.job_names()
    assert fleet.scheduler.get_job("alert-scan").schedule == "*/5 * * * *"
    assert fleet.scheduler.get_job("alert-scan").timezone == "Europe/London"


def test_connector_poll_records_only_new_samples():
    source = StaticMetricSource([_snap("dev-1", 3, cpu=10), _snap("dev-1", 2, cpu=20), _snap("dev-2", 1, cpu=30)])
    fleet = _fleet(source=source)

    async def scenario():
        await fleet.scheduler.trigger("connector-poll")
        source.push([_snap("dev-1", 0, cpu=40)])
        await fleet.scheduler.trigger("connector-poll")
        return await fleet.metrics.samples_between("dev-1", NOW - timedelta(days=1), NOW + timedelta(hours=1))

    samples = asyncio.run(scenario())

    assert [s.cpu for s in samples] == [10, 20, 40]


def test_alert_scan_opens_alert_on_crossing_and_notifies():
    source = StaticMetricSource([_snap("dev-1", 1, cpu=50)])
    notifier = _RecordingNotifier()
    fleet = _fleet(source=source, notifier=notifier)

    async def scenario():
        await fleet.scheduler.trigger("alert-scan")
        source.push([_snap("dev-1", 0, cpu=95)])
        return await fleet.scheduler.trigger("alert-scan")

    result = asyncio.run(scenario())

    assert result.outcome == TriggerOutcome.COMPLETED
    assert [a.type for a in notifier.alerts] == [AlertType.CPU_HIGH]
    assert len(fleet.jobs.last_scan.created) == 1


def test_alert_scan_survives_notifier_failure():
    source = StaticMetricSource([_snap("dev-1", 1, cpu=50)])
    fleet = _fleet(source=source, notifier=_RecordingNotifier(fail=True))

    async def scenario():
        await fleet.scheduler.trigger("alert-scan")
        source.push([_snap("dev-1", 0, cpu=95)])
        return await fleet.scheduler.trigger("alert-scan")

    result = asyncio.run(scenario())

    assert result.outcome == TriggerOutcome.COMPLETED
    assert len(asyncio.run(fleet.alerts.list_active())) == 1


def test_alert_scan_attaches_earnings_baseline_from_history():
    metrics = InMemoryMetricStore([_snap("dev-1", h, earnings=10.0) for h in range(2, 30)])
    source = StaticMetricSource([_snap("dev-1", 1, earnings=10.0)])
    fleet = build_fleet_ops(
        config=AppConfig(data={}),
        directory=InMemoryDeviceDirectory([Device("dev-1")]),
        metrics=metrics,
        source=source,
        notifier=_RecordingNotifier(),
        scheduler=JobScheduler(scheduler=_FakeScheduler()),
    )

    async def scenario():
        await fleet.scheduler.trigger("alert-scan")
        source.push([_snap("dev-1", 0, earnings=2.0)])
        await fleet.scheduler.trigger("alert-scan")

    asyncio.run(scenario())

    [alert] = asyncio.run(fleet.alerts.list_active())
    assert alert.type == AlertType.EARNINGS_DROP


def test_weekly_statements_use_owner_rev_share_and_previous_week():
    start = datetime(2024, 3, 4, tzinfo=timezone.utc)
    metrics = InMemoryMetricStore([
        MetricSnapshot("dev-1", start + timedelta(hours=5), earnings=50.0, utilization=80),
        MetricSnapshot("dev-2", start + timedelta(days=8), earnings=50.0, utilization=80),
    ])
    notifier = _RecordingNotifier()
    fleet = build_fleet_ops(
        config=AppConfig(data={}),
        directory=InMemoryDeviceDirectory(
            [Device("dev-1", owner_id="owner-1"), Device("dev-2", owner_id="owner-1")],
            [Owner("owner-1", rev_share=Decimal("0.2")), Owner("owner-2")],
        ),
        metrics=metrics,
        source=StaticMetricSource(),
        notifier=notifier,
        scheduler=JobScheduler(scheduler=_FakeScheduler()),
    )
    fleet.jobs.clock = lambda: NOW

    asyncio.run(fleet.scheduler.trigger("statement-generation"))

    [summary] = fleet.jobs.last_statements
    assert summary.owner_id == "owner-1"
    assert summary.period_start == start
    assert summary.total_operator_cut == Decimal("10.00")
    assert summary.devices_with_no_activity == 1
    assert notifier.statements == [summary]


def test_retention_cleanup_purges_old_resolved_alerts_and_samples():
    alerts = InMemoryAlertStore()
    metrics = InMemoryMetricStore([_snap("dev-1", 24 * 100), _snap("dev-1", 1)])
    fleet = build_fleet_ops(
        config=AppConfig(data={}),
        directory=InMemoryDeviceDirectory([Device("dev-1")]),
        metrics=metrics,
        alerts=alerts,
        source=StaticMetricSource(),
        notifier=_RecordingNotifier(),
        scheduler=JobScheduler(scheduler=_FakeScheduler()),
    )
    fleet.jobs.clock = lambda: NOW

    async def scenario():
        old = await alerts.create(Alert("dev-1", AlertType.OFFLINE, Severity.HIGH, "offline", NOW - timedelta(days=60)))
        await alerts.mark_resolved(old.id, NOW - timedelta(days=45))
        recent = await alerts.create(Alert("dev-1", AlertType.CPU_HIGH, Severity.MEDIUM, "cpu", NOW - timedelta(days=2)))
        await alerts.mark_resolved(recent.id, NOW - timedelta(days=1))
        await alerts.create(Alert("dev-1", AlertType.OFFLINE, Severity.HIGH, "offline", NOW - timedelta(days=90)))
        await fleet.scheduler.trigger("retention-cleanup")
        return await metrics.samples_between("dev-1", NOW - timedelta(days=365), NOW)

    remaining_samples = asyncio.run(scenario())

    assert len(remaining_samples) == 1
    statuses = sorted(a.status.value for a in alerts.all())
    assert statuses == [AlertStatus.ACTIVE.value, AlertStatus.RESOLVED.value]


def test_repricing_scan_is_advisory_unless_auto_apply():
    source = StaticMetricSource([_snap("dev-1", 0, utilization=95), _snap("dev-2", 0, utilization=60)])

    advisory = _fleet(source=source)
    asyncio.run(advisory.scheduler.trigger("repricing-scan"))
    assert asyncio.run(advisory.directory.get_price("dev-1")) == Decimal("2.00")

    auto = _fleet(source=source, config=AppConfig(data={"repricing": {"auto_apply": True}}))
    asyncio.run(auto.scheduler.trigger("repricing-scan"))
    assert asyncio.run(auto.directory.get_price("dev-1")) == Decimal("2.20")
    assert asyncio.run(auto.directory.get_price("dev-2")) == Decimal("3.00")


def test_connector_poll_fails_when_every_device_fails():
    class _DownSource(StaticMetricSource):
        async def fetch_since(self, device_id, since):
            raise ConnectionError("connector down")

    fleet = _fleet(source=_DownSource())

    result = asyncio.run(fleet.scheduler.trigger("connector-poll"))

    assert result.outcome == TriggerOutcome.FAILED
    assert "connector down" not in (result.result.error or "")
    assert "all 2 devices" in result.result.error


@pytest.mark.parametrize("name", ["connector-poll", "alert-scan", "retention-cleanup", "repricing-scan"])
def test_jobs_complete_on_empty_fleet(name):
    fleet = _fleet(devices=[], owners=[])
    assert asyncio.run(fleet.scheduler.trigger(name)).outcome == TriggerOutcome.COMPLETED
