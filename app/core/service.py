"""
Wires stores, engines and jobs into one fleet ops service
"""
import logging
from dataclasses import dataclass
from typing import Optional

from core.alerts import AlertEngine
from core.config import AppConfig, _as_float, app_config
from core.jobs import FleetJobs
from core.repricing import RepricingAdvisor
from core.scheduler import JobScheduler
from core.statements import StatementGenerator
from core.stores import (
    AlertStore,
    DeviceDirectory,
    InMemoryAlertStore,
    InMemoryDeviceDirectory,
    InMemoryMetricStore,
    InMemoryStatementStore,
    LoggingNotifier,
    MetricStore,
    Notifier,
    PriceStore,
    StatementStore,
)
from providers.metrics import HttpMetricSource, MetricSource, StaticMetricSource

logger = logging.getLogger(__name__)


@dataclass
class FleetOps:
    config: AppConfig
    directory: DeviceDirectory
    prices: PriceStore
    metrics: MetricStore
    alerts: AlertStore
    statements: StatementStore
    source: MetricSource
    notifier: Notifier
    alert_engine: AlertEngine
    statement_generator: StatementGenerator
    advisor: RepricingAdvisor
    jobs: FleetJobs
    scheduler: JobScheduler

    def start(self):
        self.scheduler.start()

    async def stop(self, timeout: Optional[float] = 30):
        self.scheduler.stop()
        if not await self.scheduler.wait_idle(timeout):
            logger.warning("Jobs still running after %ss shutdown wait", timeout)


def build_source(config: AppConfig) -> MetricSource:
    url = config.get("metrics.source_url")
    if not url:
        logger.warning("metrics.source_url not configured, using static metric source")
        return StaticMetricSource()
    return HttpMetricSource(
        url,
        timeout_seconds=_as_float(config.get("metrics.timeout_seconds"), 10.0),
        api_key=config.get("metrics.api_key"),
    )


def build_fleet_ops(
    config: Optional[AppConfig] = None,
    directory=None,
    metrics: Optional[MetricStore] = None,
    alerts: Optional[AlertStore] = None,
    statements: Optional[StatementStore] = None,
    source: Optional[MetricSource] = None,
    notifier: Optional[Notifier] = None,
    scheduler: Optional[JobScheduler] = None,
) -> FleetOps:
    """
    Build the service. Any store left out gets its in-memory implementation;
    directory doubles as the price store.
    """
    config = config or app_config
    directory = directory if directory is not None else InMemoryDeviceDirectory()
    metrics = metrics if metrics is not None else InMemoryMetricStore()
    alerts = alerts if alerts is not None else InMemoryAlertStore()
    statements = statements if statements is not None else InMemoryStatementStore()
    source = source if source is not None else build_source(config)
    notifier = notifier or LoggingNotifier()
    scheduler = scheduler or JobScheduler()

    alert_engine = AlertEngine(alerts, config=config)
    statement_generator = StatementGenerator(metrics, statements)
    advisor = RepricingAdvisor.from_config(prices=directory, config=config)

    jobs = FleetJobs(
        source=source,
        directory=directory,
        metrics=metrics,
        alerts=alerts,
        alert_engine=alert_engine,
        statements=statement_generator,
        advisor=advisor,
        notifier=notifier,
        config=config,
    )
    jobs.register_all(scheduler)

    return FleetOps(
        config=config,
        directory=directory,
        prices=directory,
        metrics=metrics,
        alerts=alerts,
        statements=statements,
        source=source,
        notifier=notifier,
        alert_engine=alert_engine,
        statement_generator=statement_generator,
        advisor=advisor,
        jobs=jobs,
        scheduler=scheduler,
    )


def build_sql_fleet_ops(session_factory=None, config: Optional[AppConfig] = None, **kwargs) -> FleetOps:
    """Fleet ops on the SQLAlchemy stores."""
    from core.persistence import SqlAlertStore, SqlDeviceDirectory, SqlMetricStore, SqlStatementStore

    if session_factory is None:
        from core.database import AsyncSessionLocal
        session_factory = AsyncSessionLocal

    return build_fleet_ops(
        config=config,
        directory=SqlDeviceDirectory(session_factory),
        metrics=SqlMetricStore(session_factory),
        alerts=SqlAlertStore(session_factory),
        statements=SqlStatementStore(session_factory),
        **kwargs,
    )
