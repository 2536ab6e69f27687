"""Metric source provider contracts and implementations."""

from providers.metrics.base import MetricSource, StaticMetricSource
from providers.metrics.http import HttpMetricSource, parse_snapshot

__all__ = [
    "MetricSource",
    "StaticMetricSource",
    "HttpMetricSource",
    "parse_snapshot",
]
