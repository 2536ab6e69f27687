"""
HTTP metric source backed by the connector service REST API
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from core.errors import TransientIOError
from core.models import MetricSnapshot
from providers.metrics.base import MetricSource

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_snapshot(device_id: str, data: Dict[str, Any]) -> MetricSnapshot:
    """
    Convert a connector payload into a MetricSnapshot.

    Payload keys follow the connector API (camelCase); snake_case is accepted
    as well. Unknown keys are ignored.
    """
    status = data.get("status")
    if status is None and "online" in data:
        status = "online" if data.get("online") else "offline"

    return MetricSnapshot(
        entity_id=str(data.get("deviceId") or data.get("device_id") or device_id),
        timestamp=_parse_timestamp(data.get("timestamp")),
        cpu=_optional_float(data.get("cpu", data.get("cpuUsage"))),
        memory=_optional_float(data.get("memory", data.get("memoryUsage"))),
        uptime=_optional_float(data.get("uptime")),
        utilization=_optional_float(data.get("utilization")),
        earnings=_optional_float(data.get("earnings", data.get("earningsUsd"))),
        status=str(status).lower() if status is not None else None,
        interval_hours=_optional_float(data.get("intervalHours", data.get("interval_hours"))) or 1.0,
    )


class HttpMetricSource(MetricSource):
    """Fetches device telemetry from a connector REST API."""

    source_id = "http"

    def __init__(self, base_url: str, timeout_seconds: float = 10, api_key: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get_json(self, session: aiohttp.ClientSession, path: str, params: Optional[dict] = None):
        url = f"{self.base_url}{path}"
        try:
            async with session.get(url, params=params, headers=self._headers()) as response:
                if response.status == 404:
                    return None
                if response.status >= 400:
                    raise TransientIOError("metric source", f"HTTP {response.status} from {url}")
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientIOError("metric source", e) from e

    async def fetch_latest(self, device_ids: Iterable[str]) -> List[MetricSnapshot]:
        snapshots = []
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            for device_id in device_ids:
                data = await self._get_json(session, f"/devices/{device_id}/metrics/latest")
                if not data:
                    logger.debug("No latest metrics for device %s", device_id)
                    continue
                try:
                    snapshots.append(parse_snapshot(device_id, data))
                except (TypeError, ValueError) as e:
                    logger.warning("Skipping malformed metrics for device %s: %s", device_id, e)
        return snapshots

    async def fetch_since(self, device_id: str, since: Optional[datetime]) -> List[MetricSnapshot]:
        params = {"since": since.isoformat()} if since else None
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            data = await self._get_json(session, f"/devices/{device_id}/metrics", params=params)

        if not data:
            return []
        items = data.get("metrics", []) if isinstance(data, dict) else data

        snapshots = []
        for item in items:
            try:
                snapshots.append(parse_snapshot(device_id, item))
            except (TypeError, ValueError) as e:
                logger.warning("Skipping malformed metric sample for device %s: %s", device_id, e)
        if since is not None:
            snapshots = [s for s in snapshots if s.timestamp > since]
        snapshots.sort(key=lambda s: s.timestamp)
        return snapshots

    async def health_check(self) -> Dict[str, object]:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                await self._get_json(session, "/health")
        except TransientIOError as e:
            return {"status": "error", "source_id": self.source_id, "error": str(e)}
        return {"status": "ok", "source_id": self.source_id}
