from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from core.config import AppConfig
from core.errors import NotFoundError, ValidationError
from core.models import Device
from core.repricing import (
    OVER_UTILIZED,
    UNDER_UTILIZED,
    RepricingAdvisor,
    Thresholds,
    summarize_suggestions,
)
from core.stores import InMemoryDeviceDirectory

BAND = Thresholds(low=30, high=90)


def _device(device_id: str = "dev-1", price: str = "2.00", utilization=None) -> Device:
    return Device(device_id=device_id, price_per_hour=Decimal(price), utilization=utilization)


class _FailingPriceStore(InMemoryDeviceDirectory):
    def __init__(self, devices, failing: set[str]):
        super().__init__(devices)
        self.failing = failing
        self.set_calls: list[str] = []

    async def set_price(self, device_id, price):
        self.set_calls.append(device_id)
        if device_id in self.failing:
            raise ConnectionError("price store write failed")
        await super().set_price(device_id, price)


def test_over_under_and_inside_band():
    advisor = RepricingAdvisor()

    up = advisor.suggest(_device(), BAND, utilization=95)
    down = advisor.suggest(_device(), BAND, utilization=20)
    steady = advisor.suggest(_device(), BAND, utilization=60)

    assert up.suggested_price == Decimal("2.20")
    assert up.reason == OVER_UTILIZED
    assert up.is_increase is True
    assert down.suggested_price == Decimal("1.80")
    assert down.reason == UNDER_UTILIZED
    assert steady is None


@pytest.mark.parametrize("utilization", [30, 90])
def test_threshold_boundaries_are_inside_band(utilization):
    assert RepricingAdvisor().suggest(_device(), BAND, utilization=utilization) is None


def test_suggest_uses_device_reading_by_default():
    suggestion = RepricingAdvisor().suggest(_device(utilization=95), BAND)
    assert suggestion.utilization_at_suggestion == 95


def test_suggest_without_any_reading_rejected():
    with pytest.raises(ValidationError):
        RepricingAdvisor().suggest(_device(), BAND)


def test_expected_impact_is_daily_revenue_delta():
    suggestion = RepricingAdvisor().suggest(_device(price="1.00"), BAND, utilization=100)

    # +0.10/h over 24 busy hours
    assert suggestion.expected_impact == Decimal("2.40")


def test_price_never_drops_below_minimum():
    advisor = RepricingAdvisor(decrease_percent=50, min_price=0.05)

    suggestion = advisor.suggest(_device(price="0.06"), BAND, utilization=5)

    assert suggestion.suggested_price == Decimal("0.05")
    assert advisor.suggest(_device(price="0.05"), BAND, utilization=5) is None


def test_sub_cent_change_moves_price_one_cent():
    advisor = RepricingAdvisor()

    up = advisor.suggest(_device(price="0.04"), BAND, utilization=95)
    down = advisor.suggest(_device(price="0.04"), BAND, utilization=10)

    assert up.suggested_price == Decimal("0.05")
    assert up.reason == OVER_UTILIZED
    assert down.suggested_price == Decimal("0.03")
    assert down.reason == UNDER_UTILIZED


def test_zero_adjustment_suggests_nothing():
    advisor = RepricingAdvisor(increase_percent=0)

    assert advisor.suggest(_device(), BAND, utilization=95) is None


@pytest.mark.parametrize("low,high", [(95, 90), (-1, 50), (10, 101)])
def test_invalid_thresholds_rejected(low, high):
    with pytest.raises(ValidationError):
        RepricingAdvisor().suggest(_device(), Thresholds(low=low, high=high), utilization=50)


def test_scan_skips_devices_without_reading():
    devices = [_device("a"), _device("b"), _device("c", utilization=10)]

    suggestions = RepricingAdvisor().scan(devices, {"a": 99}, BAND)

    assert [s.device_id for s in suggestions] == ["a", "c"]


def test_apply_batch_isolates_failures():
    devices = [_device("a"), _device("b"), _device("c")]
    store = _FailingPriceStore(devices, failing={"b"})
    advisor = RepricingAdvisor(prices=store)
    suggestions = advisor.scan(devices, {"a": 95, "b": 95, "c": 10}, BAND)

    results = asyncio.run(advisor.apply_batch(suggestions))

    assert [(r.device_id, r.success) for r in results] == [("a", True), ("b", False), ("c", True)]
    assert "write failed" in results[1].error
    assert asyncio.run(store.get_price("a")) == Decimal("2.20")
    assert asyncio.run(store.get_price("b")) == Decimal("2.00")
    assert asyncio.run(store.get_price("c")) == Decimal("1.80")


def test_apply_batch_reports_unknown_device():
    store = InMemoryDeviceDirectory([_device("a")])
    advisor = RepricingAdvisor(prices=store)
    suggestion = advisor.suggest(_device("ghost"), BAND, utilization=95)

    [result] = asyncio.run(advisor.apply_batch([suggestion]))

    assert result.success is False
    assert str(NotFoundError("device", "ghost")) == result.error


def test_dry_run_touches_nothing():
    devices = [_device("a")]
    store = _FailingPriceStore(devices, failing=set())
    advisor = RepricingAdvisor(prices=store)
    suggestions = advisor.scan(devices, {"a": 95}, BAND)

    [result] = asyncio.run(advisor.apply_batch(suggestions, dry_run=True))

    assert result.dry_run is True
    assert result.new_price == Decimal("2.20")
    assert store.set_calls == []
    assert asyncio.run(store.get_price("a")) == Decimal("2.00")


def test_dry_run_reports_unknown_device_like_real_apply():
    store = _FailingPriceStore([_device("a")], failing=set())
    advisor = RepricingAdvisor(prices=store)
    suggestions = [
        advisor.suggest(_device("a"), BAND, utilization=95),
        advisor.suggest(_device("ghost"), BAND, utilization=95),
    ]

    dry = asyncio.run(advisor.apply_batch(suggestions, dry_run=True))

    assert [(r.device_id, r.success, r.dry_run) for r in dry] == [("a", True, True), ("ghost", False, True)]
    assert dry[1].error == str(NotFoundError("device", "ghost"))
    assert store.set_calls == []

    real = asyncio.run(advisor.apply_batch(suggestions))

    assert [(r.success, r.error) for r in real] == [(r.success, r.error) for r in dry]


def test_summarize_suggestions_nets_impact():
    advisor = RepricingAdvisor()
    suggestions = [
        advisor.suggest(_device("a", price="1.00"), BAND, utilization=100),
        advisor.suggest(_device("b", price="1.00"), BAND, utilization=25),
    ]

    summary = summarize_suggestions(suggestions)

    assert summary["increase_count"] == 1
    assert summary["decrease_count"] == 1
    assert summary["total_increase_impact"] == "2.40"
    assert summary["net_daily_impact"] == "1.80"


def test_advisor_and_thresholds_from_config():
    config = AppConfig(data={"repricing": {"low_threshold": 40, "high_threshold": 80, "increase_percent": 25}})

    advisor = RepricingAdvisor.from_config(config=config)
    thresholds = Thresholds.from_config(config)

    assert thresholds == Thresholds(low=40, high=80)
    assert advisor.suggest(_device(price="4.00"), thresholds, utilization=85).suggested_price == Decimal("5.00")
