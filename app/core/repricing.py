"""
Repricing advisor: utilization-driven price suggestions.

Suggestions are advisory. Nothing changes a device price until apply_batch
is called, and each device in a batch is applied on its own.
"""
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional

from core.config import AppConfig, _as_float, app_config
from core.errors import ValidationError
from core.models import ApplyResult, Device, PricingSuggestion
from core.stores import PriceStore

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HOURS_PER_DAY = Decimal("24")

OVER_UTILIZED = "over-utilized"
UNDER_UTILIZED = "under-utilized"


@dataclass(frozen=True)
class Thresholds:
    """Target utilization band in percent."""

    low: float
    high: float

    def validate(self) -> "Thresholds":
        if not (0 <= self.low <= 100 and 0 <= self.high <= 100):
            raise ValidationError(
                f"Thresholds must be within 0-100, got low={self.low} high={self.high}",
                field="thresholds",
            )
        if self.low > self.high:
            raise ValidationError(
                f"Low threshold {self.low} is above high threshold {self.high}",
                field="thresholds",
            )
        return self

    @classmethod
    def from_config(cls, config: Optional[AppConfig] = None) -> "Thresholds":
        config = config or app_config
        return cls(
            low=_as_float(config.get("repricing.low_threshold"), 30.0),
            high=_as_float(config.get("repricing.high_threshold"), 90.0),
        ).validate()


class RepricingAdvisor:
    """Service for pricing suggestions and batch price changes"""

    def __init__(
        self,
        prices: Optional[PriceStore] = None,
        increase_percent: float = 10,
        decrease_percent: float = 10,
        min_price: float = 0.01,
    ):
        if increase_percent < 0 or not 0 <= decrease_percent < 100:
            raise ValidationError("Price adjustment percentages out of range", field="adjustment")
        self.prices = prices
        self.increase_percent = Decimal(str(increase_percent))
        self.decrease_percent = Decimal(str(decrease_percent))
        self.min_price = Decimal(str(min_price))

    @classmethod
    def from_config(cls, prices: Optional[PriceStore] = None, config: Optional[AppConfig] = None) -> "RepricingAdvisor":
        config = config or app_config
        return cls(
            prices=prices,
            increase_percent=_as_float(config.get("repricing.increase_percent"), 10.0),
            decrease_percent=_as_float(config.get("repricing.decrease_percent"), 10.0),
            min_price=_as_float(config.get("repricing.min_price"), 0.01),
        )

    def suggest(
        self,
        device: Device,
        thresholds: Thresholds,
        utilization: Optional[float] = None,
    ) -> Optional[PricingSuggestion]:
        """
        Suggest a price change for a device, or None inside the target band.

        utilization defaults to the device's last known reading. Above
        thresholds.high -> increase, below thresholds.low -> decrease.
        Values equal to a threshold are inside the band. A change that rounds
        away to nothing moves the price by one cent instead; None is returned
        when the adjustment is zero or the price already sits at min_price.
        """
        thresholds.validate()
        if utilization is None:
            utilization = device.utilization
        if utilization is None:
            raise ValidationError(f"Device {device.device_id} has no utilization reading", field="utilization")
        if device.price_per_hour is None:
            raise ValidationError(f"Device {device.device_id} has no current price", field="price_per_hour")

        current = Decimal(str(device.price_per_hour))
        if utilization > thresholds.high:
            adjustment = self.increase_percent
            reason = OVER_UTILIZED
        elif utilization < thresholds.low:
            adjustment = -self.decrease_percent
            reason = UNDER_UTILIZED
        else:
            return None

        if adjustment == 0:
            return None
        suggested = (current * (100 + adjustment) / 100).quantize(CENT, rounding=ROUND_HALF_UP)
        if suggested == current:
            suggested = current + CENT if adjustment > 0 else current - CENT
        suggested = max(suggested, self.min_price)
        if suggested == current:
            return None

        daily_hours = Decimal(str(utilization)) / 100 * HOURS_PER_DAY
        expected_impact = ((suggested - current) * daily_hours).quantize(CENT, rounding=ROUND_HALF_UP)

        return PricingSuggestion(
            device_id=device.device_id,
            current_price=current,
            suggested_price=suggested,
            reason=reason,
            expected_impact=expected_impact,
            utilization_at_suggestion=utilization,
            adjustment_percent=adjustment,
        )

    def scan(
        self,
        devices: Iterable[Device],
        utilization_by_device: Optional[Dict[str, float]],
        thresholds: Thresholds,
    ) -> List[PricingSuggestion]:
        """Suggestions for every device with a utilization reading and a price."""
        thresholds.validate()
        suggestions = []
        for device in devices:
            utilization = (utilization_by_device or {}).get(device.device_id, device.utilization)
            if utilization is None or device.price_per_hour is None:
                logger.debug("Skipping repricing for %s: no utilization or price", device.device_id)
                continue
            suggestion = self.suggest(device, thresholds, utilization)
            if suggestion is not None:
                suggestions.append(suggestion)
        return suggestions

    async def apply_batch(
        self,
        suggestions: Iterable[PricingSuggestion],
        dry_run: bool = False,
    ) -> List[ApplyResult]:
        """
        Apply suggested prices one device at a time.

        A failing device is reported in its result and never rolls back or
        blocks the others. dry_run checks each device exists and returns the
        would-be results without writing any price.
        """
        if self.prices is None and not dry_run:
            raise ValidationError("No price store configured for applying prices", field="prices")

        results = []
        for suggestion in suggestions:
            try:
                if dry_run:
                    # Existence check only, no write
                    if self.prices is not None:
                        await self.prices.get_price(suggestion.device_id)
                else:
                    await self.prices.set_price(suggestion.device_id, suggestion.suggested_price)
            except Exception as e:
                logger.error("Failed to apply price for %s: %s", suggestion.device_id, e)
                results.append(
                    ApplyResult(
                        device_id=suggestion.device_id,
                        success=False,
                        new_price=suggestion.suggested_price,
                        previous_price=suggestion.current_price,
                        error=str(e),
                        dry_run=dry_run,
                    )
                )
                continue

            if not dry_run:
                logger.info(
                    "Repriced %s: %s -> %s (%s)",
                    suggestion.device_id,
                    suggestion.current_price,
                    suggestion.suggested_price,
                    suggestion.reason,
                )
            results.append(
                ApplyResult(
                    device_id=suggestion.device_id,
                    success=True,
                    new_price=suggestion.suggested_price,
                    previous_price=suggestion.current_price,
                    dry_run=dry_run,
                )
            )
        return results


def summarize_suggestions(suggestions: Iterable[PricingSuggestion]) -> Dict[str, object]:
    """Increase/decrease counts and net advisory daily impact."""
    suggestions = list(suggestions)
    increases = [s for s in suggestions if s.is_increase]
    decreases = [s for s in suggestions if not s.is_increase]
    return {
        "increase_count": len(increases),
        "decrease_count": len(decreases),
        "total_increase_impact": str(sum((s.expected_impact for s in increases), Decimal("0"))),
        "total_decrease_impact": str(sum((s.expected_impact for s in decreases), Decimal("0"))),
        "net_daily_impact": str(sum((s.expected_impact for s in suggestions), Decimal("0"))),
    }
