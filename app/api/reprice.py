"""
Repricing API endpoints
"""
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.deps import get_fleet_ops
from core.repricing import Thresholds, summarize_suggestions
from core.service import FleetOps

logger = logging.getLogger(__name__)
router = APIRouter()


class SuggestRequest(BaseModel):
    device_ids: Optional[List[str]] = None
    low_threshold: Optional[float] = Field(None, ge=0, le=100)
    high_threshold: Optional[float] = Field(None, ge=0, le=100)
    utilization: Dict[str, float] = Field(default_factory=dict)


class ApplyRequest(SuggestRequest):
    dry_run: bool = False


async def _suggestions(fleet_ops: FleetOps, request: SuggestRequest):
    defaults = Thresholds.from_config(fleet_ops.config)
    thresholds = Thresholds(
        low=request.low_threshold if request.low_threshold is not None else defaults.low,
        high=request.high_threshold if request.high_threshold is not None else defaults.high,
    ).validate()

    if request.device_ids is None:
        devices = await fleet_ops.directory.list_devices()
    else:
        devices = [await fleet_ops.directory.get_device(d) for d in dict.fromkeys(request.device_ids)]

    return fleet_ops.advisor.scan(devices, request.utilization, thresholds)


@router.post("/suggest")
async def suggest_prices(request: SuggestRequest, fleet_ops: FleetOps = Depends(get_fleet_ops)):
    """Advisory price suggestions; nothing is changed"""
    suggestions = await _suggestions(fleet_ops, request)
    return {
        "suggestions": [s.to_dict() for s in suggestions],
        "summary": summarize_suggestions(suggestions),
    }


@router.post("/apply")
async def apply_prices(request: ApplyRequest, fleet_ops: FleetOps = Depends(get_fleet_ops)):
    """Recompute suggestions and apply them, each device on its own"""
    suggestions = await _suggestions(fleet_ops, request)
    results = await fleet_ops.advisor.apply_batch(suggestions, dry_run=request.dry_run)
    applied = sum(1 for r in results if r.success)
    logger.info(
        "Price apply%s: %s of %s succeeded",
        " (dry run)" if request.dry_run else "",
        applied,
        len(results),
    )
    return {
        "dry_run": request.dry_run,
        "applied": applied,
        "failed": len(results) - applied,
        "results": [r.to_dict() for r in results],
    }
