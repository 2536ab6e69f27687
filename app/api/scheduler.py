"""
Scheduler API endpoints
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from api.deps import get_fleet_ops
from core.models import TriggerOutcome
from core.service import FleetOps

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/jobs")
async def list_jobs(fleet_ops: FleetOps = Depends(get_fleet_ops)):
    """Status of every registered job"""
    return {
        "running": fleet_ops.scheduler.running,
        "jobs": [status.to_dict() for status in fleet_ops.scheduler.status()],
    }


@router.post("/jobs/{name}/trigger")
async def trigger_job(name: str, fleet_ops: FleetOps = Depends(get_fleet_ops)):
    """
    Run a job now and wait for it to finish.

    404 for unknown jobs, 409 when the job is already running. A handler
    failure is still a 200: the failure is in the returned result.
    """
    result = await fleet_ops.scheduler.trigger(name)

    if result.outcome == TriggerOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"Job not found: {name}")
    if result.outcome == TriggerOutcome.OVERLAP_SKIPPED:
        raise HTTPException(status_code=409, detail=f"Job {name} is already running")

    return {
        "name": result.name,
        "outcome": result.outcome.value,
        "result": result.result.to_dict() if result.result else None,
    }
