"""
Shared API dependencies
"""
from fastapi import HTTPException, Request

from core.service import FleetOps


def get_fleet_ops(request: Request) -> FleetOps:
    fleet_ops = getattr(request.app.state, "fleet_ops", None)
    if fleet_ops is None:
        raise HTTPException(status_code=503, detail="Fleet ops service not ready")
    return fleet_ops
