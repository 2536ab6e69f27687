"""
Alerts API endpoints
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.deps import get_fleet_ops
from core.models import Severity
from core.service import FleetOps

router = APIRouter()


class ResolveRequest(BaseModel):
    note: Optional[str] = None


@router.get("")
async def list_alerts(
    severity: Optional[Severity] = None,
    entity_id: Optional[str] = None,
    fleet_ops: FleetOps = Depends(get_fleet_ops),
):
    """Active alerts, newest first; severity is a minimum"""
    alerts = await fleet_ops.alert_engine.list_active(severity=severity, entity_id=entity_id)
    return {"count": len(alerts), "alerts": [a.to_dict() for a in alerts]}


@router.post("/{alert_id}/resolve")
async def resolve_alert(
    alert_id: str,
    body: Optional[ResolveRequest] = None,
    fleet_ops: FleetOps = Depends(get_fleet_ops),
):
    """Manually resolve an alert. Resolving a resolved alert changes nothing."""
    note = body.note if body else None
    alert = await fleet_ops.alert_engine.resolve(alert_id, note=note or "resolved manually")
    return alert.to_dict()
