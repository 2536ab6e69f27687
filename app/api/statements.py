"""
Statements API endpoints
"""
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel

from api.deps import get_fleet_ops
from core.errors import ValidationError
from core.service import FleetOps
from core.statements import StatementGenerator, export_json, normalize_rev_share

logger = logging.getLogger(__name__)
router = APIRouter()

MEDIA_TYPES = {
    "json": "application/json",
    "csv": "text/csv",
}


class GenerateStatementRequest(BaseModel):
    period_start: datetime
    period_end: datetime
    device_ids: Optional[List[str]] = None
    owner_id: Optional[str] = None
    # Exactly one of these; rev_share is a fraction (0.15), rev_share_percent is 15
    rev_share: Optional[Decimal] = None
    rev_share_percent: Optional[Decimal] = None


async def _resolve_inputs(fleet_ops: FleetOps, request: GenerateStatementRequest):
    if request.rev_share is None and request.rev_share_percent is None:
        if request.owner_id:
            owner = await fleet_ops.directory.get_owner(request.owner_id)
            share = owner.rev_share
        else:
            share = None
        if share is None:
            share = fleet_ops.config.get("statements.default_rev_share", 0.15)
        rev_share = normalize_rev_share(fraction=share)
    else:
        rev_share = normalize_rev_share(fraction=request.rev_share, percent=request.rev_share_percent)

    device_ids = request.device_ids
    if device_ids is None:
        if not request.owner_id:
            raise ValidationError("Provide device_ids or owner_id", field="device_ids")
        device_ids = [d.device_id for d in await fleet_ops.directory.devices_for_owner(request.owner_id)]

    return device_ids, rev_share


@router.post("/generate")
async def generate_statement(
    request: GenerateStatementRequest,
    format: Optional[str] = Query(None, pattern="^(json|csv)$"),
    fleet_ops: FleetOps = Depends(get_fleet_ops),
):
    """
    Generate a statement for a period.

    Without ?format the response is the statement as JSON plus its id. With
    ?format=json|csv the body is the deterministic export.
    """
    device_ids, rev_share = await _resolve_inputs(fleet_ops, request)
    summary = await fleet_ops.statement_generator.generate(
        device_ids,
        request.period_start,
        request.period_end,
        rev_share,
        owner_id=request.owner_id,
    )

    if format:
        return Response(
            content=StatementGenerator.export(summary, format),
            media_type=MEDIA_TYPES[format],
            headers={"X-Statement-Id": summary.statement_id},
        )

    payload = json.loads(export_json(summary))
    payload["statement_id"] = summary.statement_id
    payload["generated_at"] = summary.generated_at.isoformat()
    return payload
