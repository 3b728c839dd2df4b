"""API endpoint for the clearance event log."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query

from clearance.api.deps import DB, CurrentOperator
from clearance.models.audit_log import ClearanceEventType
from clearance.schemas.clearance import ClearanceEventResponse, ClearanceEventListResponse
from clearance.services.audit_service import AuditService

router = APIRouter()


@router.get("/events", response_model=ClearanceEventListResponse)
async def list_clearance_events(
    db: DB,
    operator: CurrentOperator,
    criteria_id: Optional[UUID] = None,
    affiliate_id: Optional[int] = None,
    event_type: Optional[ClearanceEventType] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    """List clearance events, newest first."""
    items, total = await AuditService(db).get_events(
        criteria_id=criteria_id,
        affiliate_id=affiliate_id,
        event_type=event_type.value if event_type else None,
        skip=skip,
        limit=limit,
    )
    return ClearanceEventListResponse(
        items=[ClearanceEventResponse.model_validate(item) for item in items],
        total=total,
        skip=skip,
        limit=limit,
    )
