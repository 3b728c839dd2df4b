"""API endpoints for clearance criteria lifecycle."""
from fastapi import APIRouter, Query

from clearance.api.deps import Clearance, CurrentOperator
from clearance.schemas.clearance import (
    CriteriaUpdate,
    CriteriaLockRequest,
    CriteriaCompleteRequest,
    CriteriaResponse,
    CriteriaListResponse,
)

router = APIRouter()


@router.get("/criteria", response_model=CriteriaResponse)
async def get_current_criteria(
    service: Clearance,
    operator: CurrentOperator,
):
    """Get the current clearance criteria, creating the OPEN default on first use."""
    return await service.current_criteria(operator)


@router.patch("/criteria", response_model=CriteriaResponse)
async def update_draft_criteria(
    data: CriteriaUpdate,
    service: Clearance,
    operator: CurrentOperator,
):
    """Save draft cutoff date / threshold while the period is OPEN."""
    return await service.update_draft(
        cutoff_date=data.cutoff_date,
        minimum_amount_threshold=data.minimum_amount_threshold,
        operator=operator,
    )


@router.post("/criteria/lock", response_model=CriteriaResponse)
async def lock_criteria(
    data: CriteriaLockRequest,
    service: Clearance,
    operator: CurrentOperator,
):
    """
    Lock cutoff date and minimum threshold.

    Freezes the eligible affiliate set for this period. Fails with
    INVALID_TRANSITION unless the criteria is OPEN and with INVALID_INPUT for
    a future cutoff or a negative threshold.
    """
    return await service.lock(data.cutoff_date, data.minimum_amount_threshold, operator=operator)


@router.post("/criteria/complete", response_model=CriteriaResponse)
async def complete_criteria(
    data: CriteriaCompleteRequest,
    service: Clearance,
    operator: CurrentOperator,
):
    """
    Complete the current LOCKED period.

    Fails with PRECONDITION_FAILED while eligible affiliates are neither
    settled nor excluded, unless force is set.
    """
    return await service.complete(data.id, force=data.force, operator=operator)


@router.post("/criteria/new-period", response_model=CriteriaResponse)
async def start_new_period(
    service: Clearance,
    operator: CurrentOperator,
):
    """Open the next period after the current one is COMPLETED."""
    return await service.start_new_period(operator=operator)


@router.get("/criteria/history", response_model=CriteriaListResponse)
async def list_criteria_history(
    service: Clearance,
    operator: CurrentOperator,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    """List clearance periods, newest first."""
    items, total = await service.list_periods(skip=skip, limit=limit)
    return CriteriaListResponse(
        items=[CriteriaResponse.model_validate(item) for item in items],
        total=total,
        skip=skip,
        limit=limit,
    )
