"""API endpoints for two-phase batch payment."""
from typing import List

from fastapi import APIRouter

from clearance.api.deps import CurrentOperator, Settlement
from clearance.schemas.clearance import BatchRequest, BatchOperationResult

router = APIRouter()


@router.post("/schedule", response_model=List[BatchOperationResult])
async def schedule_payments(
    data: BatchRequest,
    service: Settlement,
    operator: CurrentOperator,
):
    """
    Proceed to payment: mark the selected affiliates SCHEDULED.

    Per-affiliate failures are reported in the result list, never as an
    HTTP error.
    """
    return await service.schedule(data.affiliate_ids, operator=operator)


@router.post("/settle", response_model=List[BatchOperationResult])
async def settle_payments(
    data: BatchRequest,
    service: Settlement,
    operator: CurrentOperator,
):
    """
    Pay checked: settle the selected SCHEDULED affiliates through the
    payment interface. Failed ids stay SCHEDULED and can be retried.
    """
    return await service.settle(data.affiliate_ids, operator=operator)
