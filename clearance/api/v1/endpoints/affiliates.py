"""API endpoint for per-affiliate clearance status overrides."""
from fastapi import APIRouter, Path

from clearance.api.deps import CurrentOperator, StatusOverrides
from clearance.schemas.clearance import AffiliateStatusUpdate, AffiliateSnapshot

router = APIRouter()


@router.post("/affiliates/{affiliate_id}/status", response_model=AffiliateSnapshot)
async def set_affiliate_status(
    data: AffiliateStatusUpdate,
    service: StatusOverrides,
    operator: CurrentOperator,
    affiliate_id: int = Path(..., ge=1),
):
    """Exclude an affiliate from batch selection, or restore it."""
    return await service.set_individual_status(affiliate_id, data.status, operator=operator)
