"""API endpoint for the eligible affiliate grid."""
from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Query

from clearance.api.deps import CurrentOperator, Eligibility
from clearance.models.clearance import BookingCategory
from clearance.schemas.clearance import (
    EligibilityFilters,
    EligibilitySortField,
    EligibleAffiliatesResponse,
    SortDirection,
    MAX_PAGE_SIZE,
)

router = APIRouter()


@router.get("/eligible-affiliates", response_model=EligibleAffiliatesResponse)
async def list_eligible_affiliates(
    service: Eligibility,
    operator: CurrentOperator,
    exclude_fake_affiliates: Optional[bool] = None,
    exclude_expired_ids: Optional[bool] = None,
    booking_category: Optional[int] = Query(None, ge=0, le=max(c.value for c in BookingCategory)),
    min_amount_override: Optional[Decimal] = Query(None, ge=0),
    clearance_date_override: Optional[date] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    sort_by: EligibilitySortField = EligibilitySortField.AFFILIATE_ID,
    sort_dir: SortDirection = SortDirection.ASC,
):
    """
    Affiliates with unpaid earnings matching the locked criteria.

    Returns NOT_READY while the criteria is OPEN. Unset boolean filters use
    the server defaults; an unset booking category means passenger bookings.
    """
    filters = EligibilityFilters(
        exclude_fake_affiliates=exclude_fake_affiliates,
        exclude_expired_ids=exclude_expired_ids,
        booking_category=booking_category,
        min_amount_override=min_amount_override,
        clearance_date_override=clearance_date_override,
    )
    return await service.query(
        filters,
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        sort_dir=sort_dir,
    )
