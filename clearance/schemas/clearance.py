"""Pydantic schemas for the affiliate clearance workflow."""
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Optional, List
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from clearance.core.enum_utils import create_uppercase_validator, enum_values
from clearance.models.clearance import (
    IndividualClearanceStatus,
    PaymentBatchState,
    BookingCategory,
)
from clearance.schemas.base import BaseResponseSchema, BaseCreateSchema, BaseUpdateSchema


VALID_INDIVIDUAL_STATUSES = set(enum_values(IndividualClearanceStatus))

MAX_PAGE_SIZE = 500
MAX_BATCH_SIZE = 1000


class BatchOutcome(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class EligibilitySortField(str, Enum):
    """Columns the eligible-affiliates grid can be sorted by."""
    AFFILIATE_ID = "affiliate_id"
    DISPLAY_NAME = "display_name"
    CONTRACT_TYPE = "contract_type"
    UNPAID_COUNT = "unpaid_count"
    UNPAID_AMOUNT = "unpaid_amount"
    ID_EXPIRATION_DATE = "id_expiration_date"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


# ==================== Criteria Schemas ====================

class CriteriaUpdate(BaseUpdateSchema):
    """Draft edit of the current OPEN criteria."""
    cutoff_date: Optional[date] = None
    minimum_amount_threshold: Optional[Decimal] = None


class CriteriaLockRequest(BaseCreateSchema):
    """Freeze the eligible set for the current period."""
    cutoff_date: date
    minimum_amount_threshold: Decimal


class CriteriaCompleteRequest(BaseCreateSchema):
    id: UUID
    force: bool = False


class CriteriaResponse(BaseResponseSchema):
    """Response schema for ClearanceCriteria."""
    id: UUID
    period_number: int
    cutoff_date: Optional[date] = None
    minimum_amount_threshold: Optional[Decimal] = None
    lifecycle_status: str
    version: int
    is_ready: bool
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    forced_completion: bool = False
    created_at: datetime
    updated_at: datetime


class CriteriaListResponse(BaseModel):
    items: List[CriteriaResponse]
    total: int
    skip: int = 0
    limit: int = 50


# ==================== Eligibility Schemas ====================

class EligibilityFilters(BaseModel):
    """
    Ad hoc filters for the eligibility query.

    None on a boolean filter means "use the server default".
    """
    exclude_fake_affiliates: Optional[bool] = None
    exclude_expired_ids: Optional[bool] = None
    booking_category: Optional[BookingCategory] = None
    min_amount_override: Optional[Decimal] = Field(None, ge=0)
    clearance_date_override: Optional[date] = None


class AffiliateSnapshot(BaseModel):
    """Recomputed view of one affiliate's unpaid earnings for the period."""
    affiliate_id: int
    display_name: Optional[str] = None
    contract_type: Optional[str] = None
    unpaid_count: int = 0
    unpaid_amount: Decimal = Decimal("0")
    id_expiration_date: Optional[date] = None
    is_fake: bool = False
    individual_clearance_status: str = IndividualClearanceStatus.PENDING.value
    payment_batch_state: str = PaymentBatchState.NONE.value
    scheduled_amount: Optional[Decimal] = None
    payment_reference: Optional[str] = None


class EligibleAffiliatesResponse(BaseModel):
    items: List[AffiliateSnapshot]
    total: int
    page: int
    page_size: int
    criteria_id: UUID
    as_of: date
    minimum_amount: Decimal
    booking_category: int


# ==================== Status Override Schemas ====================

class AffiliateStatusUpdate(BaseCreateSchema):
    status: IndividualClearanceStatus

    _normalize_status = create_uppercase_validator('status', VALID_INDIVIDUAL_STATUSES)


# ==================== Batch Payment Schemas ====================

class BatchRequest(BaseCreateSchema):
    """Selection set of affiliate ids for schedule/settle."""
    affiliate_ids: List[int] = Field(..., min_length=1, max_length=MAX_BATCH_SIZE)

    @field_validator('affiliate_ids')
    @classmethod
    def dedupe_ids(cls, v: List[int]) -> List[int]:
        """Drop repeated ids, keeping the first occurrence."""
        return list(dict.fromkeys(v))


class BatchOperationResult(BaseModel):
    affiliate_id: int
    outcome: BatchOutcome
    error_code: Optional[str] = None
    error_detail: Optional[str] = None
    payment_batch_state: Optional[str] = None


# ==================== Event Schemas ====================

class ClearanceEventResponse(BaseResponseSchema):
    id: UUID
    criteria_id: Optional[UUID] = None
    event_type: str
    affiliate_id: Optional[int] = None
    operator: Optional[str] = None
    payload: Optional[dict] = None
    description: Optional[str] = None
    created_at: datetime


class ClearanceEventListResponse(BaseModel):
    items: List[ClearanceEventResponse]
    total: int
    skip: int = 0
    limit: int = 50
