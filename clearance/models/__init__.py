from clearance.models.clearance import (
    ClearanceCriteria,
    AffiliateClearanceState,
    LifecycleStatus,
    IndividualClearanceStatus,
    PaymentBatchState,
    BookingCategory,
    DEFAULT_BOOKING_CATEGORY,
)
from clearance.models.audit_log import ClearanceEvent, ClearanceEventType

__all__ = [
    "ClearanceCriteria",
    "AffiliateClearanceState",
    "LifecycleStatus",
    "IndividualClearanceStatus",
    "PaymentBatchState",
    "BookingCategory",
    "DEFAULT_BOOKING_CATEGORY",
    "ClearanceEvent",
    "ClearanceEventType",
]
