"""
Clearance State Machine

This module is the SINGLE SOURCE OF TRUTH for clearance criteria lifecycle
and per-affiliate payment transitions.

Criteria:  OPEN -> LOCKED -> COMPLETED   (strictly forward)
Payment:   NONE -> SCHEDULED -> SETTLED

A new period is not a transition of a record: once the current record is
COMPLETED, start_new_period opens record n + 1 in OPEN.
"""
import logging
import uuid
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from clearance.core.clock import business_today, utc_now
from clearance.core.exceptions import (
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailedError,
)
from clearance.models.audit_log import ClearanceEventType
from clearance.models.clearance import (
    ClearanceCriteria,
    IndividualClearanceStatus,
    LifecycleStatus,
    PaymentBatchState,
)
from clearance.services.affiliate_state_store import list_states
from clearance.services.audit_service import AuditService
from clearance.services.cache_service import CacheService
from clearance.services.criteria_store import CriteriaStore
from clearance.services.eligibility_service import EligibilityService

logger = logging.getLogger(__name__)


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Format: current_status -> [list of allowed next statuses]
CRITERIA_TRANSITIONS: Dict[str, List[str]] = {
    LifecycleStatus.OPEN.value: [
        LifecycleStatus.LOCKED.value,       # Freeze cutoff + threshold
    ],
    LifecycleStatus.LOCKED.value: [
        LifecycleStatus.COMPLETED.value,    # All eligible affiliates settled or excluded
    ],
    LifecycleStatus.COMPLETED.value: [],    # Terminal for this period
}

PAYMENT_TRANSITIONS: Dict[str, List[str]] = {
    PaymentBatchState.NONE.value: [
        PaymentBatchState.SCHEDULED.value,  # Proceed to payment
    ],
    PaymentBatchState.SCHEDULED.value: [
        PaymentBatchState.SETTLED.value,    # Pay checked
    ],
    PaymentBatchState.SETTLED.value: [],
}

TRANSITION_ACTIONS: Dict[tuple, str] = {
    (LifecycleStatus.OPEN.value, LifecycleStatus.LOCKED.value): "Lock criteria",
    (LifecycleStatus.LOCKED.value, LifecycleStatus.COMPLETED.value): "Complete period",
    (PaymentBatchState.NONE.value, PaymentBatchState.SCHEDULED.value): "Proceed to payment",
    (PaymentBatchState.SCHEDULED.value, PaymentBatchState.SETTLED.value): "Pay checked",
}

MAX_THRESHOLD = Decimal("10000000000")
CENT = Decimal("0.01")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def can_transition(current_status: str, new_status: str) -> bool:
    return new_status in CRITERIA_TRANSITIONS.get(current_status, [])


def can_transition_payment(current_state: str, new_state: str) -> bool:
    return new_state in PAYMENT_TRANSITIONS.get(current_state, [])


def get_transition_action(current_status: str, new_status: str) -> str:
    return TRANSITION_ACTIONS.get((current_status, new_status), f"{current_status} -> {new_status}")


def validate_transition(current_status: str, new_status: str) -> None:
    """Raise InvalidTransitionError unless current_status -> new_status is allowed."""
    if not can_transition(current_status, new_status):
        allowed = CRITERIA_TRANSITIONS.get(current_status, [])
        raise InvalidTransitionError(
            f"Cannot {get_transition_action(current_status, new_status).lower()} "
            f"while criteria is {current_status}",
            details={
                "current_status": current_status,
                "requested_status": new_status,
                "allowed_transitions": allowed,
            }
        )


def is_editable(status: str) -> bool:
    """Cutoff and threshold can only change while OPEN."""
    return status == LifecycleStatus.OPEN.value


def validate_cutoff_date(cutoff_date: date) -> None:
    today = business_today()
    if cutoff_date > today:
        raise InvalidInputError(
            "cutoff_date cannot be in the future",
            details={"cutoff_date": cutoff_date.isoformat(), "today": today.isoformat()}
        )


def validate_threshold(threshold: Decimal) -> Decimal:
    try:
        if not threshold.is_finite():
            raise InvalidInputError("minimum_amount_threshold must be a finite amount")
        if threshold < 0:
            raise InvalidInputError(
                "minimum_amount_threshold must be non-negative",
                details={"minimum_amount_threshold": str(threshold)}
            )
        if threshold >= MAX_THRESHOLD or threshold != threshold.quantize(CENT):
            raise InvalidInputError(
                "minimum_amount_threshold must fit 10 digits with at most 2 decimals",
                details={"minimum_amount_threshold": str(threshold)}
            )
    except InvalidOperation as e:
        raise InvalidInputError(f"Invalid minimum_amount_threshold: {threshold}") from e
    return threshold.quantize(CENT)


def _criteria_payload(criteria: ClearanceCriteria) -> dict:
    return {
        "period_number": criteria.period_number,
        "lifecycle_status": criteria.lifecycle_status,
        "version": criteria.version,
        "cutoff_date": criteria.cutoff_date.isoformat() if criteria.cutoff_date else None,
        "minimum_amount_threshold": (
            str(criteria.minimum_amount_threshold)
            if criteria.minimum_amount_threshold is not None else None
        ),
    }


# =============================================================================
# SERVICE
# =============================================================================

class ClearanceService:
    """
    Drives the criteria lifecycle.

    Writes go through CriteriaStore.compare_and_set; every successful
    transition is logged, recorded as an event and invalidates cached
    eligibility data.
    """

    def __init__(
        self,
        db: AsyncSession,
        eligibility: Optional[EligibilityService] = None,
        cache: Optional[CacheService] = None,
    ):
        self.db = db
        self.store = CriteriaStore(db)
        self.audit = AuditService(db)
        self.eligibility = eligibility
        self.cache = cache

    async def current_criteria(self, operator: Optional[str] = None) -> ClearanceCriteria:
        """Current criteria, creating the OPEN default on first use."""
        criteria, created = await self.store.get_or_create_current()
        if created:
            await self.audit.log(
                ClearanceEventType.CRITERIA_CREATED,
                criteria_id=criteria.id,
                operator=operator,
                payload=_criteria_payload(criteria),
                description=f"Clearance period {criteria.period_number} created",
            )
        await self.db.commit()
        return criteria

    async def list_periods(self, skip: int = 0, limit: int = 50) -> Tuple[List[ClearanceCriteria], int]:
        return await self.store.list_periods(skip=skip, limit=limit)

    async def update_draft(
        self,
        cutoff_date: Optional[date] = None,
        minimum_amount_threshold: Optional[Decimal] = None,
        operator: Optional[str] = None,
    ) -> ClearanceCriteria:
        """Save draft cutoff/threshold values while the period is OPEN."""
        values = {}
        if cutoff_date is not None:
            validate_cutoff_date(cutoff_date)
            values["cutoff_date"] = cutoff_date
        if minimum_amount_threshold is not None:
            values["minimum_amount_threshold"] = validate_threshold(minimum_amount_threshold)

        criteria = await self.current_criteria(operator)
        if not is_editable(criteria.lifecycle_status):
            raise InvalidTransitionError(
                f"Criteria can only be edited while OPEN, current status is {criteria.lifecycle_status}",
                details={"current_status": criteria.lifecycle_status}
            )
        if not values:
            return criteria

        old_values = _criteria_payload(criteria)
        updated = await self.store.compare_and_set(
            criteria.id, LifecycleStatus.OPEN, values, expected_version=criteria.version
        )
        if updated is None:
            error = InvalidTransitionError(
                "Criteria changed concurrently, reload and retry",
                details={"criteria_id": str(criteria.id)}
            )
            await self.db.rollback()
            raise error

        await self.audit.log(
            ClearanceEventType.CRITERIA_UPDATED,
            criteria_id=updated.id,
            operator=operator,
            payload={"old": old_values, "new": _criteria_payload(updated)},
            description="Draft clearance criteria updated",
        )
        await self.db.commit()
        return updated

    async def lock(
        self,
        cutoff_date: date,
        minimum_amount_threshold: Decimal,
        operator: Optional[str] = None,
    ) -> ClearanceCriteria:
        """
        Freeze cutoff and threshold for the current period.

        Raises:
            InvalidInputError: future cutoff or negative threshold
            InvalidTransitionError: criteria is not OPEN (including a lost race)
        """
        validate_cutoff_date(cutoff_date)
        threshold = validate_threshold(minimum_amount_threshold)

        criteria = await self.current_criteria(operator)
        validate_transition(criteria.lifecycle_status, LifecycleStatus.LOCKED.value)

        locked = await self.store.compare_and_set(
            criteria.id,
            LifecycleStatus.OPEN,
            {
                "cutoff_date": cutoff_date,
                "minimum_amount_threshold": threshold,
                "lifecycle_status": LifecycleStatus.LOCKED.value,
                "locked_at": utc_now(),
                "locked_by": operator,
            },
        )
        if locked is None:
            error = InvalidTransitionError(
                "Criteria is no longer OPEN, it was locked concurrently",
                details={"criteria_id": str(criteria.id)}
            )
            await self.db.rollback()
            raise error

        await self.audit.log(
            ClearanceEventType.CRITERIA_LOCKED,
            criteria_id=locked.id,
            operator=operator,
            payload=_criteria_payload(locked),
            description=f"Locked period {locked.period_number}: cutoff {cutoff_date}, threshold {threshold}",
        )
        await self.db.commit()
        await self._invalidate_cache()

        logger.info(
            f"Clearance period {locked.period_number} locked by {operator}: "
            f"cutoff={cutoff_date}, threshold={threshold}"
        )
        return locked

    async def complete(
        self,
        criteria_id: uuid.UUID,
        force: bool = False,
        operator: Optional[str] = None,
    ) -> ClearanceCriteria:
        """
        Close the current LOCKED period.

        Every affiliate in the settlement-eligible set must be SETTLED or
        EXCLUDED, and no SCHEDULED payment may be outstanding, unless force
        is set.
        """
        criteria = await self.store.get_by_id(criteria_id)
        if criteria is None:
            raise NotFoundError(
                f"Clearance criteria {criteria_id} not found",
                details={"criteria_id": str(criteria_id)}
            )

        current = await self.store.get_current()
        if current is not None and current.id != criteria.id:
            raise InvalidTransitionError(
                f"Criteria {criteria_id} was superseded by period {current.period_number}",
                details={"criteria_id": str(criteria_id), "current_criteria_id": str(current.id)}
            )
        validate_transition(criteria.lifecycle_status, LifecycleStatus.COMPLETED.value)

        read_version = criteria.version
        await self.db.commit()

        eligible_ids, unsettled = await self._unsettled_affiliates(criteria)
        if unsettled and not force:
            raise PreconditionFailedError(
                f"{len(unsettled)} eligible affiliate(s) are neither settled nor excluded",
                details={"unsettled_count": len(unsettled), "unsettled_affiliate_ids": unsettled[:100]}
            )

        completed = await self.store.compare_and_set(
            criteria.id,
            LifecycleStatus.LOCKED,
            {
                "lifecycle_status": LifecycleStatus.COMPLETED.value,
                "completed_at": utc_now(),
                "completed_by": operator,
                "forced_completion": bool(unsettled),
            },
            expected_version=read_version,
        )
        if completed is None:
            error = InvalidTransitionError(
                "Criteria changed while completion was being evaluated, retry",
                details={"criteria_id": str(criteria.id), "expected_version": read_version}
            )
            await self.db.rollback()
            raise error

        # Overrides and schedules committed since the check above are visible
        # now; later ones wait on the criteria row and see COMPLETED.
        rechecked = await self._unsettled_among(completed.id, eligible_ids)
        if rechecked and not force:
            error = InvalidTransitionError(
                "Affiliate clearance states changed while completion was being evaluated, retry",
                details={"criteria_id": str(completed.id), "unsettled_affiliate_ids": rechecked[:100]}
            )
            await self.db.rollback()
            raise error
        unsettled = rechecked
        completed.forced_completion = bool(unsettled)

        if unsettled:
            logger.warning(
                f"Clearance period {completed.period_number} force-completed by {operator} "
                f"with {len(unsettled)} unsettled affiliate(s): {unsettled[:20]}"
            )
            await self.audit.log(
                ClearanceEventType.CRITERIA_FORCE_COMPLETED,
                criteria_id=completed.id,
                operator=operator,
                payload={**_criteria_payload(completed), "unsettled_affiliate_ids": unsettled},
                description=f"Period {completed.period_number} force-completed with unsettled affiliates",
            )
        else:
            logger.info(f"Clearance period {completed.period_number} completed by {operator}")
            await self.audit.log(
                ClearanceEventType.CRITERIA_COMPLETED,
                criteria_id=completed.id,
                operator=operator,
                payload=_criteria_payload(completed),
                description=f"Period {completed.period_number} completed",
            )
        await self.db.commit()
        await self._invalidate_cache()
        return completed

    async def start_new_period(self, operator: Optional[str] = None) -> ClearanceCriteria:
        """Open the next period once the current one is COMPLETED."""
        current = await self.current_criteria(operator)
        if current.lifecycle_status != LifecycleStatus.COMPLETED.value:
            raise InvalidTransitionError(
                f"A new period can only start after the current one is COMPLETED, "
                f"current status is {current.lifecycle_status}",
                details={"current_status": current.lifecycle_status}
            )

        new_period = await self.store.create_next_period(current)
        await self.audit.log(
            ClearanceEventType.PERIOD_STARTED,
            criteria_id=new_period.id,
            operator=operator,
            payload={"period_number": new_period.period_number, "previous_criteria_id": str(current.id)},
            description=f"Clearance period {new_period.period_number} started",
        )
        await self.db.commit()
        await self._invalidate_cache()

        logger.info(f"Clearance period {new_period.period_number} started by {operator}")
        return new_period

    async def _unsettled_affiliates(self, criteria: ClearanceCriteria) -> Tuple[List[int], List[int]]:
        """Settlement-eligible ids, and the unsettled ones among them."""
        if self.eligibility is None:
            raise RuntimeError("ClearanceService.complete requires an EligibilityService")

        eligible = await self.eligibility.settlement_eligible_set(criteria)
        eligible_ids = sorted(eligible)
        unsettled = await self._unsettled_among(criteria.id, eligible_ids)
        await self.db.commit()
        return eligible_ids, unsettled

    async def _unsettled_among(self, criteria_id: uuid.UUID, eligible_ids: List[int]) -> List[int]:
        """
        Eligible ids that are neither SETTLED nor EXCLUDED, plus any
        outstanding SCHEDULED row. Reads local state only, so it can run
        inside the completion transaction.
        """
        states = await list_states(self.db, criteria_id)
        unsettled = {
            affiliate_id
            for affiliate_id in eligible_ids
            if affiliate_id not in states
            or (
                states[affiliate_id].payment_batch_state != PaymentBatchState.SETTLED.value
                and states[affiliate_id].individual_status != IndividualClearanceStatus.EXCLUDED.value
            )
        }
        unsettled.update(
            state.affiliate_id
            for state in states.values()
            if state.payment_batch_state == PaymentBatchState.SCHEDULED.value
            and state.individual_status != IndividualClearanceStatus.EXCLUDED.value
        )
        return sorted(unsettled)

    async def _invalidate_cache(self) -> None:
        if self.cache is not None:
            cleared = await self.cache.invalidate_eligibility()
            logger.debug(f"Invalidated {cleared} cached eligibility snapshot(s)")
