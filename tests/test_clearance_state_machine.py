"""Criteria lifecycle: OPEN -> LOCKED -> COMPLETED, new periods, draft edits."""
import asyncio
from datetime import date
from decimal import Decimal

import pytest

from clearance.core.exceptions import (
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailedError,
)
from clearance.models.audit_log import ClearanceEventType
from clearance.models.clearance import IndividualClearanceStatus, LifecycleStatus
from clearance.services.clearance_state_machine import (
    ClearanceService,
    can_transition,
    can_transition_payment,
    get_transition_action,
    validate_threshold,
    validate_transition,
)

from tests.conftest import CUTOFF, THRESHOLD


# ==================== Transition Rules ====================

def test_criteria_transitions_are_strictly_forward():
    assert can_transition("OPEN", "LOCKED")
    assert can_transition("LOCKED", "COMPLETED")
    assert not can_transition("OPEN", "COMPLETED")
    assert not can_transition("LOCKED", "OPEN")
    assert not can_transition("COMPLETED", "OPEN")
    assert not can_transition("COMPLETED", "LOCKED")


def test_payment_transitions_are_strictly_forward():
    assert can_transition_payment("NONE", "SCHEDULED")
    assert can_transition_payment("SCHEDULED", "SETTLED")
    assert not can_transition_payment("NONE", "SETTLED")
    assert not can_transition_payment("SETTLED", "SCHEDULED")


def test_validate_transition_reports_allowed_targets():
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_transition("OPEN", "COMPLETED")
    assert exc_info.value.details["allowed_transitions"] == ["LOCKED"]
    assert get_transition_action("OPEN", "LOCKED") == "Lock criteria"


@pytest.mark.parametrize("raw", ["-0.01", "NaN", "Infinity", "10.005", "10000000000"])
def test_validate_threshold_rejects_out_of_range(raw):
    with pytest.raises(InvalidInputError):
        validate_threshold(Decimal(raw))


def test_validate_threshold_quantizes_to_cents():
    assert validate_threshold(Decimal("50")) == Decimal("50.00")
    assert str(validate_threshold(Decimal("0"))) == "0.00"


# ==================== Current Criteria ====================

async def test_first_read_creates_open_period(workflow):
    criteria = await workflow.current()

    assert criteria.period_number == 1
    assert criteria.lifecycle_status == LifecycleStatus.OPEN.value
    assert criteria.cutoff_date is None
    assert not criteria.is_ready

    again = await workflow.current()
    assert again.id == criteria.id

    events = await workflow.events(event_type=ClearanceEventType.CRITERIA_CREATED.value)
    assert len(events) == 1


async def test_concurrent_first_reads_create_one_period(workflow):
    first, second = await asyncio.gather(workflow.current(), workflow.current())
    assert first.id == second.id

    periods, total = await workflow.history()
    assert total == 1


# ==================== Lock ====================

async def test_lock_freezes_cutoff_and_threshold(workflow):
    locked = await workflow.lock(CUTOFF, THRESHOLD, operator="alice")

    assert locked.lifecycle_status == LifecycleStatus.LOCKED.value
    assert locked.cutoff_date == CUTOFF
    assert locked.minimum_amount_threshold == Decimal("50.00")
    assert locked.locked_by == "alice"
    assert locked.locked_at is not None
    assert locked.is_ready

    events = await workflow.events(event_type=ClearanceEventType.CRITERIA_LOCKED.value)
    assert len(events) == 1
    assert events[0].operator == "alice"
    assert events[0].payload["minimum_amount_threshold"] == "50.00"


async def test_lock_with_future_cutoff_is_invalid_input(workflow, future_date):
    with pytest.raises(InvalidInputError):
        await workflow.lock(future_date, THRESHOLD)

    criteria = await workflow.current()
    assert criteria.lifecycle_status == LifecycleStatus.OPEN.value


async def test_lock_with_negative_threshold_is_invalid_input(workflow):
    with pytest.raises(InvalidInputError):
        await workflow.lock(CUTOFF, Decimal("-1"))


async def test_lock_twice_is_invalid_transition(workflow):
    await workflow.lock()
    with pytest.raises(InvalidTransitionError):
        await workflow.lock(date(2023, 12, 1), Decimal("10"))

    criteria = await workflow.current()
    assert criteria.cutoff_date == CUTOFF


async def test_concurrent_locks_exactly_one_wins(workflow):
    await workflow.current()

    results = await asyncio.gather(
        workflow.lock(CUTOFF, THRESHOLD, operator="alice"),
        workflow.lock(date(2023, 12, 15), Decimal("75"), operator="bob"),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], InvalidTransitionError)

    criteria = await workflow.current()
    assert criteria.lifecycle_status == LifecycleStatus.LOCKED.value
    assert criteria.locked_by == winners[0].locked_by
    assert criteria.cutoff_date == winners[0].cutoff_date


# ==================== Draft Edits ====================

async def test_update_draft_while_open(workflow):
    updated = await workflow.update_draft(cutoff_date=CUTOFF, threshold=Decimal("25.5"))

    assert updated.cutoff_date == CUTOFF
    assert updated.minimum_amount_threshold == Decimal("25.50")
    assert updated.lifecycle_status == LifecycleStatus.OPEN.value
    # Draft values alone do not make the period ready
    assert not updated.is_ready

    events = await workflow.events(event_type=ClearanceEventType.CRITERIA_UPDATED.value)
    assert events[0].payload["new"]["minimum_amount_threshold"] == "25.50"


async def test_update_draft_after_lock_is_rejected(workflow):
    await workflow.lock()
    with pytest.raises(InvalidTransitionError):
        await workflow.update_draft(threshold=Decimal("1"))


# ==================== Complete ====================

async def test_complete_requires_locked(workflow):
    criteria = await workflow.current()
    with pytest.raises(InvalidTransitionError):
        await workflow.complete(criteria.id)


async def test_complete_unknown_id_is_not_found(workflow):
    import uuid

    await workflow.lock()
    with pytest.raises(NotFoundError):
        await workflow.complete(uuid.uuid4())


async def test_complete_with_unsettled_affiliates_fails(workflow, standard_ledger):
    criteria = await workflow.lock()

    with pytest.raises(PreconditionFailedError) as exc_info:
        await workflow.complete(criteria.id)

    assert exc_info.value.details["unsettled_affiliate_ids"] == [7, 9, 19, 21]
    current = await workflow.current()
    assert current.lifecycle_status == LifecycleStatus.LOCKED.value


async def test_force_complete_records_forced_event(workflow, standard_ledger):
    criteria = await workflow.lock()

    completed = await workflow.complete(criteria.id, force=True, operator="alice")

    assert completed.lifecycle_status == LifecycleStatus.COMPLETED.value
    assert completed.forced_completion is True
    assert completed.completed_by == "alice"
    events = await workflow.events(event_type=ClearanceEventType.CRITERIA_FORCE_COMPLETED.value)
    assert events[0].payload["unsettled_affiliate_ids"] == [7, 9, 19, 21]


async def test_complete_after_settling_or_excluding_everyone(workflow, standard_ledger):
    criteria = await workflow.lock()
    await workflow.set_status(19, IndividualClearanceStatus.EXCLUDED)
    await workflow.set_status(21, IndividualClearanceStatus.EXCLUDED)
    await workflow.schedule([7, 9])
    await workflow.settle([7, 9])

    completed = await workflow.complete(criteria.id)

    assert completed.lifecycle_status == LifecycleStatus.COMPLETED.value
    assert completed.forced_completion is False
    events = await workflow.events(event_type=ClearanceEventType.CRITERIA_COMPLETED.value)
    assert len(events) == 1


async def test_complete_blocked_by_outstanding_scheduled_payment(workflow, standard_ledger):
    criteria = await workflow.lock()
    for affiliate_id in (9, 19, 21):
        await workflow.set_status(affiliate_id, IndividualClearanceStatus.EXCLUDED)
    await workflow.schedule([7])

    with pytest.raises(PreconditionFailedError) as exc_info:
        await workflow.complete(criteria.id)
    assert exc_info.value.details["unsettled_affiliate_ids"] == [7]


async def test_complete_twice_is_invalid_transition(workflow):
    criteria = await workflow.lock()
    await workflow.complete(criteria.id)
    with pytest.raises(InvalidTransitionError):
        await workflow.complete(criteria.id)


async def settle_everyone_but_excluded(workflow):
    await workflow.set_status(19, IndividualClearanceStatus.EXCLUDED)
    await workflow.set_status(21, IndividualClearanceStatus.EXCLUDED)
    await workflow.schedule([7, 9])
    await workflow.settle([7, 9])


def restore_after_completion_check(monkeypatch, workflow, affiliate_id):
    """Restore an excluded affiliate right after complete() has checked the states."""
    original = ClearanceService._unsettled_affiliates

    async def check_then_restore(self, criteria):
        result = await original(self, criteria)
        await workflow.set_status(affiliate_id, IndividualClearanceStatus.PENDING)
        return result

    monkeypatch.setattr(ClearanceService, "_unsettled_affiliates", check_then_restore)


async def test_restore_during_completion_blocks_completion(workflow, standard_ledger, monkeypatch):
    criteria = await workflow.lock()
    await settle_everyone_but_excluded(workflow)
    restore_after_completion_check(monkeypatch, workflow, 19)

    with pytest.raises(InvalidTransitionError) as exc_info:
        await workflow.complete(criteria.id)

    assert exc_info.value.details["unsettled_affiliate_ids"] == [19]
    current = await workflow.current()
    assert current.lifecycle_status == LifecycleStatus.LOCKED.value
    assert await workflow.events(event_type=ClearanceEventType.CRITERIA_COMPLETED.value) == []


async def test_forced_completion_reports_states_restored_during_check(workflow, standard_ledger, monkeypatch):
    criteria = await workflow.lock()
    await settle_everyone_but_excluded(workflow)
    restore_after_completion_check(monkeypatch, workflow, 19)

    completed = await workflow.complete(criteria.id, force=True)

    assert completed.lifecycle_status == LifecycleStatus.COMPLETED.value
    assert completed.forced_completion is True
    events = await workflow.events(event_type=ClearanceEventType.CRITERIA_FORCE_COMPLETED.value)
    assert events[0].payload["unsettled_affiliate_ids"] == [19]


# ==================== New Period ====================

async def test_new_period_requires_completed(workflow):
    await workflow.lock()
    with pytest.raises(InvalidTransitionError):
        await workflow.new_period()


async def test_new_period_opens_next_number(workflow):
    first = await workflow.lock()
    await workflow.complete(first.id)

    second = await workflow.new_period(operator="alice")

    assert second.period_number == 2
    assert second.lifecycle_status == LifecycleStatus.OPEN.value
    assert second.cutoff_date is None

    current = await workflow.current()
    assert current.id == second.id

    periods, total = await workflow.history()
    assert total == 2
    assert [p.period_number for p in periods] == [2, 1]


async def test_completing_superseded_period_is_rejected(workflow):
    first = await workflow.lock()
    await workflow.complete(first.id)
    await workflow.new_period()

    with pytest.raises(InvalidTransitionError):
        await workflow.complete(first.id)
