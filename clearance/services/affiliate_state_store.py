"""
Persistence helpers for per-affiliate clearance state.

Reads are shared by every component. Writes to individual_status belong to
the status override service and writes to payment_batch_state belong to the
settlement engine; both go through insert_state for the first row of an
affiliate in a period so the unique constraint settles races.
"""
import uuid
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clearance.models.clearance import (
    AffiliateClearanceState,
    IndividualClearanceStatus,
    PaymentBatchState,
)


async def get_state(
    db: AsyncSession,
    criteria_id: uuid.UUID,
    affiliate_id: int,
) -> Optional[AffiliateClearanceState]:
    stmt = (
        select(AffiliateClearanceState)
        .where(
            AffiliateClearanceState.criteria_id == criteria_id,
            AffiliateClearanceState.affiliate_id == affiliate_id,
        )
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def list_states(
    db: AsyncSession,
    criteria_id: uuid.UUID,
    affiliate_ids: Optional[Iterable[int]] = None,
) -> Dict[int, AffiliateClearanceState]:
    """State rows of a period keyed by affiliate id. Missing ids have no row."""
    stmt = select(AffiliateClearanceState).where(AffiliateClearanceState.criteria_id == criteria_id)
    if affiliate_ids is not None:
        ids = list(affiliate_ids)
        if not ids:
            return {}
        stmt = stmt.where(AffiliateClearanceState.affiliate_id.in_(ids))
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return {row.affiliate_id: row for row in result.scalars().all()}


async def insert_state(
    db: AsyncSession,
    criteria_id: uuid.UUID,
    affiliate_id: int,
    **values: Any,
) -> Optional[AffiliateClearanceState]:
    """
    Insert the first state row for an affiliate in a period.

    Returns None if a row appeared concurrently; the caller re-reads and
    goes through its conditional update path instead.
    """
    values.setdefault("individual_status", IndividualClearanceStatus.PENDING.value)
    values.setdefault("payment_batch_state", PaymentBatchState.NONE.value)
    state = AffiliateClearanceState(
        criteria_id=criteria_id,
        affiliate_id=affiliate_id,
        version=1,
        **values,
    )
    try:
        async with db.begin_nested():
            db.add(state)
    except IntegrityError:
        return None
    return state
