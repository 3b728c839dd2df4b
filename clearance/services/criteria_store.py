"""
Criteria Store.

Sole writer of clearance_criteria. Every lifecycle change goes through
compare_and_set, a conditional UPDATE on the expected status (and version
where given). A zero rowcount means another session got there first.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clearance.core.clock import utc_now
from clearance.core.exceptions import InvalidTransitionError
from clearance.models.clearance import ClearanceCriteria, LifecycleStatus

logger = logging.getLogger(__name__)


class CriteriaStore:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_current(self) -> Optional[ClearanceCriteria]:
        """The record with the highest period number, always re-read from the database."""
        stmt = (
            select(ClearanceCriteria)
            .order_by(ClearanceCriteria.period_number.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_id(self, criteria_id: uuid.UUID) -> Optional[ClearanceCriteria]:
        stmt = (
            select(ClearanceCriteria)
            .where(ClearanceCriteria.id == criteria_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_update(self, criteria_id: uuid.UUID) -> Optional[ClearanceCriteria]:
        """
        Re-read a record and hold its row lock until the transaction ends.

        Per-affiliate writers that depend on the lifecycle status (overrides,
        scheduling) take this first, so a concurrent compare_and_set either
        waits for them or is seen by them. SQLite has no row locks; its
        BEGIN IMMEDIATE transactions already serialise writers.
        """
        stmt = (
            select(ClearanceCriteria)
            .where(ClearanceCriteria.id == criteria_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_current(self) -> Tuple[ClearanceCriteria, bool]:
        """
        Return the current record, creating period 1 (OPEN, no cutoff, no
        threshold) on first use. The second element tells whether it was created.
        """
        current = await self.get_current()
        if current is not None:
            return current, False

        criteria = ClearanceCriteria(
            period_number=1,
            lifecycle_status=LifecycleStatus.OPEN.value,
            version=1,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(criteria)
        except IntegrityError:
            # Another session created period 1 concurrently
            logger.info("Initial clearance criteria created concurrently, re-reading")
            current = await self.get_current()
            return current, False

        logger.info(f"Created initial clearance criteria {criteria.id}")
        return criteria, True

    async def compare_and_set(
        self,
        criteria_id: uuid.UUID,
        expected_status: LifecycleStatus,
        values: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Optional[ClearanceCriteria]:
        """
        Apply values only if the record is still in expected_status (and at
        expected_version). Returns the reloaded record, or None if the
        condition no longer held.
        """
        stmt = (
            update(ClearanceCriteria)
            .where(
                ClearanceCriteria.id == criteria_id,
                ClearanceCriteria.lifecycle_status == expected_status.value,
            )
            .values(
                **values,
                version=ClearanceCriteria.version + 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if expected_version is not None:
            stmt = stmt.where(ClearanceCriteria.version == expected_version)

        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            logger.info(
                f"Criteria {criteria_id} CAS failed (expected {expected_status.value}"
                f"{f', v{expected_version}' if expected_version is not None else ''})"
            )
            return None

        return await self.get_by_id(criteria_id)

    async def create_next_period(self, previous: ClearanceCriteria) -> ClearanceCriteria:
        """Open period n + 1 after a COMPLETED period n."""
        criteria = ClearanceCriteria(
            period_number=previous.period_number + 1,
            lifecycle_status=LifecycleStatus.OPEN.value,
            version=1,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(criteria)
        except IntegrityError:
            raise InvalidTransitionError(
                f"Period {previous.period_number + 1} was already started",
                details={"period_number": previous.period_number + 1}
            )
        return criteria

    async def list_periods(self, skip: int = 0, limit: int = 50) -> Tuple[List[ClearanceCriteria], int]:
        """Criteria history, newest period first."""
        total = (await self.db.execute(select(func.count(ClearanceCriteria.id)))).scalar() or 0

        stmt = (
            select(ClearanceCriteria)
            .order_by(ClearanceCriteria.period_number.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total
