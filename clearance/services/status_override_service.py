"""
Per-affiliate manual clearance status.

An operator can exclude an affiliate from batch selection (EXCLUDED) or
restore it (PENDING / CLEARED). Overrides are scoped to the current period
and never touch the criteria themselves.
"""
import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from clearance.core.clock import utc_now
from clearance.core.exceptions import NotFoundError
from clearance.core.locks import KeyedLockRegistry, affiliate_locks
from clearance.models.audit_log import ClearanceEventType
from clearance.models.clearance import AffiliateClearanceState, IndividualClearanceStatus
from clearance.schemas.clearance import AffiliateSnapshot
from clearance.services.affiliate_state_store import get_state, insert_state
from clearance.services.audit_service import AuditService
from clearance.services.criteria_store import CriteriaStore
from clearance.services.eligibility_service import EligibilityService

logger = logging.getLogger(__name__)


class StatusOverrideService:

    def __init__(
        self,
        db: AsyncSession,
        eligibility: EligibilityService,
        locks: KeyedLockRegistry = affiliate_locks,
    ):
        self.db = db
        self.eligibility = eligibility
        self.locks = locks
        self.store = CriteriaStore(db)
        self.audit = AuditService(db)

    async def set_individual_status(
        self,
        affiliate_id: int,
        new_status: IndividualClearanceStatus,
        operator: Optional[str] = None,
    ) -> AffiliateSnapshot:
        """
        Set the manual status of an affiliate in the current eligible set.

        Raises:
            NotFoundError: the affiliate is not in the current eligible set,
                which includes the case where criteria is still OPEN
        """
        criteria = await self.store.get_current()
        if criteria is None or not criteria.is_ready:
            raise NotFoundError(
                f"Affiliate {affiliate_id} is not in the current eligible set (criteria not locked)",
                details={"affiliate_id": affiliate_id}
            )
        await self.db.commit()

        eligible = await self.eligibility.settlement_eligible_set(criteria)
        snapshot = eligible.get(affiliate_id)
        if snapshot is None:
            raise NotFoundError(
                f"Affiliate {affiliate_id} is not in the current eligible set",
                details={"affiliate_id": affiliate_id, "criteria_id": str(criteria.id)}
            )

        async with self.locks.hold((criteria.id, affiliate_id)):
            # Ordered against a concurrent completion of this period
            await self.store.get_for_update(criteria.id)
            state = await get_state(self.db, criteria.id, affiliate_id)
            old_status = state.individual_status if state else IndividualClearanceStatus.PENDING.value

            if state is None:
                state = await insert_state(
                    self.db, criteria.id, affiliate_id, individual_status=new_status.value
                )
                if state is None:
                    state = await get_state(self.db, criteria.id, affiliate_id)
                    old_status = state.individual_status

            if state.individual_status != new_status.value:
                await self.db.execute(
                    update(AffiliateClearanceState)
                    .where(AffiliateClearanceState.id == state.id)
                    .values(
                        individual_status=new_status.value,
                        version=AffiliateClearanceState.version + 1,
                        updated_at=utc_now(),
                    )
                    .execution_options(synchronize_session=False)
                )
                state = await get_state(self.db, criteria.id, affiliate_id)

            await self.audit.log(
                ClearanceEventType.STATUS_OVERRIDDEN,
                criteria_id=criteria.id,
                affiliate_id=affiliate_id,
                operator=operator,
                payload={"old_status": old_status, "new_status": new_status.value},
                description=f"Affiliate {affiliate_id} status {old_status} -> {new_status.value}",
            )
            await self.db.commit()

        logger.info(
            f"Affiliate {affiliate_id} clearance status {old_status} -> {new_status.value} "
            f"in period {criteria.period_number} by {operator}"
        )

        snapshot.individual_clearance_status = state.individual_status
        snapshot.payment_batch_state = state.payment_batch_state
        snapshot.scheduled_amount = state.scheduled_amount
        snapshot.payment_reference = state.payment_reference
        return snapshot
