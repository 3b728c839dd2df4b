"""
Batch Settlement Engine.

Two-phase batch payment for a selection of affiliates:

    schedule ("proceed to payment"):  NONE -> SCHEDULED
    settle   ("pay checked"):         SCHEDULED -> SETTLED via the payment interface

Ids in a batch are processed concurrently, bounded by a semaphore. Each id
runs under a per-affiliate asyncio lock and its own short database sessions;
the state row is claimed with a token before the payment interface is
called and the token is the condition of the final UPDATE. No transaction is
open while a payment call is in flight.

A batch never raises for a single id. Every requested id gets a
BatchOperationResult, in request order.
"""
import asyncio
import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clearance.config import settings
from clearance.core.clock import utc_now
from clearance.core.exceptions import ClearanceError, ErrorCode, InvalidTransitionError, NotEligibleError
from clearance.core.locks import KeyedLockRegistry, affiliate_locks
from clearance.integrations.earnings_ledger import EarningsLedger
from clearance.integrations.identity_provider import IdentityProvider
from clearance.integrations.payment_gateway import PaymentGateway, PaymentOutcome
from clearance.models.audit_log import ClearanceEventType
from clearance.models.clearance import (
    AffiliateClearanceState,
    ClearanceCriteria,
    IndividualClearanceStatus,
    LifecycleStatus,
    PaymentBatchState,
)
from clearance.schemas.clearance import AffiliateSnapshot, BatchOperationResult, BatchOutcome
from clearance.services.affiliate_state_store import get_state, insert_state
from clearance.services.audit_service import AuditService
from clearance.services.cache_service import CacheService
from clearance.services.clearance_state_machine import can_transition_payment
from clearance.services.criteria_store import CriteriaStore
from clearance.services.eligibility_service import EligibilityService

logger = logging.getLogger(__name__)


def payment_reference(criteria_id: uuid.UUID, affiliate_id: int) -> str:
    """Idempotency key sent to the payment interface."""
    return f"{criteria_id}:{affiliate_id}"


def _succeeded(affiliate_id: int, state: Optional[str]) -> BatchOperationResult:
    return BatchOperationResult(
        affiliate_id=affiliate_id,
        outcome=BatchOutcome.SUCCEEDED,
        payment_batch_state=state,
    )


def _failed(
    affiliate_id: int,
    error_code: Optional[str],
    detail: str,
    state: Optional[str] = None,
) -> BatchOperationResult:
    return BatchOperationResult(
        affiliate_id=affiliate_id,
        outcome=BatchOutcome.FAILED,
        error_code=error_code,
        error_detail=detail,
        payment_batch_state=state,
    )


class SettlementService:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: EarningsLedger,
        identity: IdentityProvider,
        gateway: PaymentGateway,
        cache: Optional[CacheService] = None,
        locks: KeyedLockRegistry = affiliate_locks,
        timeout_seconds: Optional[float] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.identity = identity
        self.gateway = gateway
        self.cache = cache
        self.locks = locks
        self.timeout_seconds = timeout_seconds or settings.SETTLEMENT_TIMEOUT_SECONDS
        self.max_concurrency = max_concurrency or settings.SETTLEMENT_MAX_CONCURRENCY

    # ==================== Batch Operations ====================

    async def schedule(self, affiliate_ids: List[int], operator: Optional[str] = None) -> List[BatchOperationResult]:
        """
        Mark eligible affiliates SCHEDULED for payment.

        Raises:
            InvalidTransitionError: current criteria is not LOCKED
        """
        ids = list(dict.fromkeys(affiliate_ids))
        criteria = await self._current_criteria()
        if criteria.lifecycle_status != LifecycleStatus.LOCKED.value:
            raise InvalidTransitionError(
                f"Payments can only be scheduled while criteria is LOCKED, current status is "
                f"{criteria.lifecycle_status}",
                details={"current_status": criteria.lifecycle_status}
            )

        async with self.session_factory() as db:
            eligible = await EligibilityService(
                db, self.ledger, self.identity, self.cache
            ).settlement_eligible_set(criteria)

        results = await self._run_batch(
            criteria,
            ids,
            lambda affiliate_id: self._schedule_one(criteria, affiliate_id, eligible, operator),
        )
        await self._record_batch(ClearanceEventType.PAYMENTS_SCHEDULED, criteria, results, operator)
        return results

    async def settle(self, affiliate_ids: List[int], operator: Optional[str] = None) -> List[BatchOperationResult]:
        """
        Pay SCHEDULED affiliates through the payment interface.

        Raises:
            InvalidTransitionError: current criteria is neither LOCKED nor COMPLETED
        """
        ids = list(dict.fromkeys(affiliate_ids))
        criteria = await self._current_criteria()
        if criteria.lifecycle_status not in (LifecycleStatus.LOCKED.value, LifecycleStatus.COMPLETED.value):
            raise InvalidTransitionError(
                f"Payments can only be settled while criteria is LOCKED or COMPLETED, current status is "
                f"{criteria.lifecycle_status}",
                details={"current_status": criteria.lifecycle_status}
            )

        results = await self._run_batch(
            criteria,
            ids,
            lambda affiliate_id: self._settle_one(criteria, affiliate_id, operator),
        )
        await self._record_batch(ClearanceEventType.PAYMENTS_SETTLED, criteria, results, operator)
        return results

    # ==================== Per-Affiliate Units ====================

    async def _schedule_one(
        self,
        criteria: ClearanceCriteria,
        affiliate_id: int,
        eligible: Dict[int, AffiliateSnapshot],
        operator: Optional[str],
    ) -> BatchOperationResult:
        async with self.session_factory() as db:
            state = await get_state(db, criteria.id, affiliate_id)

            if state and state.payment_batch_state in (
                PaymentBatchState.SCHEDULED.value, PaymentBatchState.SETTLED.value
            ):
                return _succeeded(affiliate_id, state.payment_batch_state)

            snapshot = eligible.get(affiliate_id)
            if snapshot is None:
                raise NotEligibleError(
                    "Affiliate is not in the current eligible set",
                    details={
                        "affiliate_id": affiliate_id,
                        "payment_batch_state": state.payment_batch_state if state else PaymentBatchState.NONE.value,
                    },
                )
            if state and state.individual_status == IndividualClearanceStatus.EXCLUDED.value:
                raise NotEligibleError(
                    "Affiliate is excluded from this clearance period",
                    details={"affiliate_id": affiliate_id, "payment_batch_state": state.payment_batch_state},
                )

            # The period may have been completed since the batch started
            current = await CriteriaStore(db).get_for_update(criteria.id)
            if current.lifecycle_status != LifecycleStatus.LOCKED.value:
                failure = _failed(
                    affiliate_id, ErrorCode.INVALID_TRANSITION,
                    f"Clearance period is {current.lifecycle_status}, payments can no longer be scheduled",
                    state.payment_batch_state if state else PaymentBatchState.NONE.value,
                )
                await db.rollback()
                return failure

            scheduled_values = {
                "payment_batch_state": PaymentBatchState.SCHEDULED.value,
                "scheduled_amount": snapshot.unpaid_amount,
                "scheduled_at": utc_now(),
                "scheduled_by": operator,
                "last_error": None,
            }

            if state is None:
                inserted = await insert_state(db, criteria.id, affiliate_id, **scheduled_values)
                if inserted is not None:
                    await db.commit()
                    return _succeeded(affiliate_id, PaymentBatchState.SCHEDULED.value)
                # A row appeared concurrently, fall through to the conditional update
                state = await get_state(db, criteria.id, affiliate_id)
                if state.payment_batch_state != PaymentBatchState.NONE.value:
                    return _succeeded(affiliate_id, state.payment_batch_state)
                if state.individual_status == IndividualClearanceStatus.EXCLUDED.value:
                    raise NotEligibleError(
                        "Affiliate is excluded from this clearance period",
                        details={"affiliate_id": affiliate_id, "payment_batch_state": state.payment_batch_state},
                    )

            if not can_transition_payment(state.payment_batch_state, PaymentBatchState.SCHEDULED.value):
                return _failed(
                    affiliate_id, ErrorCode.INVALID_TRANSITION,
                    f"Cannot schedule from {state.payment_batch_state}",
                    state.payment_batch_state,
                )

            result = await db.execute(
                update(AffiliateClearanceState)
                .where(
                    AffiliateClearanceState.id == state.id,
                    AffiliateClearanceState.payment_batch_state == PaymentBatchState.NONE.value,
                    AffiliateClearanceState.version == state.version,
                )
                .values(
                    **scheduled_values,
                    version=AffiliateClearanceState.version + 1,
                    updated_at=utc_now(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                return _failed(
                    affiliate_id, ErrorCode.INVALID_TRANSITION,
                    "Affiliate state changed concurrently, refresh and retry",
                )
            await db.commit()
            return _succeeded(affiliate_id, PaymentBatchState.SCHEDULED.value)

    async def _settle_one(
        self,
        criteria: ClearanceCriteria,
        affiliate_id: int,
        operator: Optional[str],
    ) -> BatchOperationResult:
        token = uuid.uuid4().hex

        # Phase 1: claim the row
        async with self.session_factory() as db:
            state = await get_state(db, criteria.id, affiliate_id)

            if state and state.payment_batch_state == PaymentBatchState.SETTLED.value:
                return _succeeded(affiliate_id, state.payment_batch_state)
            if state is None or state.payment_batch_state == PaymentBatchState.NONE.value:
                return _failed(
                    affiliate_id, ErrorCode.INVALID_TRANSITION,
                    "Affiliate is not scheduled for payment",
                    PaymentBatchState.NONE.value,
                )
            if state.individual_status == IndividualClearanceStatus.EXCLUDED.value:
                raise NotEligibleError(
                    "Affiliate is excluded from this clearance period",
                    details={"affiliate_id": affiliate_id, "payment_batch_state": state.payment_batch_state},
                )
            if state.settlement_claim_token is not None:
                return _failed(
                    affiliate_id, ErrorCode.INVALID_TRANSITION,
                    "Settlement in progress",
                    state.payment_batch_state,
                )

            claim = await db.execute(
                update(AffiliateClearanceState)
                .where(
                    AffiliateClearanceState.id == state.id,
                    AffiliateClearanceState.payment_batch_state == PaymentBatchState.SCHEDULED.value,
                    AffiliateClearanceState.settlement_claim_token.is_(None),
                )
                .values(
                    settlement_claim_token=token,
                    settlement_claimed_at=utc_now(),
                    attempt_count=AffiliateClearanceState.attempt_count + 1,
                    version=AffiliateClearanceState.version + 1,
                    updated_at=utc_now(),
                )
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount != 1:
                await db.rollback()
                return _failed(
                    affiliate_id, ErrorCode.INVALID_TRANSITION,
                    "Settlement in progress",
                    PaymentBatchState.SCHEDULED.value,
                )
            await db.commit()
            amount = state.scheduled_amount if state.scheduled_amount is not None else Decimal("0")

        # Phase 2: external call, no transaction open
        reference = payment_reference(criteria.id, affiliate_id)
        try:
            outcome = await asyncio.wait_for(
                self.gateway.settle_payment(affiliate_id, amount, reference),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            outcome = PaymentOutcome(
                success=False,
                reference=reference,
                detail=f"Payment interface timed out after {self.timeout_seconds:g}s",
            )
        except ClearanceError as e:
            outcome = PaymentOutcome(success=False, reference=reference, detail=e.message)
        except Exception as e:
            logger.exception(f"Payment call for affiliate {affiliate_id} raised unexpectedly")
            outcome = PaymentOutcome(success=False, reference=reference, detail=f"Unexpected payment error: {e}")

        # Phase 3: finalize under the claim
        async with self.session_factory() as db:
            if outcome.success:
                values = {
                    "payment_batch_state": PaymentBatchState.SETTLED.value,
                    "settled_at": utc_now(),
                    "settled_by": operator,
                    "payment_reference": outcome.reference or reference,
                    "last_error": None,
                }
            else:
                values = {"last_error": outcome.detail}

            result = await db.execute(
                update(AffiliateClearanceState)
                .where(
                    AffiliateClearanceState.id == state.id,
                    AffiliateClearanceState.settlement_claim_token == token,
                )
                .values(
                    **values,
                    settlement_claim_token=None,
                    settlement_claimed_at=None,
                    version=AffiliateClearanceState.version + 1,
                    updated_at=utc_now(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if result.rowcount != 1:
            logger.error(
                f"Settlement claim for affiliate {affiliate_id} was lost before finalizing "
                f"(payment success={outcome.success}, reference={reference})"
            )
            return _failed(
                affiliate_id, ErrorCode.INVALID_TRANSITION,
                "Settlement claim expired before the payment result was recorded, retry to reconcile",
                PaymentBatchState.SCHEDULED.value,
            )

        if outcome.success:
            logger.info(f"Affiliate {affiliate_id} settled: {amount} ref={outcome.reference}")
            return _succeeded(affiliate_id, PaymentBatchState.SETTLED.value)

        logger.warning(f"Payment for affiliate {affiliate_id} failed: {outcome.detail}")
        return _failed(
            affiliate_id, ErrorCode.EXTERNAL_FAILURE,
            outcome.detail or "Payment interface declined the payout",
            PaymentBatchState.SCHEDULED.value,
        )

    # ==================== Helpers ====================

    async def _current_criteria(self) -> ClearanceCriteria:
        async with self.session_factory() as db:
            criteria, _ = await CriteriaStore(db).get_or_create_current()
            await db.commit()
            return criteria

    async def _run_batch(
        self,
        criteria: ClearanceCriteria,
        ids: List[int],
        unit: Callable[[int], Awaitable[BatchOperationResult]],
    ) -> List[BatchOperationResult]:
        """Run unit for every id, bounded and serialised per affiliate. Results keep request order."""
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(affiliate_id: int) -> BatchOperationResult:
            async with semaphore:
                try:
                    async with self.locks.hold((criteria.id, affiliate_id)):
                        return await unit(affiliate_id)
                except ClearanceError as e:
                    return _failed(affiliate_id, e.code, e.message, e.details.get("payment_batch_state"))
                except Exception as e:
                    logger.exception(f"Unexpected error processing affiliate {affiliate_id}")
                    return _failed(affiliate_id, None, f"Unexpected error: {e}")

        return list(await asyncio.gather(*(run(affiliate_id) for affiliate_id in ids)))

    async def _record_batch(
        self,
        event_type: ClearanceEventType,
        criteria: ClearanceCriteria,
        results: List[BatchOperationResult],
        operator: Optional[str],
    ) -> None:
        succeeded = [r.affiliate_id for r in results if r.outcome == BatchOutcome.SUCCEEDED]
        failed = {str(r.affiliate_id): r.error_code for r in results if r.outcome == BatchOutcome.FAILED}

        async with self.session_factory() as db:
            await AuditService(db).log(
                event_type,
                criteria_id=criteria.id,
                operator=operator,
                payload={
                    "requested": [r.affiliate_id for r in results],
                    "succeeded": succeeded,
                    "failed": failed,
                },
                description=f"{len(succeeded)} succeeded, {len(failed)} failed",
            )
            await db.commit()

        logger.info(
            f"{event_type.value} for period {criteria.period_number}: "
            f"{len(succeeded)} succeeded, {len(failed)} failed"
        )


async def release_stale_claims(db: AsyncSession, older_than: Optional[timedelta] = None) -> int:
    """
    Release settlement claims left behind by a crashed or cancelled settle.

    The row goes back to plain SCHEDULED so an operator can retry; nothing is
    paid here. Returns the number of claims released.
    """
    older_than = older_than or timedelta(minutes=settings.SETTLEMENT_CLAIM_TTL_MINUTES)
    cutoff = utc_now() - older_than

    result = await db.execute(
        select(AffiliateClearanceState).where(
            AffiliateClearanceState.settlement_claim_token.is_not(None),
            AffiliateClearanceState.settlement_claimed_at < cutoff,
        )
    )
    stale = list(result.scalars().all())

    audit = AuditService(db)
    released = 0
    for state in stale:
        token = state.settlement_claim_token
        outcome = await db.execute(
            update(AffiliateClearanceState)
            .where(
                AffiliateClearanceState.id == state.id,
                AffiliateClearanceState.settlement_claim_token == token,
            )
            .values(
                settlement_claim_token=None,
                settlement_claimed_at=None,
                last_error="Settlement claim expired, payment outcome unknown",
                version=AffiliateClearanceState.version + 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount != 1:
            continue

        released += 1
        logger.warning(
            f"Released stale settlement claim for affiliate {state.affiliate_id} "
            f"in criteria {state.criteria_id}"
        )
        await audit.log(
            ClearanceEventType.SETTLEMENT_CLAIM_RELEASED,
            criteria_id=state.criteria_id,
            affiliate_id=state.affiliate_id,
            payload={"claim_token": token, "attempt_count": state.attempt_count},
            description="Stale settlement claim released back to SCHEDULED",
        )

    await db.commit()
    return released
