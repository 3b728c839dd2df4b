"""
Eligibility Query Engine.

Recomputes the affiliate earnings snapshots for the current locked period:

    ledger rows (as of cutoff or override, one booking category)
      -> amount threshold, fake and expired-ID filters
      -> merge persisted clearance/payment state
      -> deterministic sort and pagination

Nothing here writes. The read transaction is closed before the ledger and
identity provider are called, so no database lock is held across an
external request.
"""
import logging
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from clearance.config import settings
from clearance.core.clock import business_today
from clearance.core.exceptions import InvalidInputError, NotReadyError
from clearance.integrations.earnings_ledger import EarningsLedger, EarningsQuery, UnpaidEarningsRow
from clearance.integrations.identity_provider import IdentityProvider
from clearance.models.clearance import (
    ClearanceCriteria,
    BookingCategory,
    DEFAULT_BOOKING_CATEGORY,
    LifecycleStatus,
)
from clearance.schemas.clearance import (
    AffiliateSnapshot,
    EligibilityFilters,
    EligibilitySortField,
    EligibleAffiliatesResponse,
    SortDirection,
    MAX_PAGE_SIZE,
)
from clearance.services.affiliate_state_store import list_states
from clearance.services.cache_service import CacheService
from clearance.services.criteria_store import CriteriaStore

logger = logging.getLogger(__name__)


def normalize_booking_category(category: Optional[int]) -> int:
    """An unset category (None or 0) falls back to the passenger category."""
    if category is None or int(category) == BookingCategory.UNSET.value:
        return DEFAULT_BOOKING_CATEGORY.value
    return int(category)


def is_id_expired(expiration_date: Optional[date], today: date) -> bool:
    """No document on file counts as expired."""
    return expiration_date is None or expiration_date < today


def sort_snapshots(
    snapshots: List[AffiliateSnapshot],
    sort_by: EligibilitySortField = EligibilitySortField.AFFILIATE_ID,
    sort_dir: SortDirection = SortDirection.ASC,
) -> List[AffiliateSnapshot]:
    """
    Sort by the requested column with affiliate_id ascending as tie-break in
    both directions. Null values always go last.
    """
    field = sort_by.value
    by_id = sorted(snapshots, key=lambda s: s.affiliate_id)
    present = [s for s in by_id if getattr(s, field) is not None]
    missing = [s for s in by_id if getattr(s, field) is None]

    def key(snapshot: AffiliateSnapshot):
        value = getattr(snapshot, field)
        if isinstance(value, str):
            return value.casefold()
        return value

    # sorted() is stable with reverse=True, so ties keep affiliate_id order
    present = sorted(present, key=key, reverse=(sort_dir == SortDirection.DESC))
    return present + missing


class EligibilityService:

    def __init__(
        self,
        db: AsyncSession,
        ledger: EarningsLedger,
        identity: IdentityProvider,
        cache: Optional[CacheService] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.identity = identity
        self.cache = cache
        self.store = CriteriaStore(db)

    async def query(
        self,
        filters: Optional[EligibilityFilters] = None,
        page: int = 1,
        page_size: int = 50,
        sort_by: EligibilitySortField = EligibilitySortField.AFFILIATE_ID,
        sort_dir: SortDirection = SortDirection.ASC,
    ) -> EligibleAffiliatesResponse:
        """Eligible affiliates for the current period under ad hoc filters."""
        filters = filters or EligibilityFilters()
        if page < 1:
            raise InvalidInputError("page must be >= 1", details={"page": page})
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise InvalidInputError(
                f"page_size must be between 1 and {MAX_PAGE_SIZE}",
                details={"page_size": page_size}
            )
        if filters.min_amount_override is not None and filters.min_amount_override < 0:
            raise InvalidInputError(
                "min_amount_override must be non-negative",
                details={"min_amount_override": str(filters.min_amount_override)}
            )
        if filters.clearance_date_override and filters.clearance_date_override > business_today():
            raise InvalidInputError(
                "clearance_date_override cannot be in the future",
                details={"clearance_date_override": filters.clearance_date_override.isoformat()}
            )

        criteria = await self.store.get_current()
        self.ensure_ready(criteria)

        snapshots, as_of, minimum, category = await self._compute(criteria, filters)
        ordered = sort_snapshots(snapshots, sort_by, sort_dir)

        start = (page - 1) * page_size
        return EligibleAffiliatesResponse(
            items=ordered[start:start + page_size],
            total=len(ordered),
            page=page,
            page_size=page_size,
            criteria_id=criteria.id,
            as_of=as_of,
            minimum_amount=minimum,
            booking_category=category,
        )

    async def settlement_eligible_set(self, criteria: ClearanceCriteria) -> Dict[int, AffiliateSnapshot]:
        """
        The eligible set batch operations and completion are checked against:
        server default filters, no overrides. EXCLUDED rows are included and
        carry their status; callers decide what EXCLUDED means for them.
        """
        self.ensure_ready(criteria)
        snapshots, _, _, _ = await self._compute(criteria, EligibilityFilters())
        return {s.affiliate_id: s for s in snapshots}

    @staticmethod
    def ensure_ready(criteria: Optional[ClearanceCriteria]) -> None:
        if criteria is None or not criteria.is_ready:
            status = criteria.lifecycle_status if criteria else LifecycleStatus.OPEN.value
            raise NotReadyError(
                "Clearance criteria must be locked before eligible affiliates can be computed",
                details={"lifecycle_status": status}
            )

    async def _compute(
        self,
        criteria: ClearanceCriteria,
        filters: EligibilityFilters,
    ) -> Tuple[List[AffiliateSnapshot], date, Decimal, int]:
        as_of = filters.clearance_date_override or criteria.cutoff_date
        minimum = (
            filters.min_amount_override
            if filters.min_amount_override is not None
            else criteria.minimum_amount_threshold
        )
        category = normalize_booking_category(filters.booking_category)
        exclude_fake = (
            settings.ELIGIBILITY_EXCLUDE_FAKE_AFFILIATES
            if filters.exclude_fake_affiliates is None
            else filters.exclude_fake_affiliates
        )
        exclude_expired = (
            settings.ELIGIBILITY_EXCLUDE_EXPIRED_IDS
            if filters.exclude_expired_ids is None
            else filters.exclude_expired_ids
        )

        # Release the read transaction before calling out
        await self.db.commit()

        rows, expirations = await self._load_external(criteria, as_of, category)

        today = business_today()
        matched: List[Tuple[UnpaidEarningsRow, Optional[date]]] = []
        for row in rows:
            if row.unpaid_amount < minimum:
                continue
            if exclude_fake and row.is_fake:
                continue
            expiration = expirations.get(row.affiliate_id)
            if exclude_expired and is_id_expired(expiration, today):
                continue
            matched.append((row, expiration))

        states = await list_states(self.db, criteria.id, [row.affiliate_id for row, _ in matched])
        await self.db.commit()

        snapshots = []
        for row, expiration in matched:
            snapshot = AffiliateSnapshot(
                affiliate_id=row.affiliate_id,
                display_name=row.display_name,
                contract_type=row.contract_type,
                unpaid_count=row.unpaid_count,
                unpaid_amount=row.unpaid_amount,
                id_expiration_date=expiration,
                is_fake=row.is_fake,
            )
            state = states.get(row.affiliate_id)
            if state is not None:
                snapshot.individual_clearance_status = state.individual_status
                snapshot.payment_batch_state = state.payment_batch_state
                snapshot.scheduled_amount = state.scheduled_amount
                snapshot.payment_reference = state.payment_reference
            snapshots.append(snapshot)

        logger.debug(
            f"Eligibility for period {criteria.period_number}: {len(snapshots)}/{len(rows)} "
            f"affiliates (as_of={as_of}, min={minimum}, category={category})"
        )
        return snapshots, as_of, minimum, category

    async def _load_external(
        self,
        criteria: ClearanceCriteria,
        as_of: date,
        category: int,
    ) -> Tuple[List[UnpaidEarningsRow], Dict[int, Optional[date]]]:
        """Ledger rows and ID expiry dates, through the cache when enabled."""
        criteria_key = str(criteria.id)
        if self.cache is not None:
            cached = await self.cache.get_ledger_snapshot(criteria_key, criteria.version, as_of, category)
            if cached is not None:
                rows = [UnpaidEarningsRow.from_dict(item) for item in cached["rows"]]
                expirations = {
                    int(affiliate_id): date.fromisoformat(value) if value else None
                    for affiliate_id, value in cached["expirations"].items()
                }
                return rows, expirations

        rows = await self.ledger.list_unpaid_earnings(
            EarningsQuery(as_of=as_of, booking_category=category)
        )
        expirations = await self.identity.get_id_expiration_dates([row.affiliate_id for row in rows])

        if self.cache is not None:
            await self.cache.set_ledger_snapshot(
                criteria_key,
                criteria.version,
                as_of,
                category,
                {
                    "rows": [row.to_dict() for row in rows],
                    "expirations": {
                        str(affiliate_id): value.isoformat() if value else None
                        for affiliate_id, value in expirations.items()
                    },
                },
            )
        return rows, expirations
