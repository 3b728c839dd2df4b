"""
Shared fixtures.

Every test gets its own SQLite database file (BEGIN IMMEDIATE transactions,
NullPool) and fresh in-memory sandbox collaborators. Settings are read at
import time, so the environment is prepared before clearance is imported.
"""
import os
import tempfile
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional

_TMP_DIR = tempfile.mkdtemp(prefix="clearance-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP_DIR}/app.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["EARNINGS_LEDGER_MODE"] = "sandbox"
os.environ["IDENTITY_PROVIDER_MODE"] = "sandbox"
os.environ["PAYMENT_GATEWAY_MODE"] = "sandbox"
os.environ["BUSINESS_TIMEZONE"] = "Europe/Athens"

import pytest
from sqlalchemy.pool import NullPool

from clearance.core.clock import business_today
from clearance.core.locks import KeyedLockRegistry
from clearance.database import build_engine, build_session_factory, init_db, Base
from clearance.integrations.earnings_ledger import SandboxEarningsLedger
from clearance.integrations.identity_provider import SandboxIdentityProvider
from clearance.integrations.payment_gateway import SandboxPaymentGateway
from clearance.schemas.clearance import EligibilityFilters
from clearance.services.audit_service import AuditService
from clearance.services.cache_service import CacheService, InMemoryCache
from clearance.services.clearance_state_machine import ClearanceService
from clearance.services.eligibility_service import EligibilityService
from clearance.services.settlement_service import SettlementService
from clearance.services.status_override_service import StatusOverrideService


CUTOFF = date(2024, 1, 1)
THRESHOLD = Decimal("50")


def seed_standard_ledger(ledger: SandboxEarningsLedger, identity: SandboxIdentityProvider) -> None:
    """
    Ledger used by most tests. With cutoff 2024-01-01, threshold 50 and the
    server default filters the eligible set is {7, 9, 19, 21}.
    """
    ledger.add_affiliate(7, "Aegean Travel", contract_type="AGENCY")
    ledger.add_earning(7, date(2023, 11, 20), "70.00")
    ledger.add_earning(7, date(2023, 12, 5), "50.00")

    ledger.add_affiliate(9, "Blue Star Tours", contract_type="AGENCY")
    ledger.add_earning(9, date(2023, 12, 15), "80.00")

    # Below threshold
    ledger.add_affiliate(11, "Cyclades Holidays", contract_type="FREELANCE")
    ledger.add_earning(11, date(2023, 12, 1), "30.00")

    # Fake affiliate
    ledger.add_affiliate(13, "Test Account", contract_type="AGENCY", is_fake=True)
    ledger.add_earning(13, date(2023, 12, 1), "200.00")

    # Only earns after the cutoff
    ledger.add_affiliate(15, "Dodecanese Trips", contract_type="AGENCY")
    ledger.add_earning(15, date(2024, 2, 1), "500.00")

    # Vehicle bookings only
    ledger.add_affiliate(17, "Evia Car Ferries", contract_type="AGENCY")
    ledger.add_earning(17, date(2023, 12, 1), "90.00", booking_category=2)

    # No identity document on file
    ledger.add_affiliate(19, "Folegandros Travel", contract_type="FREELANCE")
    ledger.add_earning(19, date(2023, 10, 1), "75.00")

    # Exactly at threshold, expired document
    ledger.add_affiliate(21, "Gavdos Lines", contract_type="FREELANCE")
    ledger.add_earning(21, date(2023, 12, 31), "50.00")

    far_future = date(2099, 1, 1)
    for affiliate_id in (7, 9, 11, 13, 15, 17):
        identity.set_expiration(affiliate_id, far_future)
    identity.set_expiration(21, date(2020, 1, 1))


class Workflow:
    """Runs each service call in its own session, the way the API does."""

    def __init__(self, session_factory, ledger, identity, gateway, cache, locks):
        self.session_factory = session_factory
        self.ledger = ledger
        self.identity = identity
        self.gateway = gateway
        self.cache = cache
        self.locks = locks
        self.settlement_timeout = 0.5

    def _eligibility(self, db) -> EligibilityService:
        return EligibilityService(db, self.ledger, self.identity, self.cache)

    def _clearance(self, db) -> ClearanceService:
        return ClearanceService(db, eligibility=self._eligibility(db), cache=self.cache)

    def settlement(self) -> SettlementService:
        return SettlementService(
            self.session_factory,
            self.ledger,
            self.identity,
            self.gateway,
            cache=self.cache,
            locks=self.locks,
            timeout_seconds=self.settlement_timeout,
        )

    async def current(self, operator: str = "ops-1"):
        async with self.session_factory() as db:
            return await self._clearance(db).current_criteria(operator)

    async def update_draft(self, cutoff_date=None, threshold=None, operator: str = "ops-1"):
        async with self.session_factory() as db:
            return await self._clearance(db).update_draft(cutoff_date, threshold, operator=operator)

    async def lock(self, cutoff_date=CUTOFF, threshold=THRESHOLD, operator: str = "ops-1"):
        async with self.session_factory() as db:
            return await self._clearance(db).lock(cutoff_date, threshold, operator=operator)

    async def complete(self, criteria_id, force: bool = False, operator: str = "ops-1"):
        async with self.session_factory() as db:
            return await self._clearance(db).complete(criteria_id, force=force, operator=operator)

    async def new_period(self, operator: str = "ops-1"):
        async with self.session_factory() as db:
            return await self._clearance(db).start_new_period(operator=operator)

    async def history(self, skip: int = 0, limit: int = 50):
        async with self.session_factory() as db:
            return await self._clearance(db).list_periods(skip=skip, limit=limit)

    async def query(self, filters: Optional[EligibilityFilters] = None, **kwargs):
        async with self.session_factory() as db:
            return await self._eligibility(db).query(filters, **kwargs)

    async def set_status(self, affiliate_id: int, status, operator: str = "ops-1"):
        async with self.session_factory() as db:
            service = StatusOverrideService(db, self._eligibility(db), locks=self.locks)
            return await service.set_individual_status(affiliate_id, status, operator=operator)

    async def schedule(self, ids: List[int], operator: str = "ops-1"):
        return await self.settlement().schedule(ids, operator=operator)

    async def settle(self, ids: List[int], operator: str = "ops-1"):
        return await self.settlement().settle(ids, operator=operator)

    async def events(self, **filters):
        async with self.session_factory() as db:
            items, _ = await AuditService(db).get_events(limit=200, **filters)
            return items


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'clearance.db'}", poolclass=NullPool)
    await init_db(engine)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def ledger():
    return SandboxEarningsLedger()


@pytest.fixture
def identity():
    return SandboxIdentityProvider()


@pytest.fixture
def gateway():
    return SandboxPaymentGateway()


@pytest.fixture
def cache():
    return CacheService(InMemoryCache(), namespace="clearance-test")


@pytest.fixture
def locks():
    return KeyedLockRegistry()


@pytest.fixture
def standard_ledger(ledger, identity):
    seed_standard_ledger(ledger, identity)
    return ledger


@pytest.fixture
def workflow(session_factory, ledger, identity, gateway, cache, locks):
    return Workflow(session_factory, ledger, identity, gateway, cache, locks)


@pytest.fixture
def future_date():
    return business_today() + timedelta(days=3)
