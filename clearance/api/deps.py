from typing import Annotated, Optional
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clearance.database import get_db, get_session_factory
from clearance.core.security import verify_access_token
from clearance.integrations.earnings_ledger import EarningsLedger, get_earnings_ledger
from clearance.integrations.identity_provider import IdentityProvider, get_identity_provider
from clearance.integrations.payment_gateway import PaymentGateway, get_payment_gateway
from clearance.services.cache_service import CacheService, get_eligibility_cache
from clearance.services.clearance_state_machine import ClearanceService
from clearance.services.eligibility_service import EligibilityService
from clearance.services.settlement_service import SettlementService
from clearance.services.status_override_service import StatusOverrideService


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme
security = HTTPBearer()


async def get_current_operator(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> str:
    """
    Dependency to get the operator id from the console's bearer token.

    The subject is recorded on every clearance event.
    """
    operator = verify_access_token(credentials.credentials)

    if operator is None:
        logger.warning("Token verification failed - invalid or expired token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return operator


CurrentOperator = Annotated[str, Depends(get_current_operator)]
DB = Annotated[AsyncSession, Depends(get_db)]
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]

Ledger = Annotated[EarningsLedger, Depends(get_earnings_ledger)]
Identity = Annotated[IdentityProvider, Depends(get_identity_provider)]
Gateway = Annotated[PaymentGateway, Depends(get_payment_gateway)]
EligibilityCache = Annotated[Optional[CacheService], Depends(get_eligibility_cache)]


def get_eligibility_service(
    db: DB,
    ledger: Ledger,
    identity: Identity,
    cache: EligibilityCache,
) -> EligibilityService:
    return EligibilityService(db, ledger, identity, cache)


Eligibility = Annotated[EligibilityService, Depends(get_eligibility_service)]


def get_clearance_service(db: DB, eligibility: Eligibility, cache: EligibilityCache) -> ClearanceService:
    return ClearanceService(db, eligibility=eligibility, cache=cache)


def get_status_override_service(db: DB, eligibility: Eligibility) -> StatusOverrideService:
    return StatusOverrideService(db, eligibility)


def get_settlement_service(
    session_factory: SessionFactory,
    ledger: Ledger,
    identity: Identity,
    gateway: Gateway,
    cache: EligibilityCache,
) -> SettlementService:
    """Settlement opens its own short sessions, never the request session."""
    return SettlementService(session_factory, ledger, identity, gateway, cache=cache)


Clearance = Annotated[ClearanceService, Depends(get_clearance_service)]
StatusOverrides = Annotated[StatusOverrideService, Depends(get_status_override_service)]
Settlement = Annotated[SettlementService, Depends(get_settlement_service)]
