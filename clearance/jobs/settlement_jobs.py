"""
Settlement Maintenance Jobs

- release_stale_settlement_claims: a settle that crashed or was cancelled
  mid-payment leaves its claim token on the row, which blocks any retry.
  Claims older than SETTLEMENT_CLAIM_TTL_MINUTES are released back to
  SCHEDULED so an operator can retry; the payment reference is the
  idempotency key, so the retry cannot pay twice.
- purge_expired_cache: housekeeping for the in-memory cache backend.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from clearance.config import settings
from clearance.database import get_db_session
from clearance.services.cache_service import InMemoryCache, get_cache
from clearance.services.settlement_service import release_stale_claims

logger = logging.getLogger(__name__)


async def release_stale_settlement_claims(ttl_minutes: Optional[int] = None) -> Dict[str, Any]:
    ttl = timedelta(minutes=ttl_minutes or settings.SETTLEMENT_CLAIM_TTL_MINUTES)
    try:
        async with get_db_session() as db:
            released = await release_stale_claims(db, older_than=ttl)
    except Exception as e:
        logger.error(f"Job 'release_stale_settlement_claims' failed: {e}")
        return {"success": False, "error": str(e)}

    if released:
        logger.warning(f"Released {released} stale settlement claim(s)")
    else:
        logger.debug("No stale settlement claims found")
    return {"success": True, "released": released}


async def purge_expired_cache() -> Dict[str, Any]:
    backend = get_cache().backend
    if not isinstance(backend, InMemoryCache):
        return {"success": True, "purged": 0}

    purged = await backend.cleanup_expired()
    logger.debug(f"Purged {purged} expired cache entries")
    return {"success": True, "purged": purged}
