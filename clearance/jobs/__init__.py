"""
Background Jobs Module

Handles scheduled tasks for:
- Releasing abandoned settlement claims
- Cache housekeeping
"""

from clearance.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler
from clearance.jobs.settlement_jobs import release_stale_settlement_claims, purge_expired_cache

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "release_stale_settlement_claims",
    "purge_expired_cache",
]
