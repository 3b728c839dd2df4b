"""
APScheduler Configuration

Background maintenance for the clearance workflow. Jobs never move money;
they only repair state an interrupted request left behind.
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from clearance.config import settings

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,  # Allow 60 seconds grace time for misfires
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.BUSINESS_TIMEZONE
)


def start_scheduler():
    """Start the background job scheduler."""
    if not scheduler.running:
        from clearance.jobs.settlement_jobs import release_stale_settlement_claims, purge_expired_cache

        # Release settlement claims abandoned by a crashed settle
        scheduler.add_job(
            release_stale_settlement_claims,
            'interval',
            minutes=settings.STALE_CLAIM_SWEEP_INTERVAL_MINUTES,
            id='release_stale_settlement_claims',
            name='Release Stale Settlement Claims',
            replace_existing=True,
        )

        # Drop expired in-memory eligibility snapshots
        scheduler.add_job(
            purge_expired_cache,
            'interval',
            minutes=30,
            id='purge_expired_cache',
            name='Purge Expired Eligibility Cache',
            replace_existing=True,
        )

        scheduler.start()
        logger.info("Background job scheduler started")

        for job in scheduler.get_jobs():
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")
