"""Business calendar helpers."""
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from clearance.config import settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def business_today() -> date:
    """Today's date in the business timezone, used to reject future cutoffs."""
    return datetime.now(ZoneInfo(settings.BUSINESS_TIMEZONE)).date()
