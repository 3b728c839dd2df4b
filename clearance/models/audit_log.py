import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import String, DateTime, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from clearance.core.clock import utc_now
from clearance.database import Base
from clearance.db_types import UUIDType, JSONType


class ClearanceEventType(str, Enum):
    CRITERIA_CREATED = "CRITERIA_CREATED"
    CRITERIA_UPDATED = "CRITERIA_UPDATED"
    CRITERIA_LOCKED = "CRITERIA_LOCKED"
    CRITERIA_COMPLETED = "CRITERIA_COMPLETED"
    CRITERIA_FORCE_COMPLETED = "CRITERIA_FORCE_COMPLETED"
    PERIOD_STARTED = "PERIOD_STARTED"
    STATUS_OVERRIDDEN = "STATUS_OVERRIDDEN"
    PAYMENTS_SCHEDULED = "PAYMENTS_SCHEDULED"
    PAYMENTS_SETTLED = "PAYMENTS_SETTLED"
    SETTLEMENT_CLAIM_RELEASED = "SETTLEMENT_CLAIM_RELEASED"


class ClearanceEvent(Base):
    """
    Append-only log of clearance actions.
    Records: criteria transitions, manual status overrides, batch outcomes.
    Rows are inserted and never updated or deleted.
    """
    __tablename__ = "clearance_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    criteria_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True, index=True)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    affiliate_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)

    # Who performed the action (token subject), None for background jobs
    operator: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
        index=True
    )

    def __repr__(self) -> str:
        return f"<ClearanceEvent(type='{self.event_type}', affiliate={self.affiliate_id})>"
