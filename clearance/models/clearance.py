"""Clearance criteria and per-affiliate clearance state models.

Supports:
- One criteria record per payment period (cutoff date + minimum threshold)
- OPEN -> LOCKED -> COMPLETED lifecycle with optimistic versioning
- Per-affiliate manual clearance status within a period
- Two-phase payment state (NONE -> SCHEDULED -> SETTLED) with a settlement claim
"""
import uuid
from datetime import datetime, date
from enum import Enum
from typing import Optional
from decimal import Decimal

from sqlalchemy import String, Boolean, DateTime, Integer, Text, Date, ForeignKey
from sqlalchemy import UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from clearance.core.clock import utc_now
from clearance.database import Base
from clearance.db_types import UUIDType, MoneyType


class LifecycleStatus(str, Enum):
    """Clearance criteria lifecycle."""
    OPEN = "OPEN"               # Cutoff/threshold still editable
    LOCKED = "LOCKED"           # Eligible set frozen, payments in progress
    COMPLETED = "COMPLETED"     # Period closed


class IndividualClearanceStatus(str, Enum):
    """Manual per-affiliate clearance status."""
    PENDING = "PENDING"
    CLEARED = "CLEARED"
    EXCLUDED = "EXCLUDED"       # Removed from batch selection


class PaymentBatchState(str, Enum):
    """Two-phase batch payment state."""
    NONE = "NONE"
    SCHEDULED = "SCHEDULED"     # "Proceed to payment"
    SETTLED = "SETTLED"         # "Pay checked" confirmed by the payment interface


class BookingCategory(int, Enum):
    """Booking category of the underlying earnings."""
    UNSET = 0
    PASSENGER = 1
    VEHICLE = 2
    ACCOMMODATION = 3


# An unset category means category 1, not "all categories"
DEFAULT_BOOKING_CATEGORY = BookingCategory.PASSENGER


class ClearanceCriteria(Base):
    """
    Clearance criteria for one payment period.

    The current record is the one with the highest period_number; earlier
    records are COMPLETED and kept as history.
    """
    __tablename__ = "clearance_criteria"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    period_number: Mapped[int] = mapped_column(
        Integer,
        unique=True,
        nullable=False,
        index=True,
        comment="Monotonic period counter, the highest is current"
    )

    cutoff_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    minimum_amount_threshold: Mapped[Optional[Decimal]] = mapped_column(
        MoneyType,
        nullable=True,
        comment="Minimum unpaid amount for an affiliate to be eligible"
    )

    lifecycle_status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=LifecycleStatus.OPEN.value,
        index=True,
        comment="OPEN, LOCKED, COMPLETED"
    )

    # Bumped on every write, used for compare-and-swap
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Lifecycle audit
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    forced_completion: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )

    @property
    def is_ready(self) -> bool:
        """Eligibility can be computed for this record."""
        return (
            self.lifecycle_status in (LifecycleStatus.LOCKED.value, LifecycleStatus.COMPLETED.value)
            and self.cutoff_date is not None
            and self.minimum_amount_threshold is not None
        )

    def __repr__(self) -> str:
        return f"<ClearanceCriteria(period={self.period_number}, status='{self.lifecycle_status}')>"


class AffiliateClearanceState(Base):
    """
    Persisted per-affiliate state inside one clearance period.

    Everything else about an affiliate (amounts, counts, names) is recomputed
    from the earnings ledger on every query. A missing row means
    PENDING / NONE.
    """
    __tablename__ = "affiliate_clearance_states"
    __table_args__ = (
        UniqueConstraint("criteria_id", "affiliate_id", name="uq_clearance_state_criteria_affiliate"),
        Index("ix_clearance_state_payment", "criteria_id", "payment_batch_state"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    criteria_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("clearance_criteria.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    affiliate_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    individual_status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=IndividualClearanceStatus.PENDING.value,
        comment="PENDING, CLEARED, EXCLUDED"
    )
    payment_batch_state: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=PaymentBatchState.NONE.value,
        comment="NONE, SCHEDULED, SETTLED"
    )

    # Optimistic version for per-affiliate transitions
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Scheduling
    scheduled_amount: Mapped[Optional[Decimal]] = mapped_column(MoneyType, nullable=True)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    scheduled_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Settlement claim: set while a settle call owns the row
    settlement_claim_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    settlement_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Settlement outcome
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    settled_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<AffiliateClearanceState(affiliate={self.affiliate_id}, "
            f"status='{self.individual_status}', payment='{self.payment_batch_state}')>"
        )
