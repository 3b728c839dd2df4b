from typing import Optional, Dict, Any, List, Tuple
import uuid

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from clearance.models.audit_log import ClearanceEvent, ClearanceEventType


class AuditService:
    """
    Writes the append-only clearance event log.

    Events are added to the caller's session and flushed; they commit or
    roll back together with the change they describe.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        event_type: ClearanceEventType,
        criteria_id: Optional[uuid.UUID] = None,
        affiliate_id: Optional[int] = None,
        operator: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> ClearanceEvent:
        """
        Create an event entry.

        Args:
            event_type: What happened (CRITERIA_LOCKED, STATUS_OVERRIDDEN, ...)
            criteria_id: Period the event belongs to
            affiliate_id: Affected affiliate, for per-affiliate events
            operator: Token subject of the caller, None for background jobs
            payload: Old/new values or batch outcome summary
            description: Human-readable description
        """
        event = ClearanceEvent(
            event_type=event_type.value,
            criteria_id=criteria_id,
            affiliate_id=affiliate_id,
            operator=operator,
            payload=payload,
            description=description,
        )
        self.db.add(event)
        await self.db.flush()
        return event

    async def get_events(
        self,
        criteria_id: Optional[uuid.UUID] = None,
        affiliate_id: Optional[int] = None,
        event_type: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[ClearanceEvent], int]:
        """Get events with filters, newest first."""
        stmt = select(ClearanceEvent)

        if criteria_id:
            stmt = stmt.where(ClearanceEvent.criteria_id == criteria_id)
        if affiliate_id is not None:
            stmt = stmt.where(ClearanceEvent.affiliate_id == affiliate_id)
        if event_type:
            stmt = stmt.where(ClearanceEvent.event_type == event_type)

        count_stmt = select(func.count()).select_from(stmt.subquery())
        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = stmt.order_by(ClearanceEvent.created_at.desc(), ClearanceEvent.id).offset(skip).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total
