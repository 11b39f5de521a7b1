"""Settlement audit trail helpers."""
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import SettlementEvent


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def record_event(
    session: AsyncSession,
    settlement_id: int,
    event_type: str,
    event_data: Dict[str, Any],
    correlation_id: str,
) -> None:
    """
    Add an audit event to the session's current transaction.

    Args:
        session: Database session
        settlement_id: Settlement the event belongs to
        event_type: Event type (e.g., 'settlement.processing')
        event_data: JSON-serializable event data
        correlation_id: Correlation ID shared by one command's events
    """
    session.add(
        SettlementEvent(
            settlement_id=settlement_id,
            event_type=event_type,
            event_data=event_data,
            correlation_id=correlation_id,
            created_at=utcnow(),
        )
    )
