from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import AuditLog


def record_audit(session: AsyncSession, action: str, actor_id: Optional[UUID], payload: dict[str, Any]) -> AuditLog:
    """Stage an audit row in the caller's transaction; it is committed with the operation."""
    entry = AuditLog(actor_id=actor_id, action=action, payload=payload)
    session.add(entry)
    return entry
