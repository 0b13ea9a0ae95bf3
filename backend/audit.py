# audit.py — Best-effort audit trail
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from models import AuditLog

logger = logging.getLogger("sprintboard.audit")


async def record_audit(
    session_factory: async_sessionmaker,
    action: str,
    actor_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> bool:
    """Write an audit row in its own session. Never raises; returns False on failure."""
    try:
        async with session_factory() as session:
            session.add(AuditLog(
                actor_id=actor_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                data=data or {},
                request_id=request_id,
            ))
            await session.commit()
        return True
    except Exception as e:
        logger.warning(f"Audit write failed for {action}: {e}")
        return False
