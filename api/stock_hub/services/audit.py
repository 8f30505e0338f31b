# stock_hub/services/audit.py
from __future__ import annotations
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from stock_hub.db_models import AuditLog, AuditAction


async def record_audit(
    db: AsyncSession,
    action: AuditAction,
    resource: str,
    resource_id: Any,
    actor_id: str,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    entry = AuditLog(
        action=action,
        resource=resource,
        resource_id=str(resource_id) if resource_id is not None else None,
        actor_id=actor_id,
        details=details or {},
    )
    db.add(entry)
    await db.flush()
    return entry
