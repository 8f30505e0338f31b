# stock_hub/deps.py
"""
Request context shared by routers.

Identity is issued by the auth layer in front of this service and arrives as
headers: X-Actor-Id (who) and X-Actor-Role (what they may do).
"""
from __future__ import annotations
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

ADMIN_ROLE = "admin"


def get_actor(x_actor_id: Optional[str] = Header(default=None)) -> str:
    """Actor for mutations; missing header -> 401."""
    actor = (x_actor_id or "").strip()
    if not actor:
        raise HTTPException(401, detail="X-Actor-Id header is required")
    return actor


def require_admin(
    actor: str = Depends(get_actor),
    x_actor_role: Optional[str] = Header(default=None),
) -> str:
    if (x_actor_role or "").strip().lower() != ADMIN_ROLE:
        raise HTTPException(403, detail="Admin role required")
    return actor


def get_orchestrator(request: Request):
    return request.app.state.orchestrator
