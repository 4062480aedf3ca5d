# =============================================
# File: chatfiles/utils/auth.py
# Purpose: Request identity for file routes (session validation happens upstream)
# =============================================
from __future__ import annotations
import os
from typing import Optional, Set

from fastapi import Header, HTTPException, Depends


def _admin_ids() -> Set[str]:
    """Read at call time so tests/env overrides take effect."""
    raw = os.getenv("ADMIN_USER_IDS", "")
    return {x.strip() for x in raw.split(",") if x.strip()}


def require_auth(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Return the caller's user id or fail with 401."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


def require_admin(user_id: str = Depends(require_auth)) -> str:
    if user_id not in _admin_ids():
        raise HTTPException(status_code=403, detail="Admin access required")
    return user_id
