# =============================================
# File: chatfiles/db/models.py
# Purpose: SQLModel tables for file activity (upload/download/delete) and refill/storage error records.
# =============================================

from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserActivity(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    activity_type: str
    activity_category: str
    resource_type: str = ""
    resource_id: str = ""
    success: bool = True
    metadata_json: str = "{}"
    ts: datetime = Field(default_factory=_utcnow)


class ErrorLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[str] = Field(default=None, index=True)
    error_type: str
    error_category: str
    message: str
    details_json: str = "{}"
    ts: datetime = Field(default_factory=_utcnow)
