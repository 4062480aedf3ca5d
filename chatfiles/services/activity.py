# =============================================
# File: chatfiles/services/activity.py
# Purpose: Best-effort activity + error records for file operations
# =============================================
from __future__ import annotations
import json
import os
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger

from chatfiles.db import repo
from chatfiles.db.models import ErrorLog, UserActivity
from chatfiles.utils import slog


class ActivityType(str, Enum):
    FILE_UPLOAD = "file_upload"
    FILE_DOWNLOAD = "file_download"
    FILE_DELETE = "file_delete"


class ActivityCategory(str, Enum):
    CHAT = "chat"
    FILE = "file"


class ErrorType(str, Enum):
    USER = "user"
    SYSTEM = "system"
    PERMISSION = "permission"


class ErrorCategory(str, Enum):
    FILE_UPLOAD_FAILED = "file_upload_failed"
    FILE_TOO_LARGE = "file_too_large"
    FILE_TYPE_NOT_SUPPORTED = "file_type_not_supported"
    FILE_PROCESSING_FAILED = "file_processing_failed"
    FILE_NOT_FOUND = "file_not_found"
    FILE_SYSTEM_ERROR = "file_system_error"
    STORAGE_ACCESS_DENIED = "storage_access_denied"
    SIGNED_URL_GENERATION_FAILED = "signed_url_generation_failed"
    REFILL_TIMEOUT = "refill_timeout"


def _enabled() -> bool:
    return os.getenv("ACTIVITY_LOG_ENABLED", "1").strip().lower() not in ("0", "false", "no", "off")


def log_user_activity(
    user_id: str,
    activity_type: ActivityType,
    activity_category: ActivityCategory,
    resource_type: str = "",
    resource_id: str = "",
    success: bool = True,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    slog.log_event(
        "activity",
        user_id=user_id,
        activity_type=activity_type.value,
        resource_id=resource_id,
        success=success,
    )
    if not _enabled():
        return
    try:
        repo.add(UserActivity(
            user_id=user_id,
            activity_type=activity_type.value,
            activity_category=activity_category.value,
            resource_type=resource_type,
            resource_id=resource_id,
            success=success,
            metadata_json=json.dumps(metadata or {}, default=str),
        ))
    except Exception as e:
        # Recording must never break the request that triggered it
        logger.error(f"[activity] failed to persist activity {activity_type.value}: {e}")


def log_error(
    category: ErrorCategory,
    message: str,
    user_id: Optional[str] = None,
    error_type: ErrorType = ErrorType.SYSTEM,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    slog.log_event(
        "error",
        user_id=user_id,
        error_type=error_type.value,
        error_category=category.value,
        message=message,
    )
    if not _enabled():
        return
    try:
        repo.add(ErrorLog(
            user_id=user_id,
            error_type=error_type.value,
            error_category=category.value,
            message=message,
            details_json=json.dumps(details or {}, default=str),
        ))
    except Exception as e:
        logger.error(f"[activity] failed to persist error {category.value}: {e}")
