# =============================================
# File: chatfiles/routers/metrics.py
# Purpose: Expose internal metrics as JSON
# =============================================
from __future__ import annotations
from fastapi import APIRouter
from chatfiles.services.file_cache import get_file_cache
from chatfiles.utils.metrics import snapshot

router = APIRouter(tags=["metrics"])

@router.get("/metrics")
def get_metrics():
    """Return in-process metrics plus current cache occupancy (JSON)."""
    data = snapshot()
    data["file_cache"] = get_file_cache().stats().as_dict()
    return data
