# =============================================
# File: chatfiles/utils/logging.py
# Purpose: Logging configuration (loguru file sink for operational logs)
# =============================================
import os

from loguru import logger

_sink_id = None

def configure_logging() -> None:
    """Attach the rotating file sink once per process."""
    global _sink_id
    if _sink_id is not None:
        return
    _sink_id = logger.add(
        os.getenv("LOG_FILE", "logs/app.log"),
        rotation="10 MB",
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        enqueue=True,
    )
