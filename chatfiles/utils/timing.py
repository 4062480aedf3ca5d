import time
from contextlib import contextmanager
from typing import Optional

from loguru import logger

@contextmanager
def timer(label: Optional[str] = None, warn_ms: Optional[int] = None):
    """
    Yield a callable returning elapsed milliseconds since entering the block.
    With `warn_ms`, a block that runs longer is reported as slow on exit.
    """
    t0 = time.perf_counter()
    elapsed = lambda: int((time.perf_counter() - t0) * 1000)
    try:
        yield elapsed
    finally:
        ms = elapsed()
        if warn_ms is not None and ms > warn_ms:
            logger.warning(f"[timing] slow {label or 'block'}: {ms}ms (> {warn_ms}ms)")
