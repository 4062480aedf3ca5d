import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI

from chatfiles.routers import files, metrics
from chatfiles.services.file_cache import DEFAULT_PURGE_INTERVAL_SECONDS, get_file_cache
from chatfiles.utils import slog
from chatfiles.utils.logging import configure_logging
from chatfiles.utils.metrics import record_endpoint


def _purge_interval_s() -> float:
    try:
        return float(os.getenv("FILE_CACHE_PURGE_INTERVAL_SECONDS", str(DEFAULT_PURGE_INTERVAL_SECONDS)))
    except ValueError:
        return float(DEFAULT_PURGE_INTERVAL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    cache = get_file_cache()
    cache.start_purge_timer(_purge_interval_s())
    try:
        yield
    finally:
        cache.stop_purge_timer()
        cache.log_stats()


app = FastAPI(title="Chat File Cache", lifespan=lifespan)


@app.middleware("http")
async def _logging_middleware(request, call_next):
    start = time.perf_counter()
    req_id = slog.new_request_id()
    client_ip = request.client.host if request.client else None
    try:
        response = await call_next(request)
    except Exception as e:
        latency_ms = int((time.perf_counter() - start) * 1000)
        ctx = getattr(request.state, "log_context", {})
        slog.log_event(
            "request.error",
            request_id=req_id,
            path=str(request.url.path),
            method=request.method,
            latency_ms=latency_ms,
            client_ip=client_ip,
            error=str(e),
            **(ctx or {}),
        )
        raise
    latency_ms = int((time.perf_counter() - start) * 1000)
    ctx = getattr(request.state, "log_context", {}) or {}
    slog.finalize_request_log(
        request_id=req_id,
        method=request.method,
        path=str(request.url.path),
        status=response.status_code,
        latency_ms=latency_ms,
        client_ip=client_ip,
        ctx=ctx,
    )
    # --- metrics wiring ---
    try:
        record_endpoint(method=request.method, path=str(request.url.path), latency_ms=latency_ms)
    except Exception:
        pass

    try:
        response.headers["X-Request-ID"] = req_id
    except Exception:
        pass
    return response


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(files.router)
app.include_router(metrics.router)
