# =============================================
# File: chatfiles/utils/metrics.py
# Purpose: In-process counters & histograms for /metrics
# =============================================
from __future__ import annotations
from typing import Dict, Any, List
import threading
import time

# Simple in-memory registry (thread-safe enough for dev)
_lock = threading.Lock()

# Counters
_COUNTER_NAMES = (
    "requests_total",
    "cache_hits_total",
    "cache_misses_total",
    "refills_total",
    "extraction_failures_total",
    "refill_dedup_waits_total",
    "cache_evictions_total",
    "cache_purged_total",
)
_counters: Dict[str, int] = {name: 0 for name in _COUNTER_NAMES}

# Labeled counters
_refill_errors: Dict[str, int] = {}   # error category -> count

# Fixed-bucket histogram for refill latency (milliseconds)
# Buckets: <=50,100,200,500,1000,2000,5000,10000, +inf
_latency_buckets: List[int] = [50, 100, 200, 500, 1000, 2000, 5000, 10000]
_latency_counts: List[int] = [0 for _ in _latency_buckets] + [0]  # last is +inf (overflow)

# Per-endpoint latency samples (bounded) and counters for avg/p95
_MAX_SAMPLES: int = 1000
_endpoint_latency: Dict[str, List[float]] = {}   # key: "METHOD /path" -> [ms]
_endpoint_counts: Dict[str, int] = {}            # key: "METHOD /path" -> count

def _avg(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0

def _p95(values: List[float]) -> float:
    if not values:
        return 0.0
    xs = sorted(values)
    idx = int(0.95 * (len(xs) - 1))
    return xs[idx]

def _observe_latency_ms(ms: int) -> None:
    idx = len(_latency_buckets)  # default overflow
    for i, thr in enumerate(_latency_buckets):
        if ms <= thr:
            idx = i
            break
    _latency_counts[idx] += 1

def record_cache_lookup(hit: bool) -> None:
    with _lock:
        _counters["cache_hits_total" if hit else "cache_misses_total"] += 1

def record_refill(latency_ms: int, extraction_failed: bool = False) -> None:
    with _lock:
        _counters["refills_total"] += 1
        if extraction_failed:
            _counters["extraction_failures_total"] += 1
        _observe_latency_ms(int(latency_ms))

def record_refill_error(category: str) -> None:
    with _lock:
        _refill_errors[category] = _refill_errors.get(category, 0) + 1

def record_dedup_wait() -> None:
    with _lock:
        _counters["refill_dedup_waits_total"] += 1

def record_cache_removals(evicted: int = 0, purged: int = 0) -> None:
    with _lock:
        _counters["cache_evictions_total"] += int(evicted)
        _counters["cache_purged_total"] += int(purged)

def record_endpoint(method: str, path: str, latency_ms: float) -> None:
    key = f"{method.upper()} {path}"
    with _lock:
        _counters["requests_total"] += 1
        _endpoint_counts[key] = _endpoint_counts.get(key, 0) + 1
        buf = _endpoint_latency.setdefault(key, [])
        buf.append(float(latency_ms))
        # bound buffer
        if len(buf) > _MAX_SAMPLES:
            del buf[: len(buf) - _MAX_SAMPLES]


def snapshot() -> Dict[str, Any]:
    with _lock:
        perf: Dict[str, Dict[str, float]] = {}
        for key, buf in _endpoint_latency.items():
            perf[key] = {
                "count": float(_endpoint_counts.get(key, 0)),
                "avg_latency_ms": _avg(buf),
                "p95_latency_ms": _p95(buf),
            }
        return {
            "counters": dict(_counters),
            "refill_errors": dict(_refill_errors),
            "refill_latency_ms": {
                "buckets": list(_latency_buckets) + ["+Inf"],
                "counts": list(_latency_counts),
            },
            "performance": {
                "endpoints": perf,
                "generated_at": time.time(),
            },
        }

def reset() -> None:
    with _lock:
        for name in _COUNTER_NAMES:
            _counters[name] = 0
        _refill_errors.clear()
        for i in range(len(_latency_counts)):
            _latency_counts[i] = 0
        _endpoint_latency.clear()
        _endpoint_counts.clear()
