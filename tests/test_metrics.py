# =============================================
# File: tests/test_metrics.py
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from fastapi.testclient import TestClient

from chatfiles.services.blob_store import reset_blob_store
from chatfiles.services.file_cache import get_file_cache, reset_file_cache
from chatfiles.utils.metrics import reset as metrics_reset

CHAT = "11111111-2222-3333-4444-555555555555"
U1 = {"X-User-Id": "u1"}

def _mount_client(monkeypatch, tmp_path):
    monkeypatch.setenv("BLOB_STORE_DIR", str(tmp_path / "blobs"))
    monkeypatch.setenv("ACTIVITY_LOG_ENABLED", "0")
    reset_blob_store()
    reset_file_cache()
    metrics_reset()

    from chatfiles.main import app
    return TestClient(app)

def test_cache_counters_and_refill_histogram(monkeypatch, tmp_path):
    client = _mount_client(monkeypatch, tmp_path)
    path = client.post(
        "/files/upload",
        files={"file": ("notes.txt", b"hello", "text/plain")},
        data={"chatId": CHAT},
        headers=U1,
    ).json()["storagePath"]
    get_file_cache().clear_all()

    # miss + refill, then hit
    for _ in range(2):
        r = client.post("/files/retrieve", json={"chatId": CHAT, "storagePaths": [path]}, headers=U1)
        assert r.status_code == 200

    m = client.get("/metrics").json()
    assert m["counters"]["cache_misses_total"] == 1
    assert m["counters"]["cache_hits_total"] == 1
    assert m["counters"]["refills_total"] == 1
    # histogram consistency: one observation per refill
    assert sum(m["refill_latency_ms"]["counts"]) == m["counters"]["refills_total"]
    assert m["file_cache"]["entryCount"] == 1
    assert m["file_cache"]["maxEntries"] >= 1

def test_refill_errors_by_category(monkeypatch, tmp_path):
    client = _mount_client(monkeypatch, tmp_path)
    r = client.post("/files/retrieve", json={"chatId": CHAT, "storagePaths": [f"u1/{CHAT}/1-nope.txt"]}, headers=U1)
    assert r.json()["summary"]["failed"] == 1

    m = client.get("/metrics").json()
    assert m["refill_errors"].get("file_not_found") == 1

def test_endpoint_performance_is_tracked(monkeypatch, tmp_path):
    client = _mount_client(monkeypatch, tmp_path)
    assert client.get("/health").status_code == 200
    client.post("/files/retrieve", json={"chatId": CHAT, "storagePaths": [f"u1/{CHAT}/1-x.txt"]}, headers=U1)

    eps = client.get("/metrics").json()["performance"]["endpoints"]
    assert "GET /health" in eps
    assert "POST /files/retrieve" in eps
    for v in eps.values():
        assert "count" in v
        assert "avg_latency_ms" in v
        assert "p95_latency_ms" in v

def test_evictions_and_purges_are_counted():
    from chatfiles.services.file_cache import CacheEntry, FileContentCache
    from chatfiles.utils.metrics import snapshot

    metrics_reset()
    now = {"t": 1_000}
    cache = FileContentCache(max_entries=1, clock=lambda: now["t"])
    for fid in ("a", "b"):
        cache.set("u1", CHAT, fid, CacheEntry.create(
            content=fid, content_type="text/plain", size=1, file_name=fid,
            storage_path=f"u1/{CHAT}/{fid}", signed_url="s", chat_id=CHAT, user_id="u1", now_ms=now["t"],
        ))
    now["t"] += 10 ** 12
    assert cache.purge_expired() == 1

    c = snapshot()["counters"]
    assert c["cache_evictions_total"] == 1
    assert c["cache_purged_total"] == 1
