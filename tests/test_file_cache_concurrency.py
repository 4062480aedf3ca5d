# =============================================
# File: tests/test_file_cache_concurrency.py
# Purpose: Concurrent writers/readers never observe a torn entry or break capacity
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import threading
import time

from chatfiles.services.file_cache import CACHE_TTL_MS, CacheEntry, FileContentCache

_NOW = int(time.time() * 1000)


def _entry(i, file_id="f1"):
    return CacheEntry(
        content=f"v{i}" * (i + 1),
        content_type="text/plain",
        size=i,
        file_name=f"{file_id}-{i}",
        storage_path=f"u1/c1/{file_id}",
        signed_url=f"https://blob.test/{i}",
        uploaded_at="2024-05-01T10:00:00+00:00",
        chat_id="c1",
        user_id="u1",
        cached_at=_NOW + i,
        expires_at=_NOW + i + CACHE_TTL_MS,
    )


def test_concurrent_sets_on_one_key_leave_exactly_one_whole_entry():
    cache = FileContentCache(max_entries=100)
    written = [_entry(i) for i in range(16)]
    start = threading.Barrier(len(written))

    def _writer(e):
        start.wait()
        cache.set("u1", "c1", "f1", e)

    threads = [threading.Thread(target=_writer, args=(e,)) for e in written]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    got = cache.get("u1", "c1", "f1")
    assert got in written
    assert cache.stats().entry_count == 1


def test_mixed_operations_respect_capacity():
    cache = FileContentCache(max_entries=8)
    errors = []

    def _worker(n):
        try:
            for i in range(200):
                fid = f"f{(n * 7 + i) % 20}"
                cache.set("u1", "c1", fid, _entry(i, file_id=fid))
                cache.get("u1", "c1", fid)
                if i % 5 == 0:
                    cache.delete("u1", "c1", fid)
                if i % 17 == 0:
                    cache.purge_expired()
                    cache.stats()
                assert len(cache) <= 8
        except Exception as e:  # surfaced below
            errors.append(e)

    threads = [threading.Thread(target=_worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert cache.stats().entry_count <= 8
