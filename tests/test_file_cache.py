# =============================================
# File: tests/test_file_cache.py
# Purpose: Expiry, key isolation, overwrite, delete, capacity and purge behaviour of the file cache
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from dataclasses import replace

from chatfiles.services.file_cache import (
    CACHE_TTL_MS,
    SIGNED_URL_TTL_SECONDS,
    CacheEntry,
    FileContentCache,
    file_id_from_path,
    format_file_size,
    get_file_cache,
    make_key,
    parse_key,
    reset_file_cache,
)


class FakeClock:
    def __init__(self, now=1_000):
        self.now = now

    def __call__(self):
        return self.now


def _entry(content="hello world", size=11, cached_at=1_000, user_id="u1", chat_id="c1", file_id="f1"):
    return CacheEntry(
        content=content,
        content_type="text/plain",
        size=size,
        file_name=file_id,
        storage_path=f"{user_id}/{chat_id}/{file_id}",
        signed_url="https://blob.test/signed",
        uploaded_at="2024-05-01T10:00:00+00:00",
        chat_id=chat_id,
        user_id=user_id,
        cached_at=cached_at,
        expires_at=cached_at + CACHE_TTL_MS,
    )


def test_ttl_matches_signed_url_lifetime():
    assert CACHE_TTL_MS == SIGNED_URL_TTL_SECONDS * 1000 == 86_400_000
    e = CacheEntry.create(
        content="x", content_type="text/plain", size=1, file_name="a.txt",
        storage_path="u1/c1/a.txt", signed_url="s", chat_id="c1", user_id="u1", now_ms=5_000,
    )
    assert e.cached_at == 5_000
    assert e.expires_at == 5_000 + CACHE_TTL_MS
    assert e.uploaded_at  # defaulted to "now"


def test_get_after_set_then_expiry_is_a_miss_and_evicts():
    clock = FakeClock(1_000)
    cache = FileContentCache(max_entries=10, clock=clock)
    cache.set("u1", "c1", "f1", _entry())

    assert cache.get("u1", "c1", "f1") == _entry()
    assert cache.stats().entry_count == 1

    clock.now = 1_000 + CACHE_TTL_MS  # now == expires_at -> stale
    assert cache.get("u1", "c1", "f1") is None
    assert cache.stats().entry_count == 0


def test_entry_just_before_expiry_is_served():
    clock = FakeClock(1_000)
    cache = FileContentCache(max_entries=10, clock=clock)
    cache.set("u1", "c1", "f1", _entry())
    clock.now = 1_000 + CACHE_TTL_MS - 1
    assert cache.get("u1", "c1", "f1") is not None


def test_key_isolation():
    cache = FileContentCache(max_entries=10, clock=FakeClock())
    cache.set("u1", "c1", "f1", _entry())
    assert cache.get("u2", "c1", "f1") is None
    assert cache.get("u1", "c2", "f1") is None
    assert cache.get("u1", "c1", "f2") is None
    assert cache.get("u1", "c1", "f1") is not None


def test_delimiter_in_ids_cannot_collide():
    cache = FileContentCache(max_entries=10, clock=FakeClock())
    cache.set("a:b", "c", "f", _entry(content="first"))
    cache.set("a", "b:c", "f", _entry(content="second"))
    assert cache.get("a:b", "c", "f").content == "first"
    assert cache.get("a", "b:c", "f").content == "second"
    assert make_key("a:b", "c", "f") != make_key("a", "b:c", "f")
    assert parse_key(make_key("a:b", "c%d", "f")) == ("a:b", "c%d", "f")
    assert parse_key("not-a-key") is None


def test_overwrite_replaces_whole_entry():
    cache = FileContentCache(max_entries=10, clock=FakeClock())
    e1 = _entry(content="one", size=3)
    e2 = replace(_entry(content="two-two", size=7), content_type="application/json", file_name="other.json")
    cache.set("u1", "c1", "f1", e1)
    cache.set("u1", "c1", "f1", e2)
    assert cache.get("u1", "c1", "f1") == e2
    assert cache.stats().entry_count == 1


def test_delete_is_idempotent():
    cache = FileContentCache(max_entries=10, clock=FakeClock())
    cache.set("u1", "c1", "f1", _entry())
    before = cache.stats().as_dict()

    assert cache.delete("u1", "c1", "missing") is False
    assert cache.stats().as_dict() == before

    assert cache.delete("u1", "c1", "f1") is True
    assert cache.get("u1", "c1", "f1") is None
    assert cache.delete("u1", "c1", "f1") is False


def test_capacity_evicts_oldest_cached_at_first():
    cache = FileContentCache(max_entries=3, clock=FakeClock(10))
    for i in range(5):
        cache.set("u1", "c1", f"f{i}", _entry(file_id=f"f{i}", cached_at=i))
        assert cache.stats().entry_count <= 3

    assert cache.get("u1", "c1", "f0") is None
    assert cache.get("u1", "c1", "f1") is None
    for i in (2, 3, 4):
        assert cache.get("u1", "c1", f"f{i}") is not None


def test_capacity_uses_cached_at_not_insertion_order():
    cache = FileContentCache(max_entries=2, clock=FakeClock(10))
    cache.set("u1", "c1", "new", _entry(file_id="new", cached_at=9))
    cache.set("u1", "c1", "old", _entry(file_id="old", cached_at=1))
    cache.set("u1", "c1", "mid", _entry(file_id="mid", cached_at=5))
    assert cache.get("u1", "c1", "old") is None
    assert cache.get("u1", "c1", "new") is not None
    assert cache.get("u1", "c1", "mid") is not None


def test_purge_removes_exactly_the_expired():
    clock = FakeClock(10_000)
    cache = FileContentCache(max_entries=10, clock=clock)
    cache.set("u1", "c1", "past", replace(_entry(file_id="past"), expires_at=5_000))
    cache.set("u1", "c1", "edge", replace(_entry(file_id="edge"), expires_at=10_000))
    cache.set("u1", "c1", "live", replace(_entry(file_id="live"), expires_at=20_000))

    assert cache.purge_expired() == 2
    assert cache.purge_expired() == 0
    assert cache.stats().entry_count == 1
    assert cache.get("u1", "c1", "live") is not None


def test_set_with_past_expiry_is_accepted_then_lazily_evicted():
    cache = FileContentCache(max_entries=10, clock=FakeClock(10_000))
    cache.set("u1", "c1", "f1", replace(_entry(), expires_at=1))
    assert cache.stats().entry_count == 1
    assert cache.stats().expired_entries == 1
    assert cache.get("u1", "c1", "f1") is None
    assert cache.stats().entry_count == 0


def test_end_to_end_scenario():
    cache = FileContentCache(max_entries=10, clock=FakeClock())
    cache.set("u1", "c1", "f1", _entry(content="hello world", size=11))
    got = cache.get("u1", "c1", "f1")
    assert got.content == "hello world"
    assert got.size == 11

    cache.delete("u1", "c1", "f1")
    assert cache.get("u1", "c1", "f1") is None

    cache.set("u1", "c1", "f1", _entry(content="bye", size=3))
    got = cache.get("u1", "c1", "f1")
    assert got.content == "bye"
    assert got.size == 3


def test_stats_accounting():
    clock = FakeClock(1_000)
    cache = FileContentCache(max_entries=10, clock=clock)
    cache.set("u1", "c1", "a", _entry(content="héllo", size=100, file_id="a", cached_at=400))
    cache.set("u1", "c1", "b", _entry(content="abc", size=50, file_id="b", cached_at=900))
    st = cache.stats()
    assert st.entry_count == 2
    assert st.approximate_bytes == len("héllo".encode("utf-8")) + 3
    assert st.total_object_bytes == 150
    assert st.oldest_entry_age_ms == 600
    assert st.newest_entry_age_ms == 100
    assert st.as_dict()["maxEntries"] == 10

    cache.delete("u1", "c1", "a")
    assert cache.stats().approximate_bytes == 3


def test_chat_and_user_scoped_listing_and_clears():
    clock = FakeClock(1_000)
    cache = FileContentCache(max_entries=10, clock=clock)
    cache.set("u1", "c1", "a", _entry(file_id="a"))
    cache.set("u1", "c1", "b", _entry(file_id="b"))
    cache.set("u1", "c2", "c", _entry(file_id="c", chat_id="c2"))
    cache.set("u2", "c1", "d", _entry(file_id="d", user_id="u2"))

    assert sorted(e.file_name for e in cache.get_by_chat("u1", "c1")) == ["a", "b"]
    assert len(cache.get_by_user("u1")) == 3
    meta = cache.metadata_by_chat("u1", "c2")
    assert meta == [{
        "fileName": "c", "contentType": "text/plain", "size": 11,
        "uploadedAt": "2024-05-01T10:00:00+00:00", "chatId": "c2", "userId": "u1",
    }]
    assert cache.has("u2", "c1", "d")

    assert cache.clear_chat("u1", "c1") == 2
    assert cache.clear_user("u1") == 1
    assert cache.stats().entry_count == 1
    assert cache.clear_all() == 1
    assert len(cache) == 0


def test_listing_drops_expired_entries():
    clock = FakeClock(1_000)
    cache = FileContentCache(max_entries=10, clock=clock)
    cache.set("u1", "c1", "old", replace(_entry(file_id="old"), expires_at=500))
    cache.set("u1", "c1", "new", _entry(file_id="new"))
    assert [e.file_name for e in cache.get_by_chat("u1", "c1")] == ["new"]
    assert cache.stats().entry_count == 1


def test_process_wide_accessor_is_lazy_singleton():
    reset_file_cache()
    a = get_file_cache()
    b = get_file_cache()
    assert a is b
    reset_file_cache()
    assert get_file_cache() is not a


def test_purge_timer_sweeps_in_background():
    import time as _time
    clock = FakeClock(10_000)
    cache = FileContentCache(max_entries=10, clock=clock)
    cache.set("u1", "c1", "f1", replace(_entry(), expires_at=1))
    assert cache.start_purge_timer(0.01) is True
    assert cache.start_purge_timer(0.01) is False  # already running
    try:
        deadline = _time.time() + 2
        while _time.time() < deadline and cache.stats().entry_count:
            _time.sleep(0.01)
    finally:
        cache.stop_purge_timer()
    assert cache.stats().entry_count == 0
    assert cache.start_purge_timer(0) is False


def test_helpers():
    assert file_id_from_path("u1/c1/123-notes.txt") == "123-notes.txt"
    assert file_id_from_path("") == ""
    assert format_file_size(0) == "0 B"
    assert format_file_size(11) == "11 B"
    assert format_file_size(1536) == "1.5 KB"
    assert format_file_size(5 * 1024 * 1024) == "5 MB"


def test_eviction_log_names_evicted_files():
    from loguru import logger

    seen = []
    sink = logger.add(lambda msg: seen.append(str(msg)), level="WARNING")
    try:
        cache = FileContentCache(max_entries=1, clock=FakeClock(10))
        cache.set("u1", "c:1", "f0", _entry(file_id="f0", cached_at=0))
        cache.set("u1", "c:1", "f1", _entry(file_id="f1", cached_at=1))
    finally:
        logger.remove(sink)
    assert any("evicted 1 oldest: u1/c:1/f0" in m for m in seen)
