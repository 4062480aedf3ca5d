# =============================================
# File: chatfiles/services/file_cache.py
# Purpose: In-process, per-chat cache of extracted file content (TTL + capacity bound)
# =============================================
from __future__ import annotations
import math
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from urllib.parse import quote, unquote

from loguru import logger

from chatfiles.utils import metrics

# Signed URLs and cache entries share one lifetime: a hit never outlives its URL.
SIGNED_URL_TTL_SECONDS = 24 * 60 * 60
CACHE_TTL_MS = SIGNED_URL_TTL_SECONDS * 1000

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_PURGE_INTERVAL_SECONDS = 3600


def _now_ms() -> int:
    return int(time.time() * 1000)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _max_entries_from_env() -> int:
    try:
        return max(1, int(os.getenv("FILE_CACHE_MAX_ENTRIES", str(DEFAULT_MAX_ENTRIES))))
    except ValueError:
        return DEFAULT_MAX_ENTRIES


# ---------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------

def _escape(segment: str) -> str:
    # ":" and "%" are escaped so a segment can never spill into its neighbour
    return quote(segment, safe="")


def make_key(user_id: str, chat_id: str, file_id: str) -> str:
    """Render the (user, chat, file) triple as "<user>:<chat>:<file>"."""
    return f"{_escape(user_id)}:{_escape(chat_id)}:{_escape(file_id)}"


def parse_key(key: str) -> Optional[tuple[str, str, str]]:
    parts = key.split(":")
    if len(parts) != 3:
        return None
    user_id, chat_id, file_id = (unquote(p) for p in parts)
    return user_id, chat_id, file_id


def _describe(key: str) -> str:
    """Readable "<user>/<chat>/<file>" for log lines."""
    parts = parse_key(key)
    return "/".join(parts) if parts else key


def file_id_from_path(storage_path: str) -> str:
    """Storage paths look like <userId>/<chatId>/<fileId>; the last segment is the file id."""
    return (storage_path or "").split("/")[-1]


def format_file_size(num_bytes: int) -> str:
    if num_bytes <= 0:
        return "0 B"
    k = 1024
    sizes = ["B", "KB", "MB", "GB"]
    i = min(int(math.floor(math.log(num_bytes) / math.log(k))), len(sizes) - 1)
    value = round(num_bytes / k ** i, 2)
    return f"{value:g} {sizes[i]}"


# ---------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheEntry:
    content: str
    content_type: str
    size: int
    file_name: str
    storage_path: str
    signed_url: str
    uploaded_at: str
    chat_id: str
    user_id: str
    cached_at: int
    expires_at: int

    @classmethod
    def create(
        cls,
        *,
        content: str,
        content_type: str,
        size: int,
        file_name: str,
        storage_path: str,
        signed_url: str,
        chat_id: str,
        user_id: str,
        uploaded_at: Optional[str] = None,
        now_ms: Optional[int] = None,
    ) -> "CacheEntry":
        """Build an entry stamped with cached_at=now and expires_at=now+CACHE_TTL_MS."""
        now = _now_ms() if now_ms is None else now_ms
        return cls(
            content=content,
            content_type=content_type,
            size=max(0, int(size or 0)),
            file_name=file_name,
            storage_path=storage_path,
            signed_url=signed_url,
            uploaded_at=uploaded_at or _utc_now_iso(),
            chat_id=chat_id,
            user_id=user_id,
            cached_at=now,
            expires_at=now + CACHE_TTL_MS,
        )

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expires_at

    def metadata(self) -> Dict[str, object]:
        """Lightweight view without content (for listings)."""
        return {
            "fileName": self.file_name,
            "contentType": self.content_type,
            "size": self.size,
            "uploadedAt": self.uploaded_at,
            "chatId": self.chat_id,
            "userId": self.user_id,
        }


@dataclass
class CacheStats:
    entry_count: int = 0
    approximate_bytes: int = 0
    expired_entries: int = 0
    total_object_bytes: int = 0
    oldest_entry_age_ms: int = 0
    newest_entry_age_ms: int = 0
    max_entries: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "entryCount": self.entry_count,
            "approximateBytes": self.approximate_bytes,
            "expiredEntries": self.expired_entries,
            "totalObjectBytes": self.total_object_bytes,
            "oldestEntryAgeMs": self.oldest_entry_age_ms,
            "newestEntryAgeMs": self.newest_entry_age_ms,
            "maxEntries": self.max_entries,
        }


# ---------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------

class FileContentCache:
    """
    Extracted file content keyed by (user, chat, file).

    - Expiry: an entry is stale once now >= expires_at; a stale get is a miss
      and removes the entry. purge_expired() sweeps entries nobody reads again.
    - Capacity: after each set, entries are evicted oldest cached_at first
      until the count is back within max_entries.
    - Concurrency: one lock around the map; nothing under the lock does I/O.
    """

    def __init__(
        self,
        max_entries: Optional[int] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.max_entries = max_entries if max_entries is not None else _max_entries_from_env()
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._content_bytes: Dict[str, int] = {}
        self._purge_stop: Optional[threading.Event] = None
        self._purge_thread: Optional[threading.Thread] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # -- internal helpers (caller holds the lock) --

    def _remove(self, key: str) -> bool:
        self._content_bytes.pop(key, None)
        return self._entries.pop(key, None) is not None

    def _evict_over_capacity(self) -> List[str]:
        evicted: List[str] = []
        while len(self._entries) > self.max_entries:
            # min() keeps insertion order on cached_at ties
            victim = min(self._entries, key=lambda k: self._entries[k].cached_at)
            self._remove(victim)
            evicted.append(victim)
        return evicted

    def _collect(self, prefix: str) -> List[CacheEntry]:
        now = self._clock()
        out: List[CacheEntry] = []
        for key in [k for k in self._entries if k.startswith(prefix)]:
            entry = self._entries[key]
            if entry.is_expired(now):
                self._remove(key)
            else:
                out.append(entry)
        return out

    def _clear_prefix(self, prefix: str) -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            self._remove(key)
        return len(keys)

    # -- public API --

    def get(self, user_id: str, chat_id: str, file_id: str) -> Optional[CacheEntry]:
        key = make_key(user_id, chat_id, file_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                self._remove(key)
                logger.debug(f"[file_cache] expired on read {_describe(key)}")
                return None
            return entry

    def has(self, user_id: str, chat_id: str, file_id: str) -> bool:
        return self.get(user_id, chat_id, file_id) is not None

    def set(self, user_id: str, chat_id: str, file_id: str, entry: CacheEntry) -> None:
        key = make_key(user_id, chat_id, file_id)
        size = len(entry.content.encode("utf-8"))
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key, last=True)
            self._content_bytes[key] = size
            evicted = self._evict_over_capacity()
        if evicted:
            metrics.record_cache_removals(evicted=len(evicted))
            logger.warning(
                f"[file_cache] capacity {self.max_entries} reached, evicted {len(evicted)} oldest: "
                + ", ".join(_describe(k) for k in evicted)
            )

    def delete(self, user_id: str, chat_id: str, file_id: str) -> bool:
        key = make_key(user_id, chat_id, file_id)
        with self._lock:
            return self._remove(key)

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            dead = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in dead:
                self._remove(key)
        if dead:
            metrics.record_cache_removals(purged=len(dead))
            logger.info(f"[file_cache] purged {len(dead)} expired entries")
        return len(dead)

    def get_by_chat(self, user_id: str, chat_id: str) -> List[CacheEntry]:
        prefix = f"{_escape(user_id)}:{_escape(chat_id)}:"
        with self._lock:
            return self._collect(prefix)

    def get_by_user(self, user_id: str) -> List[CacheEntry]:
        prefix = f"{_escape(user_id)}:"
        with self._lock:
            return self._collect(prefix)

    def metadata_by_chat(self, user_id: str, chat_id: str) -> List[Dict[str, object]]:
        return [e.metadata() for e in self.get_by_chat(user_id, chat_id)]

    def clear_chat(self, user_id: str, chat_id: str) -> int:
        with self._lock:
            return self._clear_prefix(f"{_escape(user_id)}:{_escape(chat_id)}:")

    def clear_user(self, user_id: str) -> int:
        with self._lock:
            return self._clear_prefix(f"{_escape(user_id)}:")

    def clear_all(self) -> int:
        with self._lock:
            n = len(self._entries)
            self._entries.clear()
            self._content_bytes.clear()
            return n

    def stats(self) -> CacheStats:
        with self._lock:
            now = self._clock()
            st = CacheStats(
                entry_count=len(self._entries),
                approximate_bytes=sum(self._content_bytes.values()),
                max_entries=self.max_entries,
            )
            if self._entries:
                cached = [e.cached_at for e in self._entries.values()]
                st.expired_entries = sum(1 for e in self._entries.values() if e.is_expired(now))
                st.total_object_bytes = sum(e.size for e in self._entries.values())
                st.oldest_entry_age_ms = max(0, now - min(cached))
                st.newest_entry_age_ms = max(0, now - max(cached))
            return st

    def log_stats(self) -> None:
        st = self.stats()
        logger.info(
            "[file_cache] stats entries={} expired={} content={} objects={} oldest_h={:.2f} newest_h={:.2f}",
            st.entry_count,
            st.expired_entries,
            format_file_size(st.approximate_bytes),
            format_file_size(st.total_object_bytes),
            st.oldest_entry_age_ms / 3_600_000,
            st.newest_entry_age_ms / 3_600_000,
        )

    # -- periodic sweep --

    def start_purge_timer(self, interval_s: float = DEFAULT_PURGE_INTERVAL_SECONDS) -> bool:
        """Run purge_expired() every interval_s seconds on a daemon thread."""
        if interval_s <= 0 or self._purge_thread is not None:
            return False
        stop = threading.Event()

        def _loop() -> None:
            while not stop.wait(interval_s):
                try:
                    self.purge_expired()
                except Exception as e:  # keep the sweeper alive
                    logger.exception(f"[file_cache] purge sweep failed: {e}")

        self._purge_stop = stop
        self._purge_thread = threading.Thread(target=_loop, name="file-cache-purge", daemon=True)
        self._purge_thread.start()
        return True

    def stop_purge_timer(self) -> None:
        if self._purge_stop is not None:
            self._purge_stop.set()
        if self._purge_thread is not None:
            self._purge_thread.join(timeout=1.0)
        self._purge_stop = None
        self._purge_thread = None


# ---------------------------------------------------------------------
# Process-wide accessor
# ---------------------------------------------------------------------

_instance: Optional[FileContentCache] = None
_instance_lock = threading.Lock()


def get_file_cache() -> FileContentCache:
    """Return the process-wide cache, constructing it on first use."""
    global _instance
    if _instance is None:
        with _instance_lock:
            if _instance is None:
                _instance = FileContentCache()
    return _instance


def reset_file_cache() -> None:
    """For tests: drop the process-wide instance (a fresh one is built on next use)."""
    global _instance
    with _instance_lock:
        if _instance is not None:
            _instance.stop_purge_timer()
        _instance = None
