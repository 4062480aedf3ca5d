# =============================================
# File: chatfiles/services/refill.py
# Purpose: Resolve a stored file to cached content (cache hit, or sign -> stat -> extract -> set)
# =============================================
from __future__ import annotations
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from loguru import logger

from chatfiles.services.activity import ErrorCategory, log_error
from chatfiles.services.blob_store import BlobStoreError, ObjectNotFoundError, get_blob_store
from chatfiles.services.extractor import ExtractionTimeout, extract_file_content
from chatfiles.services.file_cache import (
    SIGNED_URL_TTL_SECONDS,
    CacheEntry,
    FileContentCache,
    file_id_from_path,
    get_file_cache,
    make_key,
)
from chatfiles.utils import metrics
from chatfiles.utils.timing import timer

DEFAULT_CONTENT_TYPE = "application/octet-stream"
SLOW_REFILL_MS = 2000


# ---------------------------------------------------------------------
# Per-file failures
# ---------------------------------------------------------------------

class RefillError(RuntimeError):
    """A single file could not be resolved; callers turn it into a per-file error descriptor."""
    category = ErrorCategory.FILE_SYSTEM_ERROR
    public_message = "Failed to retrieve file"

    def __init__(self, storage_path: str, detail: str = "") -> None:
        super().__init__(detail or self.public_message)
        self.storage_path = storage_path
        self.detail = detail

    def as_dict(self) -> Dict[str, str]:
        return {"storagePath": self.storage_path, "error": self.public_message}


class OwnershipError(RefillError):
    category = ErrorCategory.STORAGE_ACCESS_DENIED
    public_message = "Access denied: File does not belong to user"


class InvalidPathError(RefillError):
    category = ErrorCategory.FILE_NOT_FOUND
    public_message = "Invalid storage path"


class SignedUrlError(RefillError):
    category = ErrorCategory.SIGNED_URL_GENERATION_FAILED
    public_message = "Failed to generate access URL"


class FileNotFoundInStorage(RefillError):
    category = ErrorCategory.FILE_NOT_FOUND
    public_message = "File not found in storage"


class RefillTimeout(RefillError):
    category = ErrorCategory.REFILL_TIMEOUT
    public_message = "Timed out fetching file content"


def failed_extraction_placeholder(name: str) -> str:
    return f"[Failed to extract content from {name}]"


def check_ownership(user_id: str, storage_path: str) -> None:
    """Paths are <userId>/<chatId>/<fileId>; anything else is rejected before cache or storage."""
    if not user_id or not (storage_path or "").startswith(f"{user_id}/"):
        raise OwnershipError(storage_path)


# ---------------------------------------------------------------------
# Single-flight: concurrent misses on one key share a single refill
# ---------------------------------------------------------------------

class SingleFlight:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: Dict[str, Future] = {}

    def do(self, key: str, fn: Callable[[], Any]) -> Tuple[Any, bool]:
        """Return (result, shared). Followers block on the leader's outcome, errors included."""
        with self._lock:
            fut = self._calls.get(key)
            leader = fut is None
            if leader:
                fut = Future()
                self._calls[key] = fut
        if not leader:
            metrics.record_dedup_wait()
            return fut.result(), True
        try:
            result = fn()
        except BaseException as e:
            fut.set_exception(e)
            raise
        else:
            fut.set_result(result)
            return result, False
        finally:
            with self._lock:
                self._calls.pop(key, None)

    def in_flight(self) -> int:
        with self._lock:
            return len(self._calls)


_flights = SingleFlight()


# ---------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------

@dataclass
class Resolved:
    entry: CacheEntry
    cached: bool


def _fail(err: RefillError, user_id: str, chat_id: str, detail: str) -> RefillError:
    logger.warning(f"[refill] {err.category.value} path={err.storage_path}: {detail}")
    metrics.record_refill_error(err.category.value)
    log_error(
        err.category,
        detail or err.public_message,
        user_id=user_id,
        details={"chatId": chat_id, "storagePath": err.storage_path},
    )
    return err


def _refill(
    cache: FileContentCache,
    store,
    extract: Callable[..., str],
    user_id: str,
    chat_id: str,
    file_id: str,
    storage_path: str,
    file_name: str,
    content_type: Optional[str],
    size: Optional[int],
    uploaded_at: Optional[str],
) -> CacheEntry:
    with timer("refill", warn_ms=SLOW_REFILL_MS) as elapsed:
        try:
            signed_url = store.create_signed_url(storage_path, SIGNED_URL_TTL_SECONDS)
        except ObjectNotFoundError as e:
            raise _fail(FileNotFoundInStorage(storage_path, str(e)), user_id, chat_id, str(e))
        except BlobStoreError as e:
            raise _fail(SignedUrlError(storage_path, str(e)), user_id, chat_id, str(e))

        if content_type is None or size is None or not uploaded_at:
            try:
                info = store.stat(storage_path)
            except BlobStoreError as e:
                raise _fail(FileNotFoundInStorage(storage_path, str(e)), user_id, chat_id, str(e))
            content_type = content_type or info.content_type
            size = info.size if size is None else size
            uploaded_at = uploaded_at or info.created_at
        content_type = content_type or DEFAULT_CONTENT_TYPE

        extraction_failed = False
        try:
            content = extract(signed_url, file_name, content_type, fetch=store.fetch)
        except ExtractionTimeout as e:
            # Nothing is cached; the next request retries
            raise _fail(RefillTimeout(storage_path, str(e)), user_id, chat_id, str(e))
        except Exception as e:
            logger.error(f"[refill] extraction failed name={file_name}: {e}")
            log_error(
                ErrorCategory.FILE_PROCESSING_FAILED,
                str(e),
                user_id=user_id,
                details={"chatId": chat_id, "storagePath": storage_path, "fileId": file_id},
            )
            content = failed_extraction_placeholder(file_name)
            extraction_failed = True

        entry = CacheEntry.create(
            content=content,
            content_type=content_type,
            size=size or 0,
            file_name=file_name,
            storage_path=storage_path,
            signed_url=signed_url,
            chat_id=chat_id,
            user_id=user_id,
            uploaded_at=uploaded_at,
        )
        cache.set(user_id, chat_id, file_id, entry)
    metrics.record_refill(elapsed(), extraction_failed=extraction_failed)
    return entry


def resolve_file(
    user_id: str,
    chat_id: str,
    storage_path: str,
    *,
    file_name: Optional[str] = None,
    content_type: Optional[str] = None,
    size: Optional[int] = None,
    uploaded_at: Optional[str] = None,
    cache: Optional[FileContentCache] = None,
    store=None,
    extract: Optional[Callable[..., str]] = None,
) -> Resolved:
    """
    Cache-first resolution of one stored file.
    Metadata the caller already knows (from a message attachment) skips the stat call.
    Raises a RefillError subclass when the file cannot be resolved.
    """
    check_ownership(user_id, storage_path)
    file_id = file_id_from_path(storage_path)
    if not file_id:
        raise InvalidPathError(storage_path)

    if cache is None:
        cache = get_file_cache()
    hit = cache.get(user_id, chat_id, file_id)
    metrics.record_cache_lookup(hit is not None)
    if hit is not None:
        logger.debug(f"[refill] cache hit {file_id}")
        return Resolved(entry=hit, cached=True)

    logger.debug(f"[refill] cache miss {file_id}, fetching from storage")
    if store is None:
        store = get_blob_store()
    extract = extract or extract_file_content
    flight_key = f"{id(cache)}|{make_key(user_id, chat_id, file_id)}"
    entry, _ = _flights.do(
        flight_key,
        lambda: _refill(
            cache, store, extract, user_id, chat_id, file_id, storage_path,
            file_name or file_id, content_type, size, uploaded_at,
        ),
    )
    return Resolved(entry=entry, cached=False)


def cache_uploaded_file(
    user_id: str,
    chat_id: str,
    storage_path: str,
    file_name: str,
    content_type: str,
    size: int,
    signed_url: str,
    content: str,
    uploaded_at: Optional[str] = None,
    cache: Optional[FileContentCache] = None,
) -> CacheEntry:
    """Write-through after an upload: the content is already extracted, so no refill."""
    check_ownership(user_id, storage_path)
    entry = CacheEntry.create(
        content=content,
        content_type=content_type,
        size=size,
        file_name=file_name,
        storage_path=storage_path,
        signed_url=signed_url,
        chat_id=chat_id,
        user_id=user_id,
        uploaded_at=uploaded_at,
    )
    if cache is None:
        cache = get_file_cache()
    cache.set(user_id, chat_id, file_id_from_path(storage_path), entry)
    return entry
