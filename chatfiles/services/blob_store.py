# =============================================
# File: chatfiles/services/blob_store.py
# Purpose: Object storage for chat attachments with time-limited signed URLs
# =============================================
from __future__ import annotations
import hashlib
import hmac
import json
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Protocol
from urllib.parse import parse_qs, quote, unquote, urlparse

from loguru import logger

_DEFAULT_SIGNING_KEY = "dev-only-signing-key-change-me"
_META_SUFFIX = ".meta.json"


class BlobStoreError(RuntimeError):
    """Storage backend refused or failed an operation."""


class ObjectNotFoundError(BlobStoreError):
    pass


class InvalidSignatureError(BlobStoreError):
    pass


@dataclass
class ObjectInfo:
    path: str
    size: int
    content_type: Optional[str] = None
    created_at: Optional[str] = None  # ISO-8601, None when the backend has no record


class BlobStore(Protocol):
    def upload(self, path: str, data: bytes, content_type: str) -> ObjectInfo: ...

    def create_signed_url(self, path: str, expires_in: int) -> str: ...

    def stat(self, path: str) -> ObjectInfo: ...

    def remove(self, paths: Iterable[str]) -> List[str]: ...

    def fetch(self, url: str) -> bytes: ...


def _clean_path(path: str) -> str:
    p = (path or "").strip()
    if not p or p.startswith("/") or "\\" in p:
        raise BlobStoreError(f"Invalid storage path: {path!r}")
    parts = p.split("/")
    if any(seg in ("", ".", "..") for seg in parts):
        raise BlobStoreError(f"Invalid storage path: {path!r}")
    if p.endswith(_META_SUFFIX):
        raise BlobStoreError(f"Reserved storage path: {path!r}")
    return p


class LocalBlobStore:
    """
    Filesystem-backed store.
    - Objects live under root/<path>, with a JSON sidecar holding content type + creation time.
    - Signed URLs: <base_url>/files/blob/<path>?expires=<epoch s>&signature=<hmac-sha256>
    """

    def __init__(self, root: str, signing_key: str, base_url: str) -> None:
        self.root = Path(root)
        self._key = signing_key.encode("utf-8")
        self.base_url = base_url.rstrip("/")
        self._lock = threading.Lock()

    # -- paths --

    def _file(self, path: str) -> Path:
        return self.root / _clean_path(path)

    def _meta_file(self, path: str) -> Path:
        return self.root / (_clean_path(path) + _META_SUFFIX)

    def _read_meta(self, path: str) -> dict:
        # Malformed sidecars count as "no metadata", never as a failure
        try:
            with open(self._meta_file(path), "r", encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except (OSError, ValueError):
            return {}

    # -- signing --

    def _sign(self, path: str, expires: int) -> str:
        msg = f"{path}:{expires}".encode("utf-8")
        return hmac.new(self._key, msg, hashlib.sha256).hexdigest()

    def verify(self, path: str, expires: int, signature: str, now: Optional[float] = None) -> None:
        clean = _clean_path(path)
        current = time.time() if now is None else now
        if int(expires) < current:
            raise InvalidSignatureError("Signed URL expired")
        if not hmac.compare_digest(self._sign(clean, int(expires)), signature or ""):
            raise InvalidSignatureError("Invalid signature")

    def create_signed_url(self, path: str, expires_in: int) -> str:
        clean = _clean_path(path)
        if not self._file(clean).is_file():
            raise ObjectNotFoundError(f"Object not found: {clean}")
        expires = int(time.time()) + int(expires_in)
        sig = self._sign(clean, expires)
        return f"{self.base_url}/files/blob/{quote(clean)}?expires={expires}&signature={sig}"

    def parse_signed_url(self, url: str) -> tuple[str, int, str]:
        parsed = urlparse(url)
        marker = "/files/blob/"
        if marker not in parsed.path:
            raise InvalidSignatureError("Not a blob URL")
        path = unquote(parsed.path.split(marker, 1)[1])
        qs = parse_qs(parsed.query)
        try:
            expires = int(qs["expires"][0])
            signature = qs["signature"][0]
        except (KeyError, IndexError, ValueError):
            raise InvalidSignatureError("Missing signature parameters")
        return path, expires, signature

    # -- objects --

    def upload(self, path: str, data: bytes, content_type: str) -> ObjectInfo:
        target = self._file(path)
        created_at = datetime.now(timezone.utc).isoformat()
        with self._lock:
            if target.exists():
                raise BlobStoreError(f"Object already exists: {path}")
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(target.name + ".tmp")
            tmp.write_bytes(data)
            os.replace(tmp, target)
            with open(self._meta_file(path), "w", encoding="utf-8") as f:
                json.dump({"content_type": content_type, "created_at": created_at}, f)
        return ObjectInfo(path=path, size=len(data), content_type=content_type, created_at=created_at)

    def stat(self, path: str) -> ObjectInfo:
        target = self._file(path)
        if not target.is_file():
            raise ObjectNotFoundError(f"Object not found: {path}")
        meta = self._read_meta(path)
        return ObjectInfo(
            path=path,
            size=target.stat().st_size,
            content_type=meta.get("content_type") or None,
            created_at=meta.get("created_at") or None,
        )

    def read(self, path: str) -> bytes:
        target = self._file(path)
        if not target.is_file():
            raise ObjectNotFoundError(f"Object not found: {path}")
        return target.read_bytes()

    def remove(self, paths: Iterable[str]) -> List[str]:
        removed: List[str] = []
        with self._lock:
            for path in paths:
                target = self._file(path)
                try:
                    target.unlink()
                except FileNotFoundError:
                    continue
                except OSError as e:
                    raise BlobStoreError(f"Failed to remove {path}: {e}")
                self._meta_file(path).unlink(missing_ok=True)
                removed.append(path)
        logger.info(f"[blob_store] removed {len(removed)} object(s)")
        return removed

    def fetch(self, url: str) -> bytes:
        """Resolve one of our own signed URLs without a network round-trip."""
        path, expires, signature = self.parse_signed_url(url)
        self.verify(path, expires, signature)
        return self.read(path)


# ---------------------------------------------------------------------
# Process-wide accessor
# ---------------------------------------------------------------------

_store: Optional[LocalBlobStore] = None
_store_lock = threading.Lock()


def get_blob_store() -> LocalBlobStore:
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                _store = LocalBlobStore(
                    root=os.getenv("BLOB_STORE_DIR", "store/blobs"),
                    signing_key=os.getenv("BLOB_SIGNING_KEY", _DEFAULT_SIGNING_KEY),
                    base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
                )
    return _store


def reset_blob_store() -> None:
    """For tests: rebuild from env on next access."""
    global _store
    with _store_lock:
        _store = None
