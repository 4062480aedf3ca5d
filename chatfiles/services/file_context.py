# =============================================
# File: chatfiles/services/file_context.py
# Purpose: Build the "uploaded files" block of LLM context from chat message attachments
# =============================================
from __future__ import annotations
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from chatfiles.services.file_cache import FileContentCache, format_file_size
from chatfiles.services.refill import OwnershipError, RefillError, failed_extraction_placeholder, resolve_file

PDF_PREVIEW_CHARS = 1000
OTHER_PREVIEW_CHARS = 500

_TEXT_LIKE_MARKERS = ("json", "javascript", "typescript", "python", "xml", "html", "css", "sql")

_LANG_BY_TYPE = {
    "text/x-python": "python",
    "application/x-python-code": "python",
    "application/javascript": "javascript",
    "text/javascript": "javascript",
    "application/typescript": "typescript",
    "text/typescript": "typescript",
    "text/html": "html",
    "text/css": "css",
    "application/json": "json",
    "application/xml": "xml",
    "text/xml": "xml",
    "application/sql": "sql",
    "text/x-sql": "sql",
    "text/markdown": "markdown",
    "text/x-yaml": "yaml",
    "text/csv": "csv",
    "text/plain": "text",
}

_EXT_RE = re.compile(r"\.([a-z0-9]+)$", re.IGNORECASE)


def _to_int(value: Any, field: str = "size") -> int:
    """Lenient non-negative int; unparseable values count as 0."""
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        logger.warning(f"[file_context] ignoring non-numeric attachment {field}={value!r}")
        return 0


@dataclass
class FileAttachment:
    name: str
    content_type: str
    size: int
    uploaded_at: str
    storage_path: str
    url: str = ""

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> Optional["FileAttachment"]:
        """Accept the camelCase shape stored on messages; None when unusable."""
        if not isinstance(raw, dict):
            return None
        storage_path = str(raw.get("storagePath") or raw.get("storage_path") or "").strip()
        if not storage_path:
            return None
        return cls(
            name=str(raw.get("name") or storage_path.split("/")[-1]),
            content_type=str(raw.get("contentType") or raw.get("content_type") or "application/octet-stream"),
            size=_to_int(raw.get("size")),
            uploaded_at=str(raw.get("uploadedAt") or raw.get("uploaded_at") or ""),
            storage_path=storage_path,
            url=str(raw.get("url") or ""),
        )


@dataclass
class FileWithContent:
    name: str
    content_type: str
    size: int
    content: str
    uploaded_at: str
    cached: bool


def _attachments(messages: Iterable[Dict[str, Any]]) -> List[FileAttachment]:
    out: List[FileAttachment] = []
    for msg in messages or []:
        atts = msg.get("attachments") if isinstance(msg, dict) else None
        if not isinstance(atts, list):
            continue
        for raw in atts:
            att = FileAttachment.from_dict(raw)
            if att is not None:
                out.append(att)
    return out


def get_file_context_summary(messages: Iterable[Dict[str, Any]]) -> Tuple[int, int]:
    """(file_count, total_size) over every attachment in the chat."""
    atts = _attachments(messages)
    return len(atts), sum(a.size for a in atts)


def get_file_extension(file_name: str, content_type: str) -> str:
    m = _EXT_RE.search(file_name or "")
    if m:
        return m.group(1)
    return _LANG_BY_TYPE.get(content_type, "text")


def _is_text_like(content_type: str) -> bool:
    return content_type.startswith("text/") or any(m in content_type for m in _TEXT_LIKE_MARKERS)


def _format_uploaded(uploaded_at: str) -> str:
    try:
        dt = datetime.fromisoformat(uploaded_at.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return uploaded_at or "unknown"
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def format_file_context(files: List[FileWithContent]) -> str:
    if not files:
        return ""

    parts = [
        "\n\n## Uploaded Files in This Conversation\n\n",
        "The following files have been uploaded in this conversation and are available for reference:\n\n",
    ]
    for index, f in enumerate(files, start=1):
        parts.append(f"### {index}. {f.name}\n")
        parts.append(f"- **Type**: {f.content_type}\n")
        parts.append(f"- **Size**: {format_file_size(f.size)}\n")
        parts.append(f"- **Uploaded**: {_format_uploaded(f.uploaded_at)}\n")

        if _is_text_like(f.content_type):
            ext = get_file_extension(f.name, f.content_type)
            parts.append(f"- **Content**:\n```{ext}\n{f.content}\n```\n\n")
        elif f.content_type.startswith("image/"):
            parts.append("- **Type**: Image file (visual analysis available)\n")
            parts.append("- **Note**: Image content has been processed for analysis\n\n")
        elif f.content_type == "application/pdf":
            if len(f.content) > PDF_PREVIEW_CHARS:
                preview = f"{f.content[:PDF_PREVIEW_CHARS]}...\n\n[Content truncated - full PDF available]"
            else:
                preview = f.content
            parts.append(f"- **Content** (extracted from PDF):\n```\n{preview}\n```\n\n")
        else:
            preview = f.content if len(f.content) <= OTHER_PREVIEW_CHARS else f"{f.content[:OTHER_PREVIEW_CHARS]}..."
            parts.append(f"- **Preview**:\n```\n{preview}\n```\n\n")

    parts.append(
        "---\n\n**Instructions**: You can reference these files in your responses. "
        "Analyze the content, answer questions about them, or use them as context for your answers.\n\n"
    )
    return "".join(parts)


def resolve_attachments(
    messages: Iterable[Dict[str, Any]],
    chat_id: str,
    user_id: str,
    cache: Optional[FileContentCache] = None,
    store=None,
    extract=None,
) -> List[FileWithContent]:
    files: List[FileWithContent] = []
    for att in _attachments(messages):
        try:
            res = resolve_file(
                user_id,
                chat_id,
                att.storage_path,
                file_name=att.name,
                content_type=att.content_type,
                size=att.size,
                uploaded_at=att.uploaded_at or None,
                cache=cache,
                store=store,
                extract=extract,
            )
        except OwnershipError:
            logger.warning(f"[file_context] skipping foreign attachment path={att.storage_path}")
            continue
        except RefillError as e:
            # Keep the file visible to the model even when its content is unavailable
            logger.warning(f"[file_context] {e.public_message} path={att.storage_path}")
            files.append(FileWithContent(
                name=att.name,
                content_type=att.content_type,
                size=att.size,
                content=failed_extraction_placeholder(att.name),
                uploaded_at=att.uploaded_at,
                cached=False,
            ))
            continue
        e = res.entry
        files.append(FileWithContent(
            name=e.file_name,
            content_type=e.content_type,
            size=e.size,
            content=e.content,
            uploaded_at=e.uploaded_at,
            cached=res.cached,
        ))
    return files


def build_file_context(
    messages: Iterable[Dict[str, Any]],
    chat_id: str,
    user_id: str,
    cache: Optional[FileContentCache] = None,
    store=None,
    extract=None,
) -> str:
    """
    Resolve every attachment in the chat (cache first, refill on miss) and
    format them as one markdown block. Returns "" when there is nothing to show.
    """
    messages = list(messages or [])
    files = resolve_attachments(messages, chat_id, user_id, cache=cache, store=store, extract=extract)
    return format_file_context(files)
