# =============================================
# File: chatfiles/services/extractor.py
# Purpose: Turn a fetched attachment into text usable as LLM context
# =============================================
from __future__ import annotations
import io
import json
import os
from typing import Callable, Optional

import requests
from loguru import logger

CODE_EXTENSIONS = {
    "js", "ts", "jsx", "tsx", "py", "java", "cpp", "c", "cs",
    "php", "rb", "go", "rs", "swift", "kt",
}


class ExtractionError(RuntimeError):
    pass


class ExtractionTimeout(ExtractionError):
    pass


def _timeout_s() -> float:
    try:
        return float(os.getenv("EXTRACT_TIMEOUT_SECONDS", "10"))
    except ValueError:
        return 10.0


def http_fetch(url: str) -> bytes:
    """Default fetcher: plain GET with a timeout."""
    try:
        resp = requests.get(url, timeout=_timeout_s())
    except requests.Timeout as e:
        raise ExtractionTimeout(f"Timed out fetching file: {e}")
    except requests.RequestException as e:
        raise ExtractionError(f"Failed to fetch file: {e}")
    if not resp.ok:
        raise ExtractionError(f"Failed to fetch file: {resp.status_code} {resp.reason}")
    return resp.content


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


def _extension(name: str) -> str:
    if "." not in (name or ""):
        return ""
    return name.rsplit(".", 1)[1].lower()


def _pdf_text(raw: bytes, name: str) -> str:
    from pypdf import PdfReader

    try:
        reader = PdfReader(io.BytesIO(raw))
        pages = [(page.extract_text() or "").strip() for page in reader.pages]
    except Exception as e:
        logger.warning(f"[extract] pdf parse failed name={name}: {e}")
        pages = []
    text = "\n\n".join(p for p in pages if p)
    if not text:
        return f"PDF file: {name}\n[No extractable text found in PDF]"
    return text


def extract_file_content(
    url: str,
    name: str,
    media_type: str,
    fetch: Optional[Callable[[str], bytes]] = None,
) -> str:
    """
    Fetch `url` and return a text representation of the file:
      text/*            -> the text itself
      application/json  -> pretty-printed JSON (raw text if it does not parse)
      image/*           -> descriptive placeholder (vision models consume the image itself)
      application/pdf   -> extracted page text, or a placeholder
      code extensions   -> fenced code block
      anything else     -> decoded text
    Raises ExtractionTimeout / ExtractionError.
    """
    fetch = fetch or http_fetch
    media_type = (media_type or "").lower()
    try:
        raw = fetch(url)
    except ExtractionError:
        raise
    except Exception as e:
        raise ExtractionError(f"Failed to process file {name}: {e}")

    if media_type.startswith("text/"):
        return _decode(raw)

    if media_type == "application/json":
        text = _decode(raw)
        try:
            return json.dumps(json.loads(text), indent=2, ensure_ascii=False)
        except ValueError:
            return text

    if media_type.startswith("image/"):
        size_kb = round(len(raw) / 1024)
        return (
            f"Image file: {name}\nType: {media_type}\nSize: {size_kb}KB\n"
            "[Image content cannot be extracted as text, but can be processed by vision models]"
        )

    if media_type == "application/pdf":
        return _pdf_text(raw, name)

    ext = _extension(name)
    if ext in CODE_EXTENSIONS:
        return f"Code file ({ext}): {name}\n```{ext}\n{_decode(raw)}\n```"

    return _decode(raw)
