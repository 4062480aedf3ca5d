# chatfiles/routers/files.py
from __future__ import annotations

import os
import time
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import Response
from loguru import logger
from pydantic import BaseModel, Field, field_validator

from chatfiles.services import blob_store as blobs
from chatfiles.services.activity import (
    ActivityCategory,
    ActivityType,
    ErrorCategory,
    ErrorType,
    log_error,
    log_user_activity,
)
from chatfiles.services.extractor import extract_file_content
from chatfiles.services.file_cache import SIGNED_URL_TTL_SECONDS, file_id_from_path, get_file_cache
from chatfiles.services.file_context import build_file_context, get_file_context_summary
from chatfiles.services.refill import (
    OwnershipError,
    RefillError,
    cache_uploaded_file,
    check_ownership,
    failed_extraction_placeholder,
    resolve_file,
)
from chatfiles.utils.auth import require_admin, require_auth

router = APIRouter(tags=["files"])

MAX_BATCH = 50

ALLOWED_FILE_TYPES = {
    # Code
    "text/x-python", "application/x-python-code", "text/x-python-script",
    "application/javascript", "text/javascript", "application/x-javascript",
    "application/typescript", "text/typescript",
    "text/html", "text/css", "application/json", "application/xml", "text/xml",
    "application/sql", "text/x-sql",
    # Text
    "text/plain", "text/markdown", "text/x-yaml", "application/x-yaml", "text/yaml",
    "text/csv", "text/tab-separated-values",
    # Documents
    "application/pdf",
    # Images
    "image/png", "image/jpeg", "image/gif", "image/webp",
}


def _max_upload_bytes() -> int:
    """Read at call time so tests/env overrides take effect."""
    try:
        return int(os.getenv("MAX_UPLOAD_BYTES", "10485760"))
    except ValueError:
        return 10485760


def _validate_chat_id(v: str) -> str:
    v = (v or "").strip()
    try:
        uuid.UUID(v)
    except ValueError:
        raise ValueError("Invalid chat ID")
    return v


# --------- Schemas ---------

class RetrieveRequest(BaseModel):
    """
    Batch retrieval payload.
    - chatId: chat the files belong to (UUID).
    - storagePaths: 1..50 blob paths of the form <userId>/<chatId>/<fileId>.
    """
    chatId: str
    storagePaths: List[str] = Field(..., min_length=1, max_length=MAX_BATCH)

    @field_validator("chatId")
    @classmethod
    def _check_chat_id(cls, v: str) -> str:
        return _validate_chat_id(v)


class RetrievedFile(BaseModel):
    content: str
    contentType: str
    size: int
    fileName: str
    storagePath: str
    uploadedAt: str
    cached: bool


class FileError(BaseModel):
    storagePath: str
    error: str


class RetrieveSummary(BaseModel):
    requested: int
    retrieved: int
    failed: int


class RetrieveResponse(BaseModel):
    files: List[RetrievedFile]
    errors: Optional[List[FileError]] = None
    summary: RetrieveSummary


class DeleteRequest(BaseModel):
    storagePath: str = Field(..., min_length=1)
    chatId: str

    @field_validator("chatId")
    @classmethod
    def _check_chat_id(cls, v: str) -> str:
        return _validate_chat_id(v)


class DeleteResponse(BaseModel):
    success: bool
    message: str
    storagePath: str


class ContextRequest(BaseModel):
    chatId: str
    messages: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("chatId")
    @classmethod
    def _check_chat_id(cls, v: str) -> str:
        return _validate_chat_id(v)


class ContextResponse(BaseModel):
    context: str
    fileCount: int
    totalSize: int


class UploadResponse(BaseModel):
    fileName: str
    storagePath: str
    contentType: str
    size: int
    signedUrl: str
    uploadedAt: str
    expiresAt: int


class ClearRequest(BaseModel):
    chatId: Optional[str] = None


# --------- Routes ---------

@router.post("/files/upload", response_model=UploadResponse)
def upload_file(
    request: Request,
    file: UploadFile = File(...),
    chatId: str = Form(...),
    user_id: str = Depends(require_auth),
) -> UploadResponse:
    """
    Upload -> signed URL -> extract -> write-through cache.
    Extraction failures do not fail the upload; the placeholder is cached instead.
    """
    try:
        chat_id = _validate_chat_id(chatId)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    max_bytes = _max_upload_bytes()
    # One byte past the limit is enough to know the upload is too large
    data = file.file.read(max_bytes + 1)
    content_type = (file.content_type or "").split(";")[0].strip().lower()
    problem = None
    if not data:
        problem = (ErrorCategory.FILE_UPLOAD_FAILED, "File is empty")
    elif len(data) > max_bytes:
        problem = (ErrorCategory.FILE_TOO_LARGE, f"File size must be less than {max_bytes / 1024 / 1024:g}MB")
    elif content_type not in ALLOWED_FILE_TYPES:
        problem = (ErrorCategory.FILE_TYPE_NOT_SUPPORTED, "File type not supported")
    if problem:
        log_error(
            problem[0], problem[1], user_id=user_id, error_type=ErrorType.USER,
            details={"chatId": chat_id, "fileType": content_type, "fileSize": len(data)},
        )
        raise HTTPException(status_code=400, detail=problem[1])

    filename = (file.filename or "unnamed").replace("/", "_").replace("\\", "_")
    file_id = f"{int(time.time() * 1000)}-{filename}"
    storage_path = f"{user_id}/{chat_id}/{file_id}"
    request.state.log_context = {"user_id": user_id, "chat_id": chat_id, "storage_path": storage_path}

    store = blobs.get_blob_store()
    try:
        info = store.upload(storage_path, data, content_type)
    except blobs.BlobStoreError as e:
        log_error(ErrorCategory.FILE_UPLOAD_FAILED, str(e), user_id=user_id,
                  details={"chatId": chat_id, "storagePath": storage_path})
        raise HTTPException(status_code=500, detail="Failed to upload file")

    try:
        signed_url = store.create_signed_url(storage_path, SIGNED_URL_TTL_SECONDS)
    except blobs.BlobStoreError as e:
        log_error(ErrorCategory.SIGNED_URL_GENERATION_FAILED, str(e), user_id=user_id,
                  details={"chatId": chat_id, "storagePath": storage_path})
        raise HTTPException(status_code=500, detail="Failed to generate access URL")

    try:
        content = extract_file_content(signed_url, filename, content_type, fetch=store.fetch)
    except Exception as e:
        logger.error(f"[files] extraction failed on upload name={filename}: {e}")
        log_error(ErrorCategory.FILE_PROCESSING_FAILED, str(e), user_id=user_id,
                  details={"chatId": chat_id, "storagePath": storage_path, "filename": filename})
        content = failed_extraction_placeholder(filename)

    entry = cache_uploaded_file(
        user_id=user_id,
        chat_id=chat_id,
        storage_path=storage_path,
        file_name=filename,
        content_type=content_type,
        size=info.size,
        signed_url=signed_url,
        content=content,
        uploaded_at=info.created_at,
    )

    log_user_activity(
        user_id,
        ActivityType.FILE_UPLOAD,
        ActivityCategory.CHAT,
        resource_type="file_attachment",
        resource_id=storage_path,
        metadata={"filename": filename, "fileType": content_type, "fileSize": info.size, "chatId": chat_id},
    )
    return UploadResponse(
        fileName=filename,
        storagePath=storage_path,
        contentType=content_type,
        size=info.size,
        signedUrl=signed_url,
        uploadedAt=entry.uploaded_at,
        expiresAt=entry.expires_at,
    )


@router.post("/files/retrieve", response_model=RetrieveResponse, response_model_exclude_none=True)
def retrieve_files(req: RetrieveRequest, request: Request, user_id: str = Depends(require_auth)) -> RetrieveResponse:
    """
    Cache-first batch retrieval. Each path resolves independently:
    failures become entries in `errors` and never fail the whole batch.
    """
    files: List[RetrievedFile] = []
    errors: List[FileError] = []
    hits = 0

    for storage_path in req.storagePaths:
        try:
            res = resolve_file(user_id, req.chatId, storage_path)
        except RefillError as e:
            errors.append(FileError(**e.as_dict()))
            continue
        except Exception as e:
            logger.exception(f"[files] unexpected error for {storage_path}: {e}")
            errors.append(FileError(storagePath=storage_path, error=str(e) or "Unknown error"))
            continue
        hits += int(res.cached)
        f = res.entry
        files.append(RetrievedFile(
            content=f.content,
            contentType=f.content_type,
            size=f.size,
            fileName=f.file_name,
            storagePath=f.storage_path,
            uploadedAt=f.uploaded_at,
            cached=res.cached,
        ))

    request.state.log_context = {
        "user_id": user_id,
        "chat_id": req.chatId,
        "files_requested": len(req.storagePaths),
        "cache_hits": hits,
    }
    log_user_activity(
        user_id,
        ActivityType.FILE_DOWNLOAD,
        ActivityCategory.CHAT,
        resource_type="file_attachment",
        resource_id=req.chatId,
        success=len(files) > 0,
        metadata={
            "chatId": req.chatId,
            "filesRequested": len(req.storagePaths),
            "filesRetrieved": len(files),
            "filesFailed": len(errors),
        },
    )
    return RetrieveResponse(
        files=files,
        errors=errors or None,
        summary=RetrieveSummary(requested=len(req.storagePaths), retrieved=len(files), failed=len(errors)),
    )


@router.delete("/files/delete", response_model=DeleteResponse)
def delete_file(req: DeleteRequest, request: Request, user_id: str = Depends(require_auth)) -> DeleteResponse:
    """Remove the blob, then drop its cached content so it is never served orphaned."""
    request.state.log_context = {"user_id": user_id, "chat_id": req.chatId, "storage_path": req.storagePath}
    try:
        check_ownership(user_id, req.storagePath)
    except OwnershipError as e:
        log_error(ErrorCategory.STORAGE_ACCESS_DENIED, "Attempted to delete file not owned by user",
                  user_id=user_id, error_type=ErrorType.PERMISSION,
                  details={"storagePath": req.storagePath, "chatId": req.chatId})
        raise HTTPException(status_code=403, detail=e.public_message)

    try:
        blobs.get_blob_store().remove([req.storagePath])
    except blobs.BlobStoreError as e:
        log_error(ErrorCategory.FILE_SYSTEM_ERROR, str(e), user_id=user_id,
                  details={"storagePath": req.storagePath, "chatId": req.chatId})
        raise HTTPException(status_code=500, detail="Failed to delete file")

    file_id = file_id_from_path(req.storagePath)
    if file_id:
        get_file_cache().delete(user_id, req.chatId, file_id)
        logger.info(f"[files] cleared from cache: {file_id}")

    log_user_activity(
        user_id,
        ActivityType.FILE_DELETE,
        ActivityCategory.FILE,
        resource_type="file_attachment",
        resource_id=req.storagePath,
        metadata={"storagePath": req.storagePath, "chatId": req.chatId},
    )
    return DeleteResponse(success=True, message="File deleted successfully", storagePath=req.storagePath)


@router.post("/files/context", response_model=ContextResponse)
def file_context(req: ContextRequest, request: Request, user_id: str = Depends(require_auth)) -> ContextResponse:
    """Formatted file block for the chat's generation context."""
    count, total = get_file_context_summary(req.messages)
    request.state.log_context = {"user_id": user_id, "chat_id": req.chatId, "file_count": count}
    context = build_file_context(req.messages, req.chatId, user_id)
    return ContextResponse(context=context, fileCount=count, totalSize=total)


@router.get("/files/blob/{path:path}")
def download_blob(path: str, expires: int = Query(...), signature: str = Query(...)) -> Response:
    """Signed download; the URL itself is the credential."""
    store = blobs.get_blob_store()
    try:
        store.verify(path, expires, signature)
        data = store.read(path)
        info = store.stat(path)
    except blobs.InvalidSignatureError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except blobs.ObjectNotFoundError:
        raise HTTPException(status_code=404, detail="File not found")
    except blobs.BlobStoreError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return Response(content=data, media_type=info.content_type or "application/octet-stream")


@router.get("/files/cached")
def list_cached(chatId: str, user_id: str = Depends(require_auth)) -> Dict[str, Any]:
    """Metadata (no content) of the caller's cached files in one chat."""
    return {"chatId": chatId, "files": get_file_cache().metadata_by_chat(user_id, chatId)}


@router.post("/files/cache/clear")
def clear_cached(req: ClearRequest, user_id: str = Depends(require_auth)) -> Dict[str, Any]:
    cache = get_file_cache()
    if req.chatId:
        cleared = cache.clear_chat(user_id, req.chatId)
    else:
        cleared = cache.clear_user(user_id)
    return {"cleared": cleared}


@router.get("/files/cache/stats")
def cache_stats(_: str = Depends(require_admin)) -> Dict[str, int]:
    return get_file_cache().stats().as_dict()


@router.post("/files/cache/purge")
def cache_purge(_: str = Depends(require_admin)) -> Dict[str, int]:
    return {"purged": get_file_cache().purge_expired()}
