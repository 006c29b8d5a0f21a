"""FastAPI router for the upload endpoints.

Chunked protocol (large files, resumable chunk by chunk)::

    POST /upload/init       { fileName, fileSize, userId? }
    POST /upload/chunk      multipart: uploadId, chunkIndex, chunk
    POST /upload/complete   { uploadId }

Legacy single-request path::

    POST /upload            multipart: myfiles (1..N), user_id

Maintenance::

    POST /admin/cleanup     run one reaper sweep now
    GET  /admin/storage     sessions and chunk disk usage

Every :class:`UploadError` is answered with its own status code and a
``{"success": false, "error": kind, "message": ...}`` body.  Schema
violations are reported the same way as ``InvalidRequest`` (400), not as
FastAPI's default 422.
"""
import logging
import os
from typing import List, Optional

from fastapi import APIRouter, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .errors import InvalidRequest, UploadError
from .reaper import get_reaper
from .schemas import (
    DEFAULT_CONTENT_TYPE,
    ChunkResponse,
    CompleteRequest,
    CompleteResponse,
    InitRequest,
    InitResponse,
    LegacyFile,
    LegacyFileError,
    LegacyFileResult,
    LegacySummary,
    LegacyUploadResponse,
    SessionSummary,
    StorageResponse,
    SweepResponse,
)
from .service import UploadService, get_upload_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["uploads"])


def _require_service() -> UploadService:
    service = get_upload_service()
    if service is None:
        logger.warning("[uploads] No upload service configured")
        raise HTTPException(status_code=503, detail="Upload service not available")
    return service


# ---------------------------------------------------------------------------
# Chunked protocol
# ---------------------------------------------------------------------------


@router.post("/upload/init", response_model=InitResponse)
async def init_upload(request: InitRequest) -> InitResponse:
    """Open an upload session.

    Example::

        POST /upload/init
        { "fileName": "video.mp4", "fileSize": 26214400, "userId": "u1" }

        200 OK
        { "success": true, "uploadId": "9f2c…", "finalFileName": "3b1e….mp4" }
    """
    service = _require_service()
    result = await service.init(
        file_name=request.fileName,
        file_size=request.fileSize,
        user_id=request.userId,
        content_type=request.contentType,
    )
    return InitResponse(uploadId=result.upload_id, finalFileName=result.final_file_name)


@router.post("/upload/chunk", response_model=ChunkResponse)
async def upload_chunk(
    uploadId: Optional[str] = Form(None),
    chunkIndex: Optional[int] = Form(None),
    chunk: Optional[UploadFile] = File(None),
) -> ChunkResponse:
    """Store one chunk of an open session.

    Re-sending an index replaces the earlier payload for that index.
    """
    if chunk is None:
        raise InvalidRequest("No chunk received")
    if not uploadId or chunkIndex is None:
        raise InvalidRequest("uploadId and chunkIndex are required")

    service = _require_service()
    try:
        result = await service.chunk(uploadId, chunkIndex, chunk.file)
    finally:
        await chunk.close()
    return ChunkResponse(chunkIndex=result.chunk_index, receivedChunks=result.received_chunks)


@router.post("/upload/complete", response_model=CompleteResponse)
async def complete_upload(request: CompleteRequest) -> CompleteResponse:
    """Assemble the received chunks and commit the object.

    Example::

        POST /upload/complete
        { "uploadId": "9f2c…" }

        200 OK
        {
            "success": true,
            "userId": "u1",
            "originalFileName": "video.mp4",
            "finalFileName": "3b1e….mp4",
            "objectKey": "u1/3b1e….mp4",
            "fileSize": 26214400,
            "url": "https://cdn.example.com/u1/3b1e….mp4"
        }
    """
    service = _require_service()
    result = await service.complete(request.uploadId)
    return CompleteResponse(
        userId=result.user_id,
        originalFileName=result.original_file_name,
        finalFileName=result.final_file_name,
        objectKey=result.object_key,
        fileSize=result.file_size,
        url=result.url,
    )


# ---------------------------------------------------------------------------
# Legacy path
# ---------------------------------------------------------------------------


def _upload_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    handle = upload.file
    handle.seek(0, os.SEEK_END)
    size = handle.tell()
    handle.seek(0)
    return size


@router.post("/upload", response_model=LegacyUploadResponse)
async def legacy_upload(
    myfiles: Optional[List[UploadFile]] = File(None),
    user_id: Optional[str] = Form(None),
) -> LegacyUploadResponse:
    """Upload one or more whole files in a single request.

    Each file is reported on its own; the request succeeds when at least one
    file was stored.
    """
    service = _require_service()
    uploads = myfiles or []

    try:
        files = [
            LegacyFile(
                file_name=upload.filename or "unnamed",
                payload=upload.file,
                size=_upload_size(upload),
                content_type=upload.content_type or DEFAULT_CONTENT_TYPE,
            )
            for upload in uploads
        ]
        effective_user, outcomes = await service.legacy_upload(user_id, files)
    finally:
        for upload in uploads:
            await upload.close()

    results: List[LegacyFileResult] = []
    errors: List[LegacyFileError] = []
    for outcome in outcomes:
        if outcome.success:
            results.append(LegacyFileResult(
                userId=effective_user,
                originalFileName=outcome.original_file_name,
                finalFileName=outcome.final_file_name,
                objectKey=outcome.object_key,
                url=outcome.url,
                fileSize=outcome.file_size,
                mimeType=outcome.content_type,
            ))
        else:
            errors.append(LegacyFileError(
                fileName=outcome.original_file_name,
                error=outcome.error_kind or UploadError.kind,
                message=outcome.error or "",
            ))

    logger.info(
        "Legacy upload for %s: %d succeeded, %d failed",
        effective_user, len(results), len(errors),
    )
    return LegacyUploadResponse(
        success=bool(results),
        userId=effective_user,
        summary=LegacySummary(total=len(outcomes), successful=len(results), failed=len(errors)),
        files=results,
        errors=errors,
    )


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@router.post("/admin/cleanup", response_model=SweepResponse)
async def run_cleanup() -> SweepResponse:
    """Run one reaper sweep immediately and report what it reclaimed."""
    reaper = get_reaper()
    if reaper is None:
        raise HTTPException(status_code=503, detail="Reaper not available")

    report = await run_in_threadpool(reaper.sweep)
    return SweepResponse(
        expiredSessions=report.expired_sessions,
        deletedChunks=report.deleted_chunks,
        orphansDeleted=report.orphans_deleted,
    )


@router.get("/admin/storage", response_model=StorageResponse)
async def storage_info() -> StorageResponse:
    """Describe active sessions and the disk space their chunks occupy."""
    service = _require_service()
    chunk_files, chunk_bytes = await run_in_threadpool(service.chunk_store.usage)
    sessions = service.registry.snapshot()
    return StorageResponse(
        activeSessions=len(sessions),
        chunkFiles=chunk_files,
        chunkBytes=chunk_bytes,
        sessions=[
            SessionSummary(
                uploadId=session.id,
                userId=session.user_id,
                originalFileName=session.original_file_name,
                state=session.state,
                receivedChunks=len(session.chunks),
                receivedBytes=session.received_bytes,
                declaredSize=session.declared_size,
                ageSeconds=round(session.age(), 1),
            )
            for session in sessions
        ],
    )


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


async def _upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("[uploads] %s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({
        ".".join(str(part) for part in err["loc"][1:])
        for err in exc.errors()
        if len(err["loc"]) > 1
    })
    message = f"Invalid or missing fields: {', '.join(fields)}" if fields else "Invalid request"
    return JSONResponse(InvalidRequest(message).to_dict(), status_code=InvalidRequest.status_code)


def register_error_handlers(app: FastAPI) -> None:
    """Answer upload errors and schema violations with the JSON error body."""
    app.add_exception_handler(UploadError, _upload_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
