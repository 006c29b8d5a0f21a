"""Data models for the chunked upload protocol.

Two kinds of model live here:

- Internal state (plain dataclasses): ``UploadSession`` and ``ChunkRef`` as
  held by the session registry, plus the result objects the orchestrator
  returns.
- Wire schemas (pydantic): request and response bodies of the HTTP surface.
  Field names are camelCase because that is what the browser uploader sends.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Union

from pydantic import BaseModel, Field

DEFAULT_CONTENT_TYPE = "application/octet-stream"


# =============================================================================
# Internal state
# =============================================================================


class SessionState(str, Enum):
    """Lifecycle of an upload session.

    A freshly created session is RECEIVING (zero chunks is a valid state).
    FAILED sessions keep their chunks and may be completed again.
    """
    RECEIVING = "receiving"
    COMPLETING = "completing"
    COMMITTED = "committed"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ChunkRef:
    """Handle to one persisted chunk payload."""
    location: Path
    size: int


@dataclass
class UploadSession:
    """Server-side record of an in-progress chunked upload."""
    id: str
    user_id: str
    original_file_name: str
    stored_file_name: str
    declared_size: int
    content_type: str = DEFAULT_CONTENT_TYPE
    chunks: Dict[int, ChunkRef] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    state: SessionState = SessionState.RECEIVING

    @property
    def received_bytes(self) -> int:
        return sum(ref.size for ref in self.chunks.values())

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.created_at

    def ordered_chunks(self) -> List[ChunkRef]:
        return [self.chunks[index] for index in sorted(self.chunks)]


@dataclass(frozen=True)
class InitResult:
    upload_id: str
    final_file_name: str


@dataclass(frozen=True)
class ChunkResult:
    chunk_index: int
    received_chunks: int


@dataclass(frozen=True)
class CompleteResult:
    user_id: str
    original_file_name: str
    final_file_name: str
    object_key: str
    file_size: int
    url: str


@dataclass(frozen=True)
class LegacyFile:
    """One whole-file submission on the legacy path.

    *payload* is either the raw bytes or a binary handle positioned at the
    start of the file; *size* is its length in bytes.
    """
    file_name: str
    payload: Union[bytes, BinaryIO]
    size: int
    content_type: str = DEFAULT_CONTENT_TYPE


@dataclass(frozen=True)
class LegacyFileOutcome:
    """Per-file result of a legacy upload; ``error`` is set on failure."""
    original_file_name: str
    success: bool
    final_file_name: Optional[str] = None
    object_key: Optional[str] = None
    url: Optional[str] = None
    file_size: int = 0
    content_type: str = DEFAULT_CONTENT_TYPE
    error_kind: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# Wire schemas
# =============================================================================


class InitRequest(BaseModel):
    """Body of POST /upload/init."""
    fileName: str = Field(..., min_length=1, description="Client-side file name")
    fileSize: int = Field(..., ge=0, description="Declared total size in bytes (advisory)")
    userId: Optional[str] = Field(default=None, description="Folder prefix; defaults to guest")
    contentType: Optional[str] = Field(default=None, description="MIME type of the file")


class InitResponse(BaseModel):
    success: bool = True
    uploadId: str
    finalFileName: str


class ChunkResponse(BaseModel):
    success: bool = True
    chunkIndex: int
    receivedChunks: int


class CompleteRequest(BaseModel):
    """Body of POST /upload/complete."""
    uploadId: str = Field(..., min_length=1)


class CompleteResponse(BaseModel):
    success: bool = True
    userId: str
    originalFileName: str
    finalFileName: str
    objectKey: str
    fileSize: int
    url: str


class LegacyFileResult(BaseModel):
    success: bool = True
    userId: str
    originalFileName: str
    finalFileName: str
    objectKey: str
    url: str
    fileSize: int
    mimeType: str


class LegacyFileError(BaseModel):
    success: bool = False
    fileName: str
    error: str
    message: str


class LegacySummary(BaseModel):
    total: int
    successful: int
    failed: int


class LegacyUploadResponse(BaseModel):
    """Per-file outcome list; ``success`` is true when at least one file landed."""
    success: bool
    userId: str
    summary: LegacySummary
    files: List[LegacyFileResult] = Field(default_factory=list)
    errors: List[LegacyFileError] = Field(default_factory=list)


class SweepResponse(BaseModel):
    success: bool = True
    expiredSessions: int
    deletedChunks: int
    orphansDeleted: int


class SessionSummary(BaseModel):
    uploadId: str
    userId: str
    originalFileName: str
    state: SessionState
    receivedChunks: int
    receivedBytes: int
    declaredSize: int
    ageSeconds: float


class StorageResponse(BaseModel):
    activeSessions: int
    chunkFiles: int
    chunkBytes: int
    sessions: List[SessionSummary] = Field(default_factory=list)
