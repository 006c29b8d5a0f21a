"""Error taxonomy for the upload coordinator.

Every failure surfaced to a caller is an :class:`UploadError` with a stable
``kind`` string, a human-readable ``message`` and the HTTP status the router
should answer with.  Cleanup failures are never raised as these; they are
logged and suppressed where they happen.
"""
from typing import Any, Dict, Optional


class UploadError(Exception):
    """Base class for all upload coordinator failures."""

    kind: str = "UploadError"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.kind}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.kind, "message": self.message}


class InvalidRequest(UploadError):
    """A required field is missing or malformed."""
    kind = "InvalidRequest"
    status_code = 400


class SessionNotFound(UploadError):
    """The upload session id is unknown, already completed, or expired."""
    kind = "SessionNotFound"
    status_code = 404

    def __init__(self, session_id: str) -> None:
        super().__init__(
            "Upload session not found",
            details={"upload_id": session_id},
        )
        self.session_id = session_id


class CompletionInProgress(UploadError):
    """Another ``complete`` call for the same session is still running."""
    kind = "CompletionInProgress"
    status_code = 409

    def __init__(self, session_id: str) -> None:
        super().__init__(
            "Upload session is already being completed",
            details={"upload_id": session_id},
        )
        self.session_id = session_id


class ChunkTooLarge(UploadError):
    """A chunk payload exceeded the per-chunk safety limit."""
    kind = "ChunkTooLarge"
    status_code = 413

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"Chunk exceeds the maximum size of {limit} bytes",
            details={"limit": limit},
        )
        self.limit = limit


class ResolutionExhausted(UploadError):
    """No free object key was found within the probe budget."""
    kind = "ResolutionExhausted"
    status_code = 500

    def __init__(self, candidate_key: str, attempts: int) -> None:
        super().__init__(
            f"Could not find a free key for {candidate_key} after {attempts} attempts",
            details={"key": candidate_key, "attempts": attempts},
        )


class BackendUploadFailed(UploadError):
    """The object store rejected the upload; nothing was committed."""
    kind = "BackendUploadFailed"
    status_code = 500


class AssemblyIOError(UploadError):
    """Chunk payloads could not be written, read, or spooled into one object."""
    kind = "AssemblyIOError"
    status_code = 500


__all__ = [
    "UploadError",
    "InvalidRequest",
    "SessionNotFound",
    "CompletionInProgress",
    "ChunkTooLarge",
    "ResolutionExhausted",
    "BackendUploadFailed",
    "AssemblyIOError",
]
