"""Chunked upload relay.

Accepts large files in chunks over HTTP, reassembles them on local disk and
commits each one to an S3-compatible object store under a collision-free
``{user_id}/{file_name}`` key.  A background reaper reclaims sessions that
were never completed.
"""
from .backend import S3ObjectStore
from .coordinator import BackendUploadCoordinator
from .errors import UploadError
from .reaper import Reaper, get_reaper, set_reaper
from .registry import SessionRegistry
from .service import UploadService, get_upload_service, set_upload_service

__all__ = [
    "S3ObjectStore",
    "BackendUploadCoordinator",
    "UploadError",
    "Reaper",
    "get_reaper",
    "set_reaper",
    "SessionRegistry",
    "UploadService",
    "get_upload_service",
    "set_upload_service",
]
