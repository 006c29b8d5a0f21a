"""Shared test fixtures for the upload relay tests.

The object store is replaced by :class:`FakeS3Client`, an in-memory stand-in
for the six boto3 ``s3`` calls the relay makes, so tests can check stored
bytes without network access or credentials.
"""
import hashlib
import itertools
import threading
import time
from typing import Dict, List, Optional

import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient

from upload_relay.uploads.assembler import Assembler
from upload_relay.uploads.backend import S3ObjectStore
from upload_relay.uploads.chunk_store import ChunkStore
from upload_relay.uploads.coordinator import BackendUploadCoordinator
from upload_relay.uploads.key_resolver import KeyResolver
from upload_relay.uploads.reaper import Reaper, set_reaper
from upload_relay.uploads.registry import SessionRegistry
from upload_relay.uploads.service import UploadService, set_upload_service

MiB = 1024 * 1024
CDN = "https://cdn.example.com"


def client_error(code: str, status: int, operation: str = "HeadObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class FakeS3Client:
    """In-memory S3 client recording every call it receives."""

    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.uploads: Dict[str, Dict] = {}
        self.completed_parts: List[List[int]] = []
        self.part_completion_order: List[int] = []
        self.aborted: List[str] = []
        self.calls: List[str] = []

        # Failure / timing knobs
        self.head_error: Optional[Exception] = None
        self.put_error: Optional[Exception] = None
        self.fail_part: Optional[int] = None
        self.abort_error: Optional[Exception] = None
        self.part_delays: Dict[int, float] = {}

        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _record(self, name: str) -> None:
        with self._lock:
            self.calls.append(name)

    def head_object(self, Bucket, Key):
        self._record("head_object")
        if self.head_error is not None:
            raise self.head_error
        if Key not in self.objects:
            raise client_error("404", 404)
        return {"ContentLength": len(self.objects[Key])}

    def put_object(self, Bucket, Key, Body, ContentType):
        self._record("put_object")
        if self.put_error is not None:
            raise self.put_error
        data = Body.read() if hasattr(Body, "read") else bytes(Body)
        self.objects[Key] = data
        self.content_types[Key] = ContentType
        return {"ETag": f'"{hashlib.md5(data).hexdigest()}"'}

    def create_multipart_upload(self, Bucket, Key, ContentType):
        self._record("create_multipart_upload")
        upload_id = f"mpu-{next(self._ids)}"
        self.uploads[upload_id] = {"key": Key, "content_type": ContentType, "parts": {}}
        return {"UploadId": upload_id}

    def upload_part(self, Bucket, Key, UploadId, PartNumber, Body):
        self._record("upload_part")
        delay = self.part_delays.get(PartNumber)
        if delay:
            time.sleep(delay)
        if self.fail_part == PartNumber:
            raise client_error("InternalError", 500, "UploadPart")
        with self._lock:
            self.uploads[UploadId]["parts"][PartNumber] = bytes(Body)
            self.part_completion_order.append(PartNumber)
        return {"ETag": f'"etag-{PartNumber}"'}

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        self._record("complete_multipart_upload")
        upload = self.uploads.pop(UploadId)
        numbers = [part["PartNumber"] for part in MultipartUpload["Parts"]]
        self.completed_parts.append(numbers)
        self.objects[Key] = b"".join(upload["parts"][n] for n in numbers)
        self.content_types[Key] = upload["content_type"]
        return {"ETag": f'"multipart-{len(numbers)}"'}

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        self._record("abort_multipart_upload")
        if self.abort_error is not None:
            raise self.abort_error
        self.uploads.pop(UploadId, None)
        self.aborted.append(UploadId)


@pytest.fixture
def fake_s3() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def store(fake_s3) -> S3ObjectStore:
    return S3ObjectStore(bucket="test-bucket", cdn_base_url=CDN, client=fake_s3)


@pytest.fixture
def make_service(tmp_path, store):
    """Factory building an UploadService over *store* with tunable limits."""

    def _make(
        max_chunk_size: int = 15 * MiB,
        single_shot_threshold: int = 25 * MiB,
        part_size: int = 25 * MiB,
        max_workers: int = 4,
        legacy_max_file_size: int = 2 * 1024 * MiB,
        legacy_max_files: int = 10,
    ) -> UploadService:
        chunk_store = ChunkStore(str(tmp_path / "chunks"), max_chunk_size=max_chunk_size)
        return UploadService(
            registry=SessionRegistry(),
            chunk_store=chunk_store,
            assembler=Assembler(chunk_store, str(tmp_path / "spool")),
            resolver=KeyResolver(store),
            coordinator=BackendUploadCoordinator(
                store,
                single_shot_threshold=single_shot_threshold,
                part_size=part_size,
                max_workers=max_workers,
            ),
            legacy_max_file_size=legacy_max_file_size,
            legacy_max_files=legacy_max_files,
        )

    return _make


@pytest.fixture
def service(make_service) -> UploadService:
    return make_service()


@pytest.fixture
def api_client(make_service):
    """TestClient over the app with a small-limit service and reaper installed."""
    from upload_relay.main import app

    service = make_service(
        max_chunk_size=1024,
        single_shot_threshold=64,
        part_size=32,
        legacy_max_file_size=4096,
        legacy_max_files=3,
    )
    reaper = Reaper(
        registry=service.registry,
        chunk_store=service.chunk_store,
        session_timeout=3600,
        max_orphan_age=600,
    )
    set_upload_service(service)
    set_reaper(reaper)
    try:
        yield TestClient(app)
    finally:
        set_upload_service(None)
        set_reaper(None)
