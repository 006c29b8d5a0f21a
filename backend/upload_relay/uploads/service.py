"""UploadService: orchestrates the chunked and legacy upload paths.

Three-phase chunked protocol::

    init      -> registry.create
    chunk     -> chunk_store.put, registry.attach_chunk
    complete  -> registry.begin_completion, assembler.assemble,
                 key_resolver.resolve, coordinator.upload,
                 chunk cleanup, registry.end_completion

A failed ``complete`` leaves the session and its chunk payloads in place so
the client can simply call ``complete`` again.  Chunks are only deleted once
the object is committed.

Blocking work (disk I/O, object store calls) runs in FastAPI's thread pool so
only the requesting task waits on it.

A module-level instance is initialised in ``upload_relay/main.py`` from
config.
"""
import logging
from typing import BinaryIO, List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool

from .assembler import Assembler
from .chunk_store import ChunkStore
from .coordinator import BackendUploadCoordinator
from .errors import AssemblyIOError, InvalidRequest, SessionNotFound, UploadError
from .key_resolver import KeyResolver
from .registry import SessionRegistry, generate_stored_file_name
from .schemas import (
    DEFAULT_CONTENT_TYPE,
    ChunkResult,
    CompleteResult,
    InitResult,
    LegacyFile,
    LegacyFileOutcome,
    UploadSession,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_service: Optional["UploadService"] = None


def get_upload_service() -> Optional["UploadService"]:
    """Return the global UploadService, or None if not yet initialised."""
    return _service


def set_upload_service(service: Optional["UploadService"]) -> None:
    """Set (or replace) the global UploadService instance."""
    global _service
    _service = service


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class UploadService:
    """Ties the registry, chunk store, assembler, resolver and coordinator together.

    Args:
        registry:             Session table (passed in, never global).
        chunk_store:          Transient chunk payload storage.
        assembler:            Chunk-to-object reassembly.
        resolver:             Collision-free key resolution.
        coordinator:          Object store upload driver.
        default_user_id:      Prefix used when a client sends no user id.
        legacy_max_file_size: Largest file accepted on the legacy path.
        legacy_max_files:     Most files accepted in one legacy request.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        chunk_store: ChunkStore,
        assembler: Assembler,
        resolver: KeyResolver,
        coordinator: BackendUploadCoordinator,
        default_user_id: str = "guest",
        legacy_max_file_size: int = 2 * 1024 * 1024 * 1024,
        legacy_max_files: int = 10,
    ) -> None:
        self._registry = registry
        self._chunk_store = chunk_store
        self._assembler = assembler
        self._resolver = resolver
        self._coordinator = coordinator
        self._default_user_id = default_user_id
        self._legacy_max_file_size = legacy_max_file_size
        self._legacy_max_files = legacy_max_files

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def chunk_store(self) -> ChunkStore:
        return self._chunk_store

    # -----------------------------------------------------------------------
    # Chunked protocol
    # -----------------------------------------------------------------------

    async def init(
        self,
        file_name: str,
        file_size: int,
        user_id: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> InitResult:
        """Open a new upload session.

        Raises:
            InvalidRequest: Missing file name or negative size.
        """
        if not file_name:
            raise InvalidRequest("fileName is required")
        if file_size is None or file_size < 0:
            raise InvalidRequest("fileSize must be a non-negative integer")

        session_id, stored_file_name = self._registry.create(
            original_file_name=file_name,
            declared_size=file_size,
            user_id=user_id or self._default_user_id,
            content_type=content_type,
        )
        return InitResult(upload_id=session_id, final_file_name=stored_file_name)

    async def chunk(self, session_id: str, index: int, payload: BinaryIO) -> ChunkResult:
        """Persist one chunk and attach it to its session.

        Raises:
            InvalidRequest: Negative chunk index.
            SessionNotFound: Unknown or expired session; the payload is discarded.
            CompletionInProgress: The session is being committed; the payload
                is discarded.
            ChunkTooLarge: Payload above the per-chunk limit.
        """
        if index < 0:
            raise InvalidRequest("chunkIndex must be a non-negative integer")
        if not session_id or not session_id.isalnum():
            raise SessionNotFound(session_id)

        ref = await run_in_threadpool(self._chunk_store.put, session_id, index, payload)
        try:
            count, replaced = self._registry.attach_chunk(session_id, index, ref)
        except UploadError:
            # Nobody owns this payload now; reclaim it straight away.
            await run_in_threadpool(self._chunk_store.delete, ref)
            raise

        if replaced is not None:
            logger.info("Chunk %d of session %s was re-sent; dropping previous payload", index, session_id)
            await run_in_threadpool(self._chunk_store.delete, replaced)

        logger.info("Received chunk %d for upload %s (%d bytes)", index, session_id, ref.size)
        return ChunkResult(chunk_index=index, received_chunks=count)

    async def complete(self, session_id: str) -> CompleteResult:
        """Assemble the session's chunks and commit them to the object store.

        Raises:
            SessionNotFound: Unknown or expired session.  No store call is made.
            CompletionInProgress: A completion for this session is running.
            AssemblyIOError / ResolutionExhausted / BackendUploadFailed: The
                session is kept for a retry.
        """
        session = self._registry.begin_completion(session_id)
        logger.info("Completing upload %s with %d chunk(s)", session_id, len(session.chunks))

        committed = False
        try:
            result = await run_in_threadpool(self._commit, session)
            committed = True
        except UploadError as exc:
            logger.error("Completing upload %s failed: %s", session_id, exc)
            raise
        finally:
            self._registry.end_completion(session_id, committed)

        await run_in_threadpool(self._discard_chunks, session)
        logger.info(
            "Successfully completed chunked upload: %s -> %s",
            session.original_file_name, result.object_key,
        )
        return result

    def _commit(self, session: UploadSession) -> CompleteResult:
        assembled = self._assembler.assemble(session)
        try:
            key = self._resolver.resolve(session.user_id, session.stored_file_name)
            try:
                source = assembled.open()
            except OSError as exc:
                raise AssemblyIOError(f"Failed to reopen assembled file: {exc}") from exc
            with source:
                outcome = self._coordinator.upload(source, assembled.size, key, session.content_type)
        finally:
            assembled.discard()

        return CompleteResult(
            user_id=session.user_id,
            original_file_name=session.original_file_name,
            final_file_name=_file_name_of(key, session.user_id),
            object_key=outcome.key,
            file_size=assembled.size,
            url=self._coordinator.store.public_url(outcome.key),
        )

    def _discard_chunks(self, session: UploadSession) -> None:
        self._chunk_store.delete_many(session.chunks.values())
        self._chunk_store.prune_session(session.id)

    # -----------------------------------------------------------------------
    # Legacy single-shot path
    # -----------------------------------------------------------------------

    async def legacy_upload(
        self,
        user_id: Optional[str],
        files: List[LegacyFile],
    ) -> Tuple[str, List[LegacyFileOutcome]]:
        """Upload whole files without a session.

        Files are processed one after another and each failure is captured
        in that file's outcome, so some files may land while others fail.

        Returns:
            The effective user id and one outcome per input file.

        Raises:
            InvalidRequest: No files, or more than ``legacy_max_files``.
        """
        if not files:
            raise InvalidRequest("No files selected")
        if len(files) > self._legacy_max_files:
            raise InvalidRequest(
                f"Too many files ({len(files)}); at most {self._legacy_max_files} per request"
            )

        user_id = user_id or self._default_user_id
        logger.info("Starting upload of %d file(s) for user: %s", len(files), user_id)

        outcomes: List[LegacyFileOutcome] = []
        for item in files:
            try:
                outcome = await run_in_threadpool(self._legacy_one, user_id, item)
            except UploadError as exc:
                logger.error("Error uploading file %s: %s", item.file_name, exc)
                outcome = _failed(item, exc.kind, exc.message)
            except Exception as exc:
                logger.exception("Unexpected error uploading file %s", item.file_name)
                outcome = _failed(item, UploadError.kind, str(exc))
            outcomes.append(outcome)
        return user_id, outcomes

    def _legacy_one(self, user_id: str, item: LegacyFile) -> LegacyFileOutcome:
        if item.size > self._legacy_max_file_size:
            raise InvalidRequest(
                f"File size ({item.size} bytes) exceeds limit ({self._legacy_max_file_size} bytes)"
            )

        stored_file_name = generate_stored_file_name(item.file_name)
        key = self._resolver.resolve(user_id, stored_file_name)
        content_type = item.content_type or DEFAULT_CONTENT_TYPE
        outcome = self._coordinator.upload(item.payload, item.size, key, content_type)

        logger.info("Successfully uploaded: %s -> %s", item.file_name, key)
        return LegacyFileOutcome(
            original_file_name=item.file_name,
            success=True,
            final_file_name=_file_name_of(key, user_id),
            object_key=outcome.key,
            url=self._coordinator.store.public_url(outcome.key),
            file_size=item.size,
            content_type=content_type,
        )


def _file_name_of(key: str, user_id: str) -> str:
    return key[len(user_id) + 1:]


def _failed(item: LegacyFile, kind: str, message: str) -> LegacyFileOutcome:
    return LegacyFileOutcome(
        original_file_name=item.file_name,
        success=False,
        file_size=item.size,
        content_type=item.content_type,
        error_kind=kind,
        error=message,
    )
