"""Disk-backed storage for individual chunk payloads.

Payloads are written to ``{root}/{session_id}/{index:06d}-{token}.part``.
Every ``put`` creates a new file, so re-sending an index never clobbers a
payload another request may still be reading; the replaced file is simply no
longer referenced and gets deleted by the orchestrator or the orphan sweep.
"""
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, Tuple

from .errors import AssemblyIOError, ChunkTooLarge
from .schemas import ChunkRef

logger = logging.getLogger(__name__)

# Read/write granularity for payload streaming.
BLOCK_SIZE = 1024 * 1024

PAYLOAD_SUFFIX = ".part"

# Tries at creating a payload file whose directory a sweep may prune.
OPEN_ATTEMPTS = 3


@dataclass(frozen=True)
class StoredPayload:
    """A payload file found on disk, as seen by the orphan sweep."""
    location: Path
    size: int
    modified_at: float

    def age(self, now: float) -> float:
        return now - self.modified_at


class OrderedChunkStream:
    """Lazy concatenation of chunk payloads in the order given.

    Iterating yields blocks of at most ``block_size`` bytes.  Each call to
    ``iter()`` starts again from the first chunk.
    """

    def __init__(self, refs: List[ChunkRef], block_size: int = BLOCK_SIZE) -> None:
        self._refs = list(refs)
        self._block_size = block_size

    @property
    def total_size(self) -> int:
        return sum(ref.size for ref in self._refs)

    def __iter__(self) -> Iterator[bytes]:
        for ref in self._refs:
            try:
                with open(ref.location, "rb") as fh:
                    while True:
                        block = fh.read(self._block_size)
                        if not block:
                            break
                        yield block
            except OSError as exc:
                raise AssemblyIOError(
                    f"Failed to read chunk payload {ref.location.name}: {exc}"
                ) from exc


class ChunkStore:
    """Persists chunk payloads keyed by (session id, chunk index)."""

    def __init__(self, root_dir: str, max_chunk_size: int) -> None:
        self._root = Path(root_dir)
        self._max_chunk_size = max_chunk_size
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def max_chunk_size(self) -> int:
        return self._max_chunk_size

    def put(self, session_id: str, index: int, payload: BinaryIO) -> ChunkRef:
        """Stream *payload* to disk and return a reference to it.

        Raises:
            ChunkTooLarge: The payload exceeds ``max_chunk_size``.  Nothing is
                left on disk.
            ValueError: *session_id* is not a plain token.
            AssemblyIOError: The payload file could not be created.
        """
        if not session_id.isalnum():
            raise ValueError(f"Malformed session id: {session_id!r}")
        session_dir = self._root / session_id
        location = session_dir / f"{index:06d}-{secrets.token_hex(4)}{PAYLOAD_SUFFIX}"

        size = 0
        try:
            with self._open_for_write(location) as out:
                while True:
                    block = payload.read(BLOCK_SIZE)
                    if not block:
                        break
                    size += len(block)
                    if size > self._max_chunk_size:
                        raise ChunkTooLarge(self._max_chunk_size)
                    out.write(block)
        except BaseException:
            self._unlink(location)
            raise

        logger.debug("Stored chunk %d of %s at %s (%d bytes)", index, session_id, location, size)
        return ChunkRef(location=location, size=size)

    def read_ordered(self, refs: List[ChunkRef]) -> OrderedChunkStream:
        """Return a restartable stream over *refs*, which must already be in index order."""
        return OrderedChunkStream(refs)

    def delete(self, ref: ChunkRef) -> bool:
        """Delete one payload.  Failures are logged, never raised."""
        return self._unlink(ref.location)

    def delete_many(self, refs: Iterable[ChunkRef]) -> int:
        return sum(1 for ref in refs if self.delete(ref))

    def delete_payload(self, payload: StoredPayload) -> bool:
        return self._unlink(payload.location)

    # ------------------------------------------------------------------
    # Sweep support
    # ------------------------------------------------------------------

    def list_payloads(self) -> List[StoredPayload]:
        """Every payload file currently on disk."""
        payloads: List[StoredPayload] = []
        for path in self._root.glob(f"*/*{PAYLOAD_SUFFIX}"):
            try:
                stat = path.stat()
            except FileNotFoundError:
                # Deleted between glob and stat.
                continue
            payloads.append(StoredPayload(location=path, size=stat.st_size, modified_at=stat.st_mtime))
        return payloads

    def usage(self) -> Tuple[int, int]:
        """Return ``(payload_count, total_bytes)``."""
        payloads = self.list_payloads()
        return len(payloads), sum(p.size for p in payloads)

    def prune_session(self, session_id: str) -> bool:
        """Remove the session directory if no payloads remain in it."""
        return self._prune_dir(self._root / session_id)

    def prune_empty_dirs(self) -> int:
        removed = 0
        for entry in self._root.iterdir():
            if entry.is_dir() and self._prune_dir(entry):
                removed += 1
        return removed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _open_for_write(location: Path) -> BinaryIO:
        """Create the payload file, recreating its session directory if needed.

        Raises:
            AssemblyIOError: The directory was gone again (pruned by a
                concurrent sweep) on every attempt.
        """
        for _ in range(OPEN_ATTEMPTS):
            try:
                return open(location, "wb")
            except FileNotFoundError:
                # Session directory missing or pruned by a concurrent sweep.
                location.parent.mkdir(parents=True, exist_ok=True)
        raise AssemblyIOError(
            f"Could not create chunk payload {location.name} after {OPEN_ATTEMPTS} attempts"
        )

    @staticmethod
    def _unlink(location: Path) -> bool:
        try:
            location.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("Failed to delete chunk payload %s: %s", location, exc)
            return False

    def _prune_dir(self, directory: Path) -> bool:
        if directory == self._root:
            return False
        try:
            directory.rmdir()
            return True
        except OSError:
            # Not empty (other chunks still live) or already gone.
            return False
