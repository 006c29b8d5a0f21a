"""Reassembles a session's chunks into one contiguous spool file.

Objects can be gigabytes, so the assembler never holds more than one read
block in memory: chunks are streamed in index order into a temporary file
under the spool directory, and the coordinator later streams that file to the
object store.
"""
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from .chunk_store import ChunkStore
from .errors import AssemblyIOError
from .schemas import UploadSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssembledObject:
    """A fully assembled object waiting on disk to be committed."""
    path: Path
    size: int

    def open(self) -> BinaryIO:
        return open(self.path, "rb")

    def discard(self) -> None:
        """Delete the spool file.  Failures are logged, never raised."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to delete spool file %s: %s", self.path, exc)


class Assembler:
    """Streams chunk payloads, ordered by index, into a spool file.

    Gaps in the index sequence are not an error: exactly the chunks present
    are concatenated.  The declared size is advisory, so a mismatch is only
    logged.
    """

    def __init__(self, chunk_store: ChunkStore, spool_dir: str) -> None:
        self._chunk_store = chunk_store
        self._spool_dir = Path(spool_dir)
        self._spool_dir.mkdir(parents=True, exist_ok=True)

    def assemble(self, session: UploadSession) -> AssembledObject:
        """Write the session's chunks to a spool file and return it.

        Raises:
            AssemblyIOError: A chunk could not be read or the spool file could
                not be written.  No spool file is left behind.
        """
        stream = self._chunk_store.read_ordered(session.ordered_chunks())

        try:
            spool = tempfile.NamedTemporaryFile(
                dir=self._spool_dir,
                prefix=f"{session.id}-",
                suffix=".assembled",
                delete=False,
            )
        except OSError as exc:
            raise AssemblyIOError(f"Failed to create spool file: {exc}") from exc

        path = Path(spool.name)
        total = 0
        try:
            with spool:
                for block in stream:
                    spool.write(block)
                    total += len(block)
        except AssemblyIOError:
            AssembledObject(path, total).discard()
            raise
        except OSError as exc:
            AssembledObject(path, total).discard()
            raise AssemblyIOError(f"Failed to write spool file: {exc}") from exc

        if total != session.declared_size:
            logger.warning(
                "Session %s assembled %d bytes but %d were declared",
                session.id, total, session.declared_size,
            )
        logger.info(
            "Assembled session %s from %d chunk(s) into %s (%d bytes)",
            session.id, len(session.chunks), path.name, total,
        )
        return AssembledObject(path=path, size=total)
