"""In-memory registry of chunked upload sessions.

The registry is the single source of truth for which sessions exist and which
chunks belong to them.  It is the only component allowed to mutate a
session's chunk map.

Thread Safety:
    All state sits behind one ``threading.Lock``.  Critical sections are
    dictionary operations only (no I/O), so request handlers running in the
    thread pool and the reaper can share one instance.  Callers always receive
    copies of sessions, never the live records, so iterating a result while
    other requests attach chunks is safe.
"""
import dataclasses
import logging
import secrets
import threading
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from .errors import CompletionInProgress, SessionNotFound
from .schemas import DEFAULT_CONTENT_TYPE, ChunkRef, SessionState, UploadSession

logger = logging.getLogger(__name__)

# Bytes of randomness behind session ids and stored file names (hex encoded).
TOKEN_BYTES = 16


def generate_stored_file_name(original_file_name: str) -> str:
    """Return a random file name that keeps the original extension."""
    extension = Path(original_file_name).suffix
    return f"{secrets.token_hex(TOKEN_BYTES)}{extension}"


def _copy(session: UploadSession) -> UploadSession:
    return dataclasses.replace(session, chunks=dict(session.chunks))


class SessionRegistry:
    """Thread-safe table of upload sessions keyed by session id."""

    def __init__(self, default_user_id: str = "guest") -> None:
        self._sessions: Dict[str, UploadSession] = {}
        self._completing: Set[str] = set()
        self._lock = threading.Lock()
        self._default_user_id = default_user_id

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(
        self,
        original_file_name: str,
        declared_size: int,
        user_id: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> Tuple[str, str]:
        """Register a new session and return ``(session_id, stored_file_name)``."""
        session = UploadSession(
            id=secrets.token_hex(TOKEN_BYTES),
            user_id=user_id or self._default_user_id,
            original_file_name=original_file_name,
            stored_file_name=generate_stored_file_name(original_file_name),
            declared_size=declared_size,
            content_type=content_type or DEFAULT_CONTENT_TYPE,
        )
        with self._lock:
            self._sessions[session.id] = session
        logger.info(
            "Session %s created for %s (user=%s, declared=%d bytes) -> %s",
            session.id,
            original_file_name,
            session.user_id,
            declared_size,
            session.stored_file_name,
        )
        return session.id, session.stored_file_name

    def attach_chunk(
        self,
        session_id: str,
        index: int,
        chunk_ref: ChunkRef,
    ) -> Tuple[int, Optional[ChunkRef]]:
        """Record *chunk_ref* as chunk *index* of the session.

        Returns the new chunk count and the payload this write replaced, if
        any (last write for an index wins; the replaced payload is no longer
        owned by anyone).

        Raises:
            SessionNotFound: The session does not exist.  The caller still
                owns the payload and must discard it.
            CompletionInProgress: The session is being committed.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if session_id in self._completing:
                raise CompletionInProgress(session_id)
            replaced = session.chunks.get(index)
            session.chunks[index] = chunk_ref
            count = len(session.chunks)
        logger.debug(
            "Chunk %d attached to session %s (%d bytes, %d chunks total)",
            index, session_id, chunk_ref.size, count,
        )
        return count, replaced

    def get(self, session_id: str) -> UploadSession:
        """Return a copy of the session.

        Raises:
            SessionNotFound: The session does not exist.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            return _copy(session)

    def remove(self, session_id: str) -> Optional[UploadSession]:
        """Drop the session (no-op if absent) and return what was removed.

        A session that is being completed is left alone; its outcome is
        settled by :meth:`end_completion`.
        """
        with self._lock:
            if session_id in self._completing:
                return None
            return self._sessions.pop(session_id, None)

    def list_expired(self, now: float, ttl: float) -> List[UploadSession]:
        """Return copies of sessions older than *ttl* seconds.

        Sessions currently being completed are never reported as expired.
        The result is only a candidate list; use :meth:`expire` to actually
        reclaim one.
        """
        with self._lock:
            return [
                _copy(session)
                for session_id, session in self._sessions.items()
                if session_id not in self._completing and session.age(now) > ttl
            ]

    def expire(self, session_id: str, now: float, ttl: float) -> Optional[UploadSession]:
        """Remove the session if it is still expired and not being completed.

        The check and the removal happen under one lock, so a ``complete``
        that started after :meth:`list_expired` keeps its session.  Returns
        the removed session (state EXPIRED), or None if it was kept.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session_id in self._completing or session.age(now) <= ttl:
                return None
            del self._sessions[session_id]
            session.state = SessionState.EXPIRED
            return _copy(session)

    # ------------------------------------------------------------------
    # Completion exclusivity
    # ------------------------------------------------------------------

    def begin_completion(self, session_id: str) -> UploadSession:
        """Mark the session as completing and return a snapshot of it.

        Raises:
            SessionNotFound: The session does not exist.
            CompletionInProgress: Another completion holds the marker.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if session_id in self._completing:
                raise CompletionInProgress(session_id)
            self._completing.add(session_id)
            session.state = SessionState.COMPLETING
            return _copy(session)

    def end_completion(self, session_id: str, committed: bool) -> None:
        """Release the completion marker.

        A committed session is removed; a failed one stays registered in the
        FAILED state so the client can retry ``complete``.
        """
        with self._lock:
            self._completing.discard(session_id)
            if committed:
                session = self._sessions.pop(session_id, None)
                if session is not None:
                    session.state = SessionState.COMMITTED
                return
            session = self._sessions.get(session_id)
            if session is not None:
                session.state = SessionState.FAILED

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def snapshot(self) -> List[UploadSession]:
        with self._lock:
            return [_copy(session) for session in self._sessions.values()]

    def referenced_locations(self) -> Set[Path]:
        """Every chunk payload location owned by a live session."""
        with self._lock:
            return {
                ref.location
                for session in self._sessions.values()
                for ref in session.chunks.values()
            }
