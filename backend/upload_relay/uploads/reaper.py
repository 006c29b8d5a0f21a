"""Background reclamation of abandoned sessions and stray chunk payloads.

Two passes per sweep:

1. Sessions older than ``session_timeout`` (and not being completed) are
   removed from the registry and lose their chunk payloads.
2. Payload files on disk that no live session references and that are older
   than ``max_orphan_age`` are deleted.  These appear when a chunk lands just
   as its session is removed, when an index is overwritten, or after a crash.

The periodic task starts after a short grace delay and is cancelled when the
application shuts down.  A sweep can also be triggered by hand.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from fastapi.concurrency import run_in_threadpool

from .chunk_store import ChunkStore
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

_reaper: Optional["Reaper"] = None


def get_reaper() -> Optional["Reaper"]:
    """Return the global Reaper, or None if not yet initialised."""
    return _reaper


def set_reaper(reaper: Optional["Reaper"]) -> None:
    """Set (or replace) the global Reaper instance."""
    global _reaper
    _reaper = reaper


@dataclass(frozen=True)
class SweepReport:
    expired_sessions: int = 0
    deleted_chunks: int = 0
    orphans_deleted: int = 0


class Reaper:
    """Expires stale sessions and deletes orphaned chunk payloads."""

    def __init__(
        self,
        registry: SessionRegistry,
        chunk_store: ChunkStore,
        session_timeout: float,
        max_orphan_age: float,
        interval: float = 3600,
        start_delay: float = 30,
    ) -> None:
        self._registry = registry
        self._chunk_store = chunk_store
        self._session_timeout = session_timeout
        self._max_orphan_age = max_orphan_age
        self._interval = interval
        self._start_delay = start_delay
        self._task: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic sweep task."""
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "Reaper started (timeout=%ss, orphan_age=%ss, interval=%ss)",
            self._session_timeout, self._max_orphan_age, self._interval,
        )

    async def stop(self) -> None:
        """Cancel the periodic sweep task."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Reaper stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Sweeping
    # ------------------------------------------------------------------

    async def _sweep_loop(self) -> None:
        await asyncio.sleep(self._start_delay)
        while True:
            try:
                await run_in_threadpool(self.sweep)
            except Exception:
                logger.exception("Reaper sweep failed; retrying next interval")
            await asyncio.sleep(self._interval)

    def sweep(self, now: Optional[float] = None) -> SweepReport:
        """Run both passes once and report what was reclaimed."""
        now = now if now is not None else time.time()

        expired = 0
        deleted_chunks = 0
        for candidate in self._registry.list_expired(now, self._session_timeout):
            # Re-checked under the registry lock; a completion may have started.
            session = self._registry.expire(candidate.id, now, self._session_timeout)
            if session is None:
                continue
            expired += 1
            deleted_chunks += self._chunk_store.delete_many(session.chunks.values())
            logger.info(
                "Expired session %s (%s, %d chunk(s), age=%.0fs)",
                session.id, session.original_file_name, len(session.chunks), session.age(now),
            )

        referenced = self._registry.referenced_locations()
        orphans = 0
        for payload in self._chunk_store.list_payloads():
            if payload.location in referenced or payload.age(now) <= self._max_orphan_age:
                continue
            if self._chunk_store.delete_payload(payload):
                orphans += 1

        self._chunk_store.prune_empty_dirs()

        report = SweepReport(
            expired_sessions=expired,
            deleted_chunks=deleted_chunks,
            orphans_deleted=orphans,
        )
        if expired or orphans:
            logger.info(
                "Reaper sweep: %d session(s) expired, %d chunk(s) deleted, %d orphan(s) deleted",
                expired, deleted_chunks, orphans,
            )
        return report
