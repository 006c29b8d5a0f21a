"""Collision-free object key resolution.

Given ``{user_id}/{name}``, probe the store and, while the key is taken,
append ``_1``, ``_2``, … to the file stem until a free key is found.

Known race: a probe that fails for any reason other than "not found"
(network error, throttling, 5xx) is treated as "free" so uploads keep
flowing while the store is flaky.  Two concurrent uploads of the same name
under such errors can therefore both target one key, and the store's
last-write-wins semantics decide which survives.
"""
import logging
from pathlib import PurePosixPath
from typing import Tuple

from .backend import S3ObjectStore
from .errors import ResolutionExhausted

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 1000


def split_file_name(file_name: str) -> Tuple[str, str]:
    """Split ``a.tar.gz`` into ``("a.tar", ".gz")``; names without a dot get ``""``."""
    path = PurePosixPath(file_name)
    return path.stem, path.suffix


class KeyResolver:
    """Finds a key under a user prefix that does not exist yet."""

    def __init__(self, store: S3ObjectStore, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        self._store = store
        self._max_attempts = max_attempts

    def resolve(self, user_id: str, candidate_file_name: str) -> str:
        """Return a free ``{user_id}/{file_name}`` key.

        Raises:
            ResolutionExhausted: Every one of ``max_attempts`` probes hit an
                existing object.
        """
        stem, extension = split_file_name(candidate_file_name)
        file_name = candidate_file_name

        for attempt in range(self._max_attempts):
            if attempt:
                file_name = f"{stem}_{attempt}{extension}"
            key = f"{user_id}/{file_name}"
            if not self._exists(key):
                if attempt:
                    logger.info("Resolved %s/%s to %s", user_id, candidate_file_name, key)
                return key

        raise ResolutionExhausted(f"{user_id}/{candidate_file_name}", self._max_attempts)

    def _exists(self, key: str) -> bool:
        try:
            return self._store.object_exists(key)
        except Exception as exc:
            logger.warning("Existence probe for %s failed, assuming it is free: %s", key, exc)
            return False
