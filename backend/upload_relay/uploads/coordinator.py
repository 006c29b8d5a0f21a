"""Commits byte streams to the object store.

Small payloads go up in a single ``put_object``.  Anything above the
single-shot threshold uses the store's multipart protocol:

1. ``create_multipart_upload`` opens a transaction and yields an upload id.
2. The source is read sequentially in ``part_size`` slices.
3. Parts are uploaded on a small thread pool.  At most ``max_workers`` parts
   are buffered at any time, which bounds peak memory to roughly
   ``max_workers * part_size`` regardless of object size.
4. ETags are recorded by part number and submitted sorted, since the store
   orders parts by number and not by completion order.
5. On any failure the transaction is aborted (best-effort) and
   :class:`BackendUploadFailed` is raised.  Partial success is never
   reported.

This module is the only place that opens or commits multipart transactions.
"""
import io
import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import BinaryIO, Dict, Iterable, Set, Tuple, Union

from .backend import S3ObjectStore
from .errors import BackendUploadFailed

logger = logging.getLogger(__name__)

Source = Union[bytes, bytearray, BinaryIO]


@dataclass(frozen=True)
class UploadOutcome:
    key: str
    etag: str
    size: int
    parts: int = 1


class BackendUploadCoordinator:
    """Chooses single-shot or multipart upload and drives it to completion.

    Args:
        store:                 Object store client.
        single_shot_threshold: Largest size (bytes) uploaded with one put.
        part_size:             Multipart slice size; >= the store's minimum
                               for every part but the last.
        max_workers:           Parts uploaded concurrently.
    """

    def __init__(
        self,
        store: S3ObjectStore,
        single_shot_threshold: int,
        part_size: int,
        max_workers: int = 4,
    ) -> None:
        self._store = store
        self._threshold = single_shot_threshold
        self._part_size = part_size
        self._max_workers = max_workers

    @property
    def store(self) -> S3ObjectStore:
        return self._store

    def upload(self, source: Source, size: int, key: str, content_type: str) -> UploadOutcome:
        """Upload *size* bytes from *source* to *key*.

        *source* is either an in-memory buffer (legacy path) or a binary file
        handle positioned at the start of the payload.

        Raises:
            BackendUploadFailed: Nothing was committed.
        """
        if size <= self._threshold:
            return self._single_shot(source, size, key, content_type)

        stream = io.BytesIO(source) if isinstance(source, (bytes, bytearray)) else source
        return self._multipart(stream, size, key, content_type)

    # ------------------------------------------------------------------
    # Single shot
    # ------------------------------------------------------------------

    def _single_shot(self, source: Source, size: int, key: str, content_type: str) -> UploadOutcome:
        body = bytes(source) if isinstance(source, bytearray) else source
        try:
            etag = self._store.put_object(key, body, content_type)
        except Exception as exc:
            logger.error("Single-shot upload of %s failed: %s", key, exc)
            raise BackendUploadFailed(f"Upload of {key} failed: {exc}") from exc
        logger.info("Uploaded %s in one request (%d bytes)", key, size)
        return UploadOutcome(key=key, etag=etag, size=size)

    # ------------------------------------------------------------------
    # Multipart
    # ------------------------------------------------------------------

    def _multipart(self, stream: BinaryIO, size: int, key: str, content_type: str) -> UploadOutcome:
        try:
            upload_id = self._store.create_multipart_upload(key, content_type)
        except Exception as exc:
            logger.error("Could not open multipart upload for %s: %s", key, exc)
            raise BackendUploadFailed(f"Upload of {key} failed: {exc}") from exc

        logger.info(
            "Starting multipart upload %s for %s (%d bytes, part_size=%d)",
            upload_id, key, size, self._part_size,
        )

        try:
            etags, sent = self._upload_parts(stream, key, upload_id)
            if not etags:
                raise ValueError("source stream was empty")
            if sent != size:
                logger.warning("Multipart upload of %s sent %d bytes, expected %d", key, sent, size)
            parts = [
                {"PartNumber": number, "ETag": etags[number]}
                for number in sorted(etags)
            ]
            etag = self._store.complete_multipart_upload(key, upload_id, parts)
        except Exception as exc:
            logger.error("Multipart upload %s for %s failed: %s", upload_id, key, exc)
            self._abort(key, upload_id)
            raise BackendUploadFailed(f"Upload of {key} failed: {exc}") from exc

        logger.info("Multipart upload completed for %s (%d parts)", key, len(parts))
        return UploadOutcome(key=key, etag=etag, size=sent, parts=len(parts))

    def _upload_parts(self, stream: BinaryIO, key: str, upload_id: str) -> Tuple[Dict[int, str], int]:
        """Read and upload every part; return ETags by part number and bytes sent."""
        etags: Dict[int, str] = {}
        pending: Set[Future] = set()
        sent = 0
        part_number = 1

        pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="part-upload")
        try:
            while True:
                data = stream.read(self._part_size)
                if not data:
                    break
                pending.add(pool.submit(self._upload_part, key, upload_id, part_number, data))
                sent += len(data)
                part_number += 1

                if len(pending) >= self._max_workers:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    self._record(done, etags)

            done, pending = wait(pending)
            self._record(done, etags)
        except BaseException:
            for future in pending:
                future.cancel()
            raise
        finally:
            pool.shutdown(wait=True)

        return etags, sent

    def _upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> Tuple[int, str]:
        logger.debug("Uploading part %d of %s (%d bytes)", part_number, key, len(data))
        return part_number, self._store.upload_part(key, upload_id, part_number, data)

    @staticmethod
    def _record(done: Iterable[Future], etags: Dict[int, str]) -> None:
        for future in done:
            # Re-raises the part's exception, failing the whole upload.
            part_number, etag = future.result()
            etags[part_number] = etag

    def _abort(self, key: str, upload_id: str) -> None:
        try:
            self._store.abort_multipart_upload(key, upload_id)
            logger.info("Aborted multipart upload %s for %s", upload_id, key)
        except Exception:
            logger.exception("Failed to abort multipart upload %s for %s", upload_id, key)
