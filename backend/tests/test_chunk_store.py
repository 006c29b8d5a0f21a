"""Tests for chunk payload storage and in-order reassembly."""
import itertools
import os
import time
from io import BytesIO

import pytest

from upload_relay.uploads import chunk_store as chunk_store_module
from upload_relay.uploads.assembler import Assembler
from upload_relay.uploads.chunk_store import ChunkStore, OrderedChunkStream
from upload_relay.uploads.errors import AssemblyIOError, ChunkTooLarge
from upload_relay.uploads.schemas import ChunkRef, UploadSession

SID = "abc123"


@pytest.fixture
def chunk_store(tmp_path) -> ChunkStore:
    return ChunkStore(str(tmp_path / "chunks"), max_chunk_size=1024)


def _session(chunks, declared_size: int = 0) -> UploadSession:
    return UploadSession(
        id=SID,
        user_id="u",
        original_file_name="a.bin",
        stored_file_name="x.bin",
        declared_size=declared_size,
        chunks=dict(chunks),
    )


class TestPut:
    def test_put_writes_payload(self, chunk_store):
        ref = chunk_store.put(SID, 0, BytesIO(b"hello"))
        assert ref.size == 5
        assert ref.location.read_bytes() == b"hello"
        assert ref.location.parent.name == SID

    def test_put_same_index_creates_new_file(self, chunk_store):
        first = chunk_store.put(SID, 0, BytesIO(b"one"))
        second = chunk_store.put(SID, 0, BytesIO(b"two"))
        assert first.location != second.location
        assert first.location.read_bytes() == b"one"
        assert second.location.read_bytes() == b"two"

    def test_empty_payload(self, chunk_store):
        ref = chunk_store.put(SID, 3, BytesIO(b""))
        assert ref.size == 0

    def test_too_large_leaves_nothing(self, chunk_store):
        with pytest.raises(ChunkTooLarge) as exc_info:
            chunk_store.put(SID, 0, BytesIO(b"x" * 1025))
        assert exc_info.value.status_code == 413
        assert chunk_store.list_payloads() == []

    def test_exactly_at_limit_is_accepted(self, chunk_store):
        assert chunk_store.put(SID, 0, BytesIO(b"x" * 1024)).size == 1024

    @pytest.mark.parametrize("bad_id", ["../etc", "a/b", ""])
    def test_malformed_session_id(self, chunk_store, bad_id):
        with pytest.raises(ValueError):
            chunk_store.put(bad_id, 0, BytesIO(b"x"))

    def test_put_recreates_pruned_directory(self, chunk_store):
        ref = chunk_store.put(SID, 0, BytesIO(b"a"))
        chunk_store.delete(ref)
        assert chunk_store.prune_session(SID)
        assert chunk_store.put(SID, 1, BytesIO(b"b")).location.exists()

    def test_put_retries_when_directory_vanishes(self, chunk_store, monkeypatch):
        real_open = open
        failures = {"left": 2}

        def flaky_open(path, mode="r", *args, **kwargs):
            if "w" in mode and failures["left"]:
                failures["left"] -= 1
                raise FileNotFoundError(path)
            return real_open(path, mode, *args, **kwargs)

        monkeypatch.setattr(chunk_store_module, "open", flaky_open, raising=False)
        ref = chunk_store.put(SID, 0, BytesIO(b"abc"))
        assert ref.location.read_bytes() == b"abc"

    def test_put_gives_up_with_upload_error(self, chunk_store, monkeypatch):
        def missing_dir_open(path, mode="r", *args, **kwargs):
            raise FileNotFoundError(path)

        monkeypatch.setattr(chunk_store_module, "open", missing_dir_open, raising=False)
        with pytest.raises(AssemblyIOError) as exc_info:
            chunk_store.put(SID, 0, BytesIO(b"abc"))
        assert exc_info.value.status_code == 500
        assert chunk_store.list_payloads() == []


class TestOrderedRead:
    def test_any_arrival_order_reads_back_in_index_order(self, chunk_store):
        pieces = [b"alpha-", b"beta-", b"gamma-", b"delta"]
        for order in itertools.permutations(range(len(pieces))):
            chunks = {}
            for index in order:
                chunks[index] = chunk_store.put(SID, index, BytesIO(pieces[index]))
            stream = chunk_store.read_ordered(_session(chunks).ordered_chunks())
            assert b"".join(stream) == b"alpha-beta-gamma-delta"
            chunk_store.delete_many(chunks.values())

    def test_gaps_are_concatenated(self, chunk_store):
        chunks = {
            0: chunk_store.put(SID, 0, BytesIO(b"a")),
            5: chunk_store.put(SID, 5, BytesIO(b"c")),
            2: chunk_store.put(SID, 2, BytesIO(b"b")),
        }
        stream = chunk_store.read_ordered(_session(chunks).ordered_chunks())
        assert b"".join(stream) == b"abc"
        assert stream.total_size == 3

    def test_stream_is_restartable(self, chunk_store):
        ref = chunk_store.put(SID, 0, BytesIO(b"data"))
        stream = chunk_store.read_ordered([ref])
        assert b"".join(stream) == b"".join(stream) == b"data"

    def test_small_blocks(self, chunk_store):
        ref = chunk_store.put(SID, 0, BytesIO(b"abcdefg"))
        blocks = list(OrderedChunkStream([ref], block_size=3))
        assert blocks == [b"abc", b"def", b"g"]

    def test_missing_payload_raises(self, tmp_path):
        stream = OrderedChunkStream([ChunkRef(location=tmp_path / "gone.part", size=1)])
        with pytest.raises(AssemblyIOError):
            list(stream)


class TestDeleteAndUsage:
    def test_delete_many_counts_deleted(self, chunk_store):
        refs = [chunk_store.put(SID, i, BytesIO(b"x")) for i in range(3)]
        chunk_store.delete(refs[0])
        assert chunk_store.delete_many(refs) == 2

    def test_usage(self, chunk_store):
        chunk_store.put(SID, 0, BytesIO(b"12345"))
        chunk_store.put("other1", 0, BytesIO(b"123"))
        assert chunk_store.usage() == (2, 8)

    def test_prune_keeps_non_empty_dirs(self, chunk_store):
        chunk_store.put(SID, 0, BytesIO(b"x"))
        empty = chunk_store.root / "empty1"
        empty.mkdir()
        assert chunk_store.prune_empty_dirs() == 1
        assert not empty.exists()
        assert (chunk_store.root / SID).exists()

    def test_list_payloads_reports_mtime(self, chunk_store):
        ref = chunk_store.put(SID, 0, BytesIO(b"x"))
        old = time.time() - 1000
        os.utime(ref.location, (old, old))
        [payload] = chunk_store.list_payloads()
        assert payload.location == ref.location
        assert payload.age(time.time()) >= 999


class TestAssembler:
    def test_assemble_and_discard(self, chunk_store, tmp_path):
        assembler = Assembler(chunk_store, str(tmp_path / "spool"))
        chunks = {
            1: chunk_store.put(SID, 1, BytesIO(b"world")),
            0: chunk_store.put(SID, 0, BytesIO(b"hello ")),
        }
        assembled = assembler.assemble(_session(chunks, declared_size=11))
        assert assembled.size == 11
        with assembled.open() as fh:
            assert fh.read() == b"hello world"

        assembled.discard()
        assert not assembled.path.exists()
        assembled.discard()  # second discard is harmless

    def test_declared_size_is_advisory(self, chunk_store, tmp_path):
        assembler = Assembler(chunk_store, str(tmp_path / "spool"))
        chunks = {0: chunk_store.put(SID, 0, BytesIO(b"abc"))}
        assert assembler.assemble(_session(chunks, declared_size=999)).size == 3

    def test_zero_chunks_gives_empty_object(self, chunk_store, tmp_path):
        assembler = Assembler(chunk_store, str(tmp_path / "spool"))
        assembled = assembler.assemble(_session({}))
        assert assembled.size == 0

    def test_missing_chunk_leaves_no_spool_file(self, chunk_store, tmp_path):
        spool = tmp_path / "spool"
        assembler = Assembler(chunk_store, str(spool))
        ref = chunk_store.put(SID, 0, BytesIO(b"abc"))
        ref.location.unlink()

        with pytest.raises(AssemblyIOError):
            assembler.assemble(_session({0: ref}))
        assert list(spool.iterdir()) == []
