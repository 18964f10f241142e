"""Tests for transcoder.utils.atomic_io module."""

import io
import tempfile
from pathlib import Path

import pytest

from transcoder.utils.atomic_io import (
    atomic_copy_file,
    atomic_stream_to_file,
    atomic_write_chunks,
    cleanup_orphan_temp_files,
)


class TestAtomicWriteChunks:
    """Tests for atomic_write_chunks function."""

    def test_writes_all_chunks(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "out.bin"

            written = atomic_write_chunks(path, [b"abc", b"", b"def"])

            assert written == 6
            assert path.read_bytes() == b"abcdef"

    def test_creates_parent_directories(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "nested" / "deep" / "file.bin"
            atomic_write_chunks(path, [b"data"])
            assert path.read_bytes() == b"data"

    def test_overwrites_existing_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "file.bin"
            path.write_bytes(b"old content")

            atomic_write_chunks(path, [b"new"])

            assert path.read_bytes() == b"new"

    def test_no_temp_left_on_success(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "file.bin"
            atomic_write_chunks(path, [b"data"])
            assert list(Path(tmpdir).glob("*.part")) == []

    def test_iterator_error_leaves_no_file(self):
        """A failing source leaves neither the final file nor a temp file."""

        def chunks():
            yield b"partial"
            raise ConnectionError("stream dropped")

        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "file.bin"
            with pytest.raises(ConnectionError):
                atomic_write_chunks(path, chunks())

            assert not path.exists()
            assert list(Path(tmpdir).iterdir()) == []

    def test_failed_write_keeps_previous_file(self):
        def chunks():
            yield b"new"
            raise ConnectionError("stream dropped")

        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "file.bin"
            path.write_bytes(b"previous")
            with pytest.raises(ConnectionError):
                atomic_write_chunks(path, chunks())
            assert path.read_bytes() == b"previous"


class TestAtomicStreamToFile:
    def test_stream(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "upload.wav"
            data = b"RIFF" + b"\x00" * 200000

            written = atomic_stream_to_file(io.BytesIO(data), path, chunk_size=4096)

            assert written == len(data)
            assert path.read_bytes() == data

    def test_empty_stream(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "empty.wav"
            assert atomic_stream_to_file(io.BytesIO(b""), path) == 0
            assert path.read_bytes() == b""


class TestAtomicCopyFile:
    def test_copies(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            src = Path(tmpdir) / "src.mp3"
            src.write_bytes(b"ID3" * 1000)
            dst = Path(tmpdir) / "copy" / "dst.mp3"

            assert atomic_copy_file(src, dst) == 3000
            assert dst.read_bytes() == src.read_bytes()

    def test_missing_source(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(FileNotFoundError):
                atomic_copy_file(Path(tmpdir) / "nope.mp3", Path(tmpdir) / "dst.mp3")
            assert not (Path(tmpdir) / "dst.mp3").exists()


class TestCleanupOrphanTempFiles:
    def test_removes_nested_temp_files(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            (root / "job1" / "original").mkdir(parents=True)
            (root / "job1" / "original" / "in.wav.part").write_bytes(b"x")
            (root / "stray.part").write_bytes(b"x")
            (root / "job1" / "original" / "in.wav").write_bytes(b"keep")

            assert cleanup_orphan_temp_files(root) == 2
            assert (root / "job1" / "original" / "in.wav").exists()

    def test_missing_directory(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            assert cleanup_orphan_temp_files(Path(tmpdir) / "absent") == 0
