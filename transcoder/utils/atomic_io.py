"""Audio HLS Transcoder - Atomic file writes.

Files that other stages consume (uploaded originals, files fetched from the
content store) are published with the same three steps:
1. Write to a temp path in the destination directory
2. Flush + fsync
3. Rename temp -> final (the publish boundary)

The final path therefore either holds complete data or does not exist.

Failpoints:
- ATOMIC_WRITE_BEFORE_RENAME: After fsync, before the rename
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from pathlib import Path
from typing import BinaryIO

from transcoder.utils.failpoints import maybe_fail

TEMP_SUFFIX = ".part"
CHUNK_SIZE = 65536


def _write_all(fd: int, data: bytes) -> None:
    """Write all bytes to a file descriptor, retrying short writes and EINTR.

    Raises:
        OSError: If write fails or returns 0 bytes unexpectedly.
    """
    view = memoryview(data)
    while view:
        try:
            written = os.write(fd, view)
        except InterruptedError:
            continue
        if written == 0:
            raise OSError("os.write() returned 0 bytes unexpectedly")
        view = view[written:]


def _fsync_directory(dir_path: Path) -> None:
    """Best-effort fsync on a directory so the rename is durable."""
    try:
        fd = os.open(dir_path, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except (OSError, AttributeError):
        # O_DIRECTORY is POSIX-only
        pass


def atomic_write_chunks(final_path: str | Path, chunks: Iterable[bytes]) -> int:
    """Atomically write an iterable of byte chunks to final_path.

    Args:
        final_path: Target path. Parent directories are created.
        chunks: Byte chunks in order; empty chunks are skipped.

    Returns:
        Total bytes written.

    Raises:
        OSError: If the write or rename fails. The temp file is removed.
        Any exception raised by the chunk iterator propagates after cleanup.
    """
    final_path = Path(final_path)
    temp_path = final_path.with_name(final_path.name + TEMP_SUFFIX)
    final_path.parent.mkdir(parents=True, exist_ok=True)

    total_bytes = 0
    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        for chunk in chunks:
            if not chunk:
                continue
            _write_all(fd, chunk)
            total_bytes += len(chunk)
        os.fsync(fd)
    except BaseException:
        os.close(fd)
        try:
            os.remove(temp_path)
        except OSError:
            pass  # Best-effort cleanup
        raise
    else:
        os.close(fd)

    maybe_fail("ATOMIC_WRITE_BEFORE_RENAME")

    os.replace(temp_path, final_path)
    _fsync_directory(final_path.parent)
    return total_bytes


def _iter_stream(stream: BinaryIO, chunk_size: int) -> Iterable[bytes]:
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            return
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        yield chunk


def atomic_stream_to_file(
    stream: BinaryIO,
    final_path: str | Path,
    chunk_size: int = CHUNK_SIZE,
) -> int:
    """Atomically write a file-like object (e.g. an upload) to final_path.

    Returns:
        Total bytes written.
    """
    return atomic_write_chunks(final_path, _iter_stream(stream, chunk_size))


def atomic_copy_file(
    source_path: str | Path,
    final_path: str | Path,
    chunk_size: int = CHUNK_SIZE,
) -> int:
    """Atomically copy source_path to final_path.

    Returns:
        Total bytes copied.

    Raises:
        FileNotFoundError: If source file does not exist.
        OSError: If copy or rename fails.
    """
    with open(source_path, "rb") as src:
        return atomic_write_chunks(final_path, _iter_stream(src, chunk_size))


def cleanup_orphan_temp_files(directory: str | Path) -> int:
    """Remove leftover temp files (from interrupted writes) under directory.

    Returns:
        Number of files removed.
    """
    directory = Path(directory)
    if not directory.exists():
        return 0

    removed = 0
    for temp_file in directory.rglob(f"*{TEMP_SUFFIX}"):
        try:
            temp_file.unlink()
            removed += 1
        except OSError:
            pass  # Best-effort cleanup
    return removed
