"""Audio HLS Transcoder - Utility modules."""

from transcoder.utils.atomic_io import (
    atomic_copy_file,
    atomic_stream_to_file,
    atomic_write_chunks,
    cleanup_orphan_temp_files,
)
from transcoder.utils.failpoints import maybe_fail

__all__ = [
    # atomic_io
    "atomic_copy_file",
    "atomic_stream_to_file",
    "atomic_write_chunks",
    "cleanup_orphan_temp_files",
    # failpoints
    "maybe_fail",
]
