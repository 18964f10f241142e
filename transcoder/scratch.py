"""Audio HLS Transcoder - Per-job scratch directory layout.

Layout under the scratch root:
    {root}/{job_id}/original/{upload name}
    {root}/{job_id}/converted/audio.mp3
    {root}/{job_id}/hls/playlist.m3u8
    {root}/{job_id}/hls/segments/segmentNNN.ts

A job's directory is owned exclusively by that job. job_scratch() removes it
on every exit path.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from transcoder.config import HLS_PLAYLIST_NAME, HLS_SEGMENTS_SUBDIR

logger = logging.getLogger(__name__)

CONVERTED_FILENAME = "audio.mp3"


@dataclass(frozen=True)
class JobPaths:
    """Canonical paths of one job's scratch directory. Does not create anything."""

    root: Path

    @property
    def original_dir(self) -> Path:
        return self.root / "original"

    @property
    def converted_dir(self) -> Path:
        return self.root / "converted"

    @property
    def converted_file(self) -> Path:
        return self.converted_dir / CONVERTED_FILENAME

    @property
    def hls_dir(self) -> Path:
        return self.root / "hls"

    @property
    def playlist(self) -> Path:
        return self.hls_dir / HLS_PLAYLIST_NAME

    @property
    def segments_dir(self) -> Path:
        return self.hls_dir / HLS_SEGMENTS_SUBDIR

    def original_file(self, filename: str) -> Path:
        """Path for the stored original. Only the basename of filename is used.

        Names that do not denote a file (empty, "." or "..") fall back to
        "original".
        """
        name = Path(filename).name
        if name in ("", ".", ".."):
            name = "original"
        return self.original_dir / name


def job_paths(scratch_root: str | Path, job_id: str) -> JobPaths:
    """Get the scratch layout for job_id.

    Raises:
        ValueError: If job_id would escape the scratch root.
    """
    if not job_id or "/" in job_id or "\\" in job_id or job_id in (".", ".."):
        raise ValueError(f"invalid job id for scratch path: {job_id!r}")
    return JobPaths(Path(scratch_root) / job_id)


def remove_job_dir(paths: JobPaths, keep_original: bool = False) -> None:
    """Remove a job's scratch directory (best-effort, never raises).

    Args:
        paths: The job's layout.
        keep_original: If True, remove everything except original/.
    """
    if not paths.root.exists():
        return
    if keep_original:
        targets = [p for p in paths.root.iterdir() if p != paths.original_dir]
    else:
        targets = [paths.root]
    for target in targets:
        try:
            if target.is_dir():
                shutil.rmtree(target)
            else:
                target.unlink()
        except OSError as e:
            logger.warning("Failed to remove scratch path %s: %s", target, e)


@contextmanager
def job_scratch(
    scratch_root: str | Path,
    job_id: str,
    retain_original: bool = False,
) -> Iterator[JobPaths]:
    """Scope a job's scratch directory to a with-block.

    Creates the converted/ and hls/ subdirectories on entry. On exit, normal
    or exceptional, the directory is removed (original/ survives when
    retain_original is set).
    """
    paths = job_paths(scratch_root, job_id)
    paths.converted_dir.mkdir(parents=True, exist_ok=True)
    paths.hls_dir.mkdir(parents=True, exist_ok=True)
    try:
        yield paths
    finally:
        remove_job_dir(paths, keep_original=retain_original)


def list_job_dirs(scratch_root: str | Path) -> list[str]:
    """Return job ids that currently have a scratch directory."""
    root = Path(scratch_root)
    if not root.exists():
        return []
    return sorted(p.name for p in root.iterdir() if p.is_dir())
