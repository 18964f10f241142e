"""Tests for per-job scratch directories."""

from pathlib import Path

import pytest

from transcoder.scratch import job_paths, job_scratch, list_job_dirs, remove_job_dir


class TestJobPaths:
    """Layout helpers; nothing is created."""

    def test_layout(self, scratch_root):
        paths = job_paths(scratch_root, "abc123")

        assert paths.root == scratch_root / "abc123"
        assert paths.original_file("song.wav") == scratch_root / "abc123" / "original" / "song.wav"
        assert paths.converted_file == scratch_root / "abc123" / "converted" / "audio.mp3"
        assert paths.playlist == scratch_root / "abc123" / "hls" / "playlist.m3u8"
        assert paths.segments_dir == scratch_root / "abc123" / "hls" / "segments"
        assert not paths.root.exists()

    def test_original_file_strips_directories(self, scratch_root):
        paths = job_paths(scratch_root, "abc123")
        assert paths.original_file("../../etc/passwd") == paths.original_dir / "passwd"
        assert paths.original_file("") == paths.original_dir / "original"

    @pytest.mark.parametrize("name", [".", "..", "uploads/..", ""])
    def test_original_file_dot_names_fall_back(self, scratch_root, name):
        """Names that resolve to a directory never become the stored file."""
        paths = job_paths(scratch_root, "abc123")
        assert paths.original_file(name) == paths.original_dir / "original"

    @pytest.mark.parametrize("bad_id", ["", ".", "..", "a/b", "a\\b"])
    def test_rejects_escaping_ids(self, scratch_root, bad_id):
        with pytest.raises(ValueError):
            job_paths(scratch_root, bad_id)


class TestJobScratch:
    """Scoped acquisition always removes the directory."""

    def test_creates_and_removes(self, scratch_root):
        with job_scratch(scratch_root, "job1") as paths:
            assert paths.converted_dir.is_dir()
            assert paths.hls_dir.is_dir()
            paths.converted_file.write_bytes(b"x")

        assert not paths.root.exists()

    def test_removed_on_exception(self, scratch_root):
        with pytest.raises(RuntimeError):
            with job_scratch(scratch_root, "job1") as paths:
                (paths.hls_dir / "playlist.m3u8").write_text("#EXTM3U")
                raise RuntimeError("stage failed")

        assert not paths.root.exists()

    def test_retain_original(self, scratch_root):
        original = job_paths(scratch_root, "job1").original_file("in.wav")
        original.parent.mkdir(parents=True)
        original.write_bytes(b"RIFF")

        with job_scratch(scratch_root, "job1", retain_original=True) as paths:
            paths.converted_file.write_bytes(b"x")

        assert original.exists()
        assert sorted(p.name for p in paths.root.iterdir()) == ["original"]


class TestRemoveJobDir:
    def test_missing_dir_is_noop(self, scratch_root):
        remove_job_dir(job_paths(scratch_root, "nothing"))

    def test_list_job_dirs(self, scratch_root):
        for job_id in ("b", "a"):
            job_paths(scratch_root, job_id).hls_dir.mkdir(parents=True)
        (Path(scratch_root) / "stray.txt").write_text("x")

        assert list_job_dirs(scratch_root) == ["a", "b"]

    def test_list_job_dirs_missing_root(self, scratch_root):
        assert list_job_dirs(scratch_root / "absent") == []
