"""Audio HLS Transcoder - Encoder gateway over ffprobe/ffmpeg.

Synchronous adapter with fixed argument templates:

probe:
    ffprobe -v error -i IN -print_format json -show_format
convert (MP3, 320 kbit/s CBR, 48 kHz):
    ffmpeg -i IN -acodec libmp3lame -ar 48000 -b:a 320k -y OUT
segment (HLS, 5 s MPEG-TS segments, unbounded playlist):
    ffmpeg -i IN -ar 48000 -b:a 320k -hls_time 5 -hls_segment_type mpegts
        -hls_list_size 0 [-hls_base_url URL]
        -hls_segment_filename DIR/segments/segment%03d.ts -vn DIR/playlist.m3u8

Every call runs under a deadline and an optional cancellation event. When
either fires the child process is killed before EncoderError is raised.

Dependencies:
- Requires ffmpeg and ffprobe installed (binaries configurable)

Error codes:
- ENCODER_NOT_FOUND: executable missing
- ENCODER_FAILED: non-zero exit
- ENCODER_TIMEOUT: deadline expired, process killed
- ENCODER_CANCELLED: cancellation requested, process killed
- PROBE_UNPARSEABLE: ffprobe output is not the expected JSON shape
- OUTPUT_MISSING: exit 0 but expected output absent or empty
"""

from __future__ import annotations

import json
import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import jsonschema

from transcoder.config import (
    ENCODER_POLL_INTERVAL_SECONDS,
    FFMPEG_BIN,
    FFPROBE_BIN,
    HLS_LIST_SIZE,
    HLS_PLAYLIST_NAME,
    HLS_SEGMENT_PATTERN,
    HLS_SEGMENT_SECONDS,
    HLS_SEGMENT_TYPE,
    HLS_SEGMENTS_SUBDIR,
    TARGET_BITRATE,
    TARGET_CODEC,
    TARGET_SAMPLE_RATE,
)
from transcoder.errors import EncoderError, ErrorCode

logger = logging.getLogger(__name__)

# Default deadline when the caller passes none
DEFAULT_TIMEOUT_SECONDS = 600.0

# Only the tail of stderr is kept on errors
STDERR_TAIL_CHARS = 4000

# Contract for `ffprobe -print_format json -show_format` output
PROBE_OUTPUT_SCHEMA = {
    "type": "object",
    "required": ["format"],
    "properties": {
        "format": {
            "type": "object",
            "required": ["nb_streams", "format_name", "duration"],
            "properties": {
                "nb_streams": {"type": "integer", "minimum": 0},
                "format_name": {"type": "string", "minLength": 1},
                "duration": {
                    "type": ["string", "number"],
                    "pattern": r"^[0-9]+(\.[0-9]+)?$",
                },
            },
        }
    },
}


# --- Result Types ---


@dataclass(frozen=True)
class ProbeResult:
    """Container metadata reported by ffprobe."""

    duration: float
    stream_count: int
    container_format: str


@dataclass(frozen=True)
class SegmentResult:
    """HLS output produced by segment()."""

    playlist_path: Path
    segment_paths: tuple[Path, ...]


@dataclass
class _ProcessOutput:
    returncode: int
    stdout: bytes
    stderr: str


def _tail(stderr: bytes | str | None) -> str:
    if not stderr:
        return ""
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    return stderr[-STDERR_TAIL_CHARS:]


def _require_nonempty_file(path: Path, what: str) -> None:
    try:
        size = path.stat().st_size
    except OSError:
        size = -1
    if size <= 0:
        raise EncoderError(ErrorCode.OUTPUT_MISSING, f"{what} missing or empty: {path}")


class EncoderGateway:
    """Runs ffprobe/ffmpeg with fixed templates, deadlines and cancellation.

    Args:
        ffmpeg_bin: ffmpeg executable name or path.
        ffprobe_bin: ffprobe executable name or path.
        poll_interval_s: How often a running child is checked for cancellation.
    """

    def __init__(
        self,
        ffmpeg_bin: str = FFMPEG_BIN,
        ffprobe_bin: str = FFPROBE_BIN,
        poll_interval_s: float = ENCODER_POLL_INTERVAL_SECONDS,
    ):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.poll_interval_s = poll_interval_s

    # --- Subprocess ---

    def _run(
        self,
        cmd: list[str],
        timeout_s: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> _ProcessOutput:
        """Run cmd to completion, killing it on deadline or cancellation.

        Raises:
            EncoderError: On missing executable, non-zero exit, timeout or cancel.
        """
        timeout_s = timeout_s if timeout_s is not None else DEFAULT_TIMEOUT_SECONDS
        tool = Path(cmd[0]).name

        if cancel_event is not None and cancel_event.is_set():
            raise EncoderError(ErrorCode.ENCODER_CANCELLED, f"{tool} cancelled before start")

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as e:
            logger.error("%s not found: %s", tool, cmd[0])
            raise EncoderError(ErrorCode.ENCODER_NOT_FOUND, f"{tool} not found") from e
        except OSError as e:
            logger.error("%s could not be started: %s", tool, e)
            raise EncoderError(ErrorCode.ENCODER_FAILED, f"{tool} could not be started") from e

        deadline = time.monotonic() + timeout_s
        while True:
            if cancel_event is not None and cancel_event.is_set():
                stderr = self._kill(proc)
                raise EncoderError(
                    ErrorCode.ENCODER_CANCELLED,
                    f"{tool} cancelled",
                    returncode=proc.returncode,
                    stderr=stderr,
                )
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                stderr = self._kill(proc)
                logger.error("%s timed out after %.1f seconds", tool, timeout_s)
                raise EncoderError(
                    ErrorCode.ENCODER_TIMEOUT,
                    f"{tool} timed out after {timeout_s:g}s",
                    returncode=proc.returncode,
                    stderr=stderr,
                )
            try:
                # Repeated communicate() after TimeoutExpired does not lose output
                stdout, stderr_bytes = proc.communicate(
                    timeout=min(self.poll_interval_s, remaining)
                )
                break
            except subprocess.TimeoutExpired:
                continue

        stderr = _tail(stderr_bytes)
        if proc.returncode != 0:
            logger.error("%s exited with %d: %s", tool, proc.returncode, stderr)
            raise EncoderError(
                ErrorCode.ENCODER_FAILED,
                f"{tool} exited with code {proc.returncode}",
                returncode=proc.returncode,
                stderr=stderr,
            )
        return _ProcessOutput(returncode=proc.returncode, stdout=stdout, stderr=stderr)

    @staticmethod
    def _kill(proc: subprocess.Popen) -> str:
        """Kill and reap proc, returning whatever stderr it produced."""
        proc.kill()
        try:
            _, stderr = proc.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            stderr = b""
        return _tail(stderr)

    # --- Operations ---

    def probe(
        self,
        path: str | Path,
        timeout_s: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ProbeResult:
        """Read container duration, stream count and format name.

        Raises:
            EncoderError: ffprobe failed or its output was unparseable.
        """
        cmd = [
            self.ffprobe_bin,
            "-v",
            "error",
            "-i",
            str(path),
            "-print_format",
            "json",
            "-show_format",
        ]
        output = self._run(cmd, timeout_s, cancel_event)
        return parse_probe_output(output.stdout)

    def convert(
        self,
        input_path: str | Path,
        output_path: str | Path,
        timeout_s: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Path:
        """Transcode input to MP3 320 kbit/s CBR at 48 kHz.

        Returns:
            The output path, verified to exist and be non-empty.

        Raises:
            EncoderError: ffmpeg failed or produced no output.
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.ffmpeg_bin,
            "-i",
            str(input_path),
            "-acodec",
            TARGET_CODEC,
            "-ar",
            str(TARGET_SAMPLE_RATE),
            "-b:a",
            TARGET_BITRATE,
            "-y",
            str(output_path),
        ]
        self._run(cmd, timeout_s, cancel_event)
        _require_nonempty_file(output_path, "converted audio")
        return output_path

    def segment(
        self,
        input_path: str | Path,
        output_dir: str | Path,
        base_url: str | None = None,
        timeout_s: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> SegmentResult:
        """Package input as HLS into output_dir.

        Writes output_dir/playlist.m3u8 and output_dir/segments/segmentNNN.ts.
        base_url, when non-empty, prefixes every segment URI in the playlist.

        Raises:
            EncoderError: ffmpeg failed, or the playlist or segments are missing.
        """
        output_dir = Path(output_dir)
        segments_dir = output_dir / HLS_SEGMENTS_SUBDIR
        segments_dir.mkdir(parents=True, exist_ok=True)
        playlist = output_dir / HLS_PLAYLIST_NAME

        cmd = [
            self.ffmpeg_bin,
            "-i",
            str(input_path),
            "-ar",
            str(TARGET_SAMPLE_RATE),
            "-b:a",
            TARGET_BITRATE,
            "-hls_time",
            str(HLS_SEGMENT_SECONDS),
            "-hls_segment_type",
            HLS_SEGMENT_TYPE,
            "-hls_list_size",
            str(HLS_LIST_SIZE),
        ]
        if base_url:
            cmd += ["-hls_base_url", base_url]
        cmd += [
            "-hls_segment_filename",
            str(segments_dir / HLS_SEGMENT_PATTERN),
            "-vn",
            str(playlist),
        ]
        self._run(cmd, timeout_s, cancel_event)

        _require_nonempty_file(playlist, "HLS playlist")
        segments = tuple(sorted(segments_dir.glob("*.ts")))
        if not segments:
            raise EncoderError(ErrorCode.OUTPUT_MISSING, f"no HLS segments in {segments_dir}")
        return SegmentResult(playlist_path=playlist, segment_paths=segments)


def parse_probe_output(stdout: bytes | str) -> ProbeResult:
    """Parse and validate ffprobe JSON output.

    Raises:
        EncoderError: PROBE_UNPARSEABLE if the JSON is invalid or incomplete.
    """
    try:
        data = json.loads(stdout)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise EncoderError(ErrorCode.PROBE_UNPARSEABLE, f"ffprobe output is not JSON: {e}") from e

    try:
        jsonschema.validate(data, PROBE_OUTPUT_SCHEMA)
    except jsonschema.ValidationError as e:
        raise EncoderError(
            ErrorCode.PROBE_UNPARSEABLE, f"unexpected ffprobe output: {e.message}"
        ) from e

    fmt = data["format"]
    return ProbeResult(
        duration=float(fmt["duration"]),
        stream_count=int(fmt["nb_streams"]),
        container_format=fmt["format_name"],
    )
