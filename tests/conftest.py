"""Shared pytest fixtures for Audio HLS Transcoder tests.

Provides an isolated status database, a scratch root, and in-memory doubles
for the encoder gateway and content publisher so the pipeline can run
without ffmpeg or an IPFS node.
"""

import tempfile
import threading
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from services.transcode_api.main import app, override_services
from services.transcode_api.service import build_services
from transcoder.db import init_db
from transcoder.encoder import ProbeResult, SegmentResult
from transcoder.errors import EncoderError, ErrorCode, PublishError, StoreError
from transcoder.pipeline import TranscodeJob, TranscodePipeline
from transcoder.status_store import StatusStore

# --- Doubles ---


class FakeEncoder:
    """Encoder double that writes small placeholder outputs.

    Attributes:
        fail_on: "probe", "convert" or "segment" to raise EncoderError there.
        duration: Duration reported by probe().
        gate: Optional Event that convert() waits on (to hold a job in flight).
    """

    def __init__(self, duration: float = 12.5):
        self.duration = duration
        self.fail_on: str | None = None
        self.gate: threading.Event | None = None
        self.calls: list[str] = []
        self.segment_base_urls: list[str | None] = []

    def probe(self, path, timeout_s=None, cancel_event=None):
        self.calls.append("probe")
        if self.fail_on == "probe":
            raise EncoderError(
                ErrorCode.ENCODER_FAILED,
                "ffprobe exited with code 1",
                returncode=1,
                stderr="Invalid data found when processing input",
            )
        return ProbeResult(duration=self.duration, stream_count=1, container_format="mp3")

    def convert(self, input_path, output_path, timeout_s=None, cancel_event=None):
        self.calls.append("convert")
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.fail_on == "convert":
            raise EncoderError(
                ErrorCode.ENCODER_FAILED, "ffmpeg exited with code 1", returncode=1, stderr="boom"
            )
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"ID3" + b"\x00" * 64)
        return output_path

    def segment(self, input_path, output_dir, base_url=None, timeout_s=None, cancel_event=None):
        self.calls.append("segment")
        self.segment_base_urls.append(base_url)
        if self.fail_on == "segment":
            raise EncoderError(ErrorCode.ENCODER_FAILED, "ffmpeg exited with code 1", returncode=1)
        output_dir = Path(output_dir)
        segments_dir = output_dir / "segments"
        segments_dir.mkdir(parents=True, exist_ok=True)
        segments = []
        for i in range(3):
            seg = segments_dir / f"segment{i:03d}.ts"
            seg.write_bytes(b"\x47" * 188)
            segments.append(seg)
        playlist = output_dir / "playlist.m3u8"
        lines = ["#EXTM3U", "#EXT-X-TARGETDURATION:5"]
        for seg in segments:
            lines += ["#EXTINF:5.0,", f"{base_url or ''}{seg.name}"]
        lines.append("#EXT-X-ENDLIST")
        playlist.write_text("\n".join(lines) + "\n")
        return SegmentResult(playlist_path=playlist, segment_paths=tuple(segments))


class FakePublisher:
    """Publisher double recording every call.

    Attributes:
        fail_add / fail_pin / fail_unpin: Raise PublishError from that call.
        published_files: Relative file names seen by each add_directory().
    """

    def __init__(self, address: str = "bafybeifakerootaddress"):
        self.address = address
        self.fail_add = False
        self.fail_pin = False
        self.fail_unpin = False
        self.added: list[Path] = []
        self.published_files: list[list[str]] = []
        self.pinned: list[str] = []
        self.unpinned: list[str] = []
        self.closed = False

    def add_directory(self, path):
        if self.fail_add:
            raise PublishError("add returned HTTP 500: node offline")
        path = Path(path)
        self.added.append(path)
        self.published_files.append(
            sorted(p.relative_to(path).as_posix() for p in path.rglob("*") if p.is_file())
        )
        return self.address

    def pin(self, address):
        if self.fail_pin:
            raise PublishError("pin/add returned HTTP 500: pin failed", ErrorCode.PIN_FAILED)
        self.pinned.append(address)

    def unpin(self, address):
        if self.fail_unpin:
            raise PublishError("pin/rm returned HTTP 500: not pinned")
        self.unpinned.append(address)

    def close(self):
        self.closed = True


class RecordingStore(StatusStore):
    """StatusStore that keeps every written record and can inject StoreError.

    Attributes:
        history: Records passed to set(), in order (successful writes only).
        fail_when: Optional predicate; set() raises StoreError when it returns True.
    """

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.history = []
        self.fail_when = None
        self._lock = threading.Lock()

    def set(self, record):
        if self.fail_when is not None and self.fail_when(record):
            raise StoreError(f"injected failure for {record.id}")
        super().set(record)
        with self._lock:
            self.history.append(record)

    def history_for(self, job_id):
        with self._lock:
            return [r for r in self.history if r.id == job_id]


# --- Fixtures ---


@pytest.fixture
def temp_db():
    """Create a temporary database for testing.

    Yields:
        tuple: (db_path, engine, SessionFactory)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        engine, SessionFactory = init_db(db_path)
        yield db_path, engine, SessionFactory
        engine.dispose()


@pytest.fixture
def scratch_root():
    """Temporary scratch root for per-job directories."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "scratch"


@pytest.fixture
def store(temp_db):
    """RecordingStore on the temporary database."""
    _, _, SessionFactory = temp_db
    return RecordingStore(SessionFactory)


@pytest.fixture
def fake_encoder():
    return FakeEncoder()


@pytest.fixture
def fake_publisher():
    return FakePublisher()


@pytest.fixture
def pipeline(store, fake_encoder, fake_publisher, scratch_root):
    """Pipeline wired to the recording store and fakes."""
    return TranscodePipeline(
        store,
        fake_encoder,
        fake_publisher,
        scratch_root=scratch_root,
        hls_base_url="segments/",
        publish_original=False,
        retain_original=False,
    )


@pytest.fixture
def make_job(scratch_root, store):
    """Factory creating a job whose original sits in its scratch directory.

    The initial (0, queued) record is written the way the producer does.
    """
    counter = {"n": 0}

    def _make(job_id: str | None = None, content: bytes = b"fake audio bytes " * 64):
        counter["n"] += 1
        job_id = job_id or f"job{counter['n']:04d}"
        source = scratch_root / job_id / "original" / "track.mp3"
        source.parent.mkdir(parents=True, exist_ok=True)
        source.write_bytes(content)
        store.create(job_id)
        return TranscodeJob(id=job_id, source_path=source, original_filename="track.mp3")

    return _make


@pytest.fixture
def services(temp_db, scratch_root, fake_encoder, fake_publisher):
    """Fully wired TranscodeServices using the fakes (worker not started)."""
    db_path, _, _ = temp_db
    services = build_services(
        db_path=db_path,
        scratch_root=scratch_root,
        encoder=fake_encoder,
        publisher=fake_publisher,
        admission_timeout_s=5.0,
        hls_base_url="segments/",
    )
    yield services
    if services.engine is not None:
        services.engine.dispose()


@pytest.fixture
def client(services):
    """FastAPI test client running the app lifespan over the fake services.

    Yields:
        tuple: (test_client, services)
    """
    override_services(services)
    try:
        with TestClient(app) as test_client:
            yield test_client, services
    finally:
        override_services(None)


@pytest.fixture
def sample_audio_file():
    """A small non-empty file with an accepted audio extension."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "sample.mp3"
        path.write_bytes(b"ID3" + b"\x00" * 1024)
        yield path
