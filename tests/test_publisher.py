"""Tests for the IPFS HTTP API content publisher (httpx.MockTransport)."""

import json
import tempfile
from pathlib import Path
from urllib.parse import unquote

import httpx
import pytest

from transcoder.errors import ErrorCode, PublishError
from transcoder.publisher import ContentPublisher


def _ndjson(*entries) -> str:
    return "\n".join(json.dumps(e) for e in entries) + "\n"


def _publisher(handler) -> ContentPublisher:
    client = httpx.Client(base_url="http://ipfs.test:5001", transport=httpx.MockTransport(handler))
    return ContentPublisher(client)


class _Node:
    """Minimal in-memory stand-in for the node's HTTP API."""

    def __init__(self):
        self.requests = []
        self.pins = set()
        self.blobs = {"bafyblob": b"hello world" * 1000}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        arg = request.url.params.get("arg")
        if request.method != "POST":
            return httpx.Response(405)
        if path == "/api/v0/add":
            body = request.read().decode("latin-1")
            names = [
                unquote(part.split('filename="', 1)[1].split('"', 1)[0])
                for part in body.split("Content-Disposition")[1:]
                if 'filename="' in part
            ]
            entries = [
                {"Name": n, "Hash": f"bafy-{n.replace('/', '-')}", "Size": "1"} for n in names
            ]
            return httpx.Response(200, text=_ndjson(*entries))
        if path == "/api/v0/pin/add":
            self.pins.add(arg)
            return httpx.Response(200, json={"Pins": [arg]})
        if path == "/api/v0/pin/rm":
            if arg not in self.pins:
                return httpx.Response(
                    500, json={"Message": "not pinned", "Code": 0, "Type": "error"}
                )
            self.pins.discard(arg)
            return httpx.Response(200, json={"Pins": [arg]})
        if path == "/api/v0/cat":
            if arg not in self.blobs:
                return httpx.Response(500, json={"Message": "block not found", "Type": "error"})
            return httpx.Response(200, content=self.blobs[arg])
        return httpx.Response(404, text="404 page not found")


@pytest.fixture
def hls_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir) / "hls"
        (root / "segments").mkdir(parents=True)
        (root / "playlist.m3u8").write_text("#EXTM3U\n")
        (root / "segments" / "segment000.ts").write_bytes(b"\x47" * 188)
        (root / "segments" / "segment001.ts").write_bytes(b"\x47" * 188)
        yield root


class TestAddDirectory:
    """Tests for add_directory()."""

    def test_returns_root_address(self, hls_dir):
        node = _Node()
        publisher = _publisher(node)

        address = publisher.add_directory(hls_dir)

        assert address == "bafy-hls"
        request = node.requests[0]
        assert request.url.params["pin"] == "false"
        assert request.url.params["recursive"] == "true"

    def test_sends_whole_tree(self, hls_dir):
        node = _Node()
        publisher = _publisher(node)

        publisher.add_directory(hls_dir)

        body = node.requests[0].read().decode("latin-1")
        assert "application/x-directory" in body
        for name in (
            "hls",
            "hls/playlist.m3u8",
            "hls/segments",
            "hls/segments/segment000.ts",
            "hls/segments/segment001.ts",
        ):
            assert f'filename="{name.replace("/", "%2F")}"' in body

    def test_missing_root_entry(self, hls_dir):
        def handler(request):
            return httpx.Response(200, text=_ndjson({"Name": "other", "Hash": "bafyother"}))

        with pytest.raises(PublishError):
            _publisher(handler).add_directory(hls_dir)

    def test_not_a_directory(self, hls_dir):
        with pytest.raises(PublishError):
            _publisher(_Node()).add_directory(hls_dir / "playlist.m3u8")

    def test_http_error(self, hls_dir):
        def handler(request):
            return httpx.Response(500, json={"Message": "repo locked"})

        with pytest.raises(PublishError) as exc_info:
            _publisher(handler).add_directory(hls_dir)
        assert "repo locked" in exc_info.value.message
        assert exc_info.value.error_code == ErrorCode.PUBLISH_FAILED

    def test_transport_error(self, hls_dir):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(PublishError):
            _publisher(handler).add_directory(hls_dir)

    def test_garbage_body(self, hls_dir):
        def handler(request):
            return httpx.Response(200, text="<html>proxy error</html>")

        with pytest.raises(PublishError):
            _publisher(handler).add_directory(hls_dir)


class TestAdd:
    def test_add_blob(self):
        node = _Node()
        address = _publisher(node).add(b"payload", filename="manifest.json")
        assert address == "bafy-manifest.json"
        assert node.requests[0].url.params["pin"] == "false"


class TestPinning:
    """Tests for pin()/unpin()."""

    def test_pin_and_unpin(self):
        node = _Node()
        publisher = _publisher(node)

        publisher.pin("bafyroot")
        assert "bafyroot" in node.pins

        publisher.unpin("bafyroot")
        assert "bafyroot" not in node.pins
        assert [r.url.path for r in node.requests] == ["/api/v0/pin/add", "/api/v0/pin/rm"]

    def test_pin_failure_code(self):
        def handler(request):
            return httpx.Response(500, json={"Message": "context deadline exceeded"})

        with pytest.raises(PublishError) as exc_info:
            _publisher(handler).pin("bafyroot")
        assert exc_info.value.error_code == ErrorCode.PIN_FAILED

    def test_unpin_not_pinned(self):
        with pytest.raises(PublishError) as exc_info:
            _publisher(_Node()).unpin("bafyunknown")
        assert "not pinned" in exc_info.value.message


class TestGet:
    """Tests for get()."""

    def test_streams_to_file(self):
        node = _Node()
        with tempfile.TemporaryDirectory() as tmpdir:
            dest = Path(tmpdir) / "out" / "blob.bin"

            written = _publisher(node).get("bafyblob", dest)

            assert dest.read_bytes() == node.blobs["bafyblob"]
            assert written == len(node.blobs["bafyblob"])
            assert list(dest.parent.glob("*.part")) == []

    def test_unknown_address(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            dest = Path(tmpdir) / "blob.bin"
            with pytest.raises(PublishError) as exc_info:
                _publisher(_Node()).get("bafymissing", dest)
            assert "block not found" in exc_info.value.message
            assert not dest.exists()

    def test_close_closes_client(self):
        publisher = _publisher(_Node())
        publisher.close()
        assert publisher._client.is_closed
