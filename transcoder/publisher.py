"""Audio HLS Transcoder - Content publisher over the IPFS HTTP API.

Thin adapter over a Kubo-compatible node (all calls are POST /api/v0/...):
- add           -> add?pin=false            (single blob)
- add_directory -> add?recursive=true       (multipart tree, root entry wins)
- pin / unpin   -> pin/add, pin/rm
- get           -> cat                      (streamed to an atomic temp file)

Content is added unpinned; the pipeline pins explicitly so that a failed
pin can be compensated with unpin.

Every failure (transport, non-2xx, unparseable body) raises PublishError.
Nothing here retries.
"""

from __future__ import annotations

import json
import logging
from contextlib import ExitStack
from pathlib import Path
from urllib.parse import quote

import httpx

from transcoder.config import IPFS_API_URL, PUBLISH_TIMEOUT_SECONDS
from transcoder.errors import ErrorCode, PublishError
from transcoder.utils.atomic_io import atomic_write_chunks

logger = logging.getLogger(__name__)

DIRECTORY_CONTENT_TYPE = "application/x-directory"
FILE_CONTENT_TYPE = "application/octet-stream"


def _error_detail(response: httpx.Response) -> str:
    """Extract the node's error message from a failed response."""
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return response.text[:500]
    if isinstance(body, dict) and body.get("Message"):
        return str(body["Message"])
    return response.text[:500]


def _parse_add_entries(text: str) -> list[dict]:
    """Parse the NDJSON body of an add call into entry dicts."""
    entries = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError as e:
            raise PublishError(f"unparseable add response line: {line[:200]}") from e
        if not isinstance(entry, dict):
            raise PublishError(f"unexpected add response entry: {line[:200]}")
        # Progress lines carry Bytes but no Hash
        if "Hash" in entry:
            entries.append(entry)
    return entries


class ContentPublisher:
    """Adds, pins, unpins and fetches content on an IPFS node.

    Args:
        client: httpx.Client with base_url pointing at the node's API
            (e.g. http://127.0.0.1:5001). The publisher does not own
            transport configuration beyond what the client carries.
    """

    def __init__(self, client: httpx.Client):
        self._client = client

    def close(self) -> None:
        self._client.close()

    # --- HTTP ---

    def _post(
        self,
        endpoint: str,
        params: dict[str, str] | None = None,
        files: list | None = None,
        error_code: str = ErrorCode.PUBLISH_FAILED,
    ) -> httpx.Response:
        try:
            response = self._client.post(f"/api/v0/{endpoint}", params=params, files=files)
        except httpx.HTTPError as e:
            raise PublishError(f"{endpoint} request failed: {e}", error_code) from e
        if response.is_error:
            raise PublishError(
                f"{endpoint} returned HTTP {response.status_code}: {_error_detail(response)}",
                error_code,
            )
        return response

    # --- Operations ---

    def add(self, data: bytes, filename: str = "blob") -> str:
        """Store a single blob and return its content address."""
        files = [("file", (quote(filename, safe=""), data, FILE_CONTENT_TYPE))]
        response = self._post("add", params={"pin": "false"}, files=files)
        entries = _parse_add_entries(response.text)
        if not entries:
            raise PublishError("add returned no entries")
        address = entries[-1]["Hash"]
        logger.info("Added blob %s (%d bytes) as %s", filename, len(data), address)
        return address

    def add_directory(self, path: str | Path) -> str:
        """Store a directory tree and return the root's content address.

        Raises:
            PublishError: On any failure, or if the node did not report the root.
        """
        root = Path(path)
        if not root.is_dir():
            raise PublishError(f"not a directory: {root}")
        root_name = root.name

        with ExitStack() as stack:
            files = [("file", (quote(root_name, safe=""), b"", DIRECTORY_CONTENT_TYPE))]
            for item in sorted(root.rglob("*")):
                rel = f"{root_name}/{item.relative_to(root).as_posix()}"
                name = quote(rel, safe="")
                if item.is_dir():
                    files.append(("file", (name, b"", DIRECTORY_CONTENT_TYPE)))
                else:
                    handle = stack.enter_context(open(item, "rb"))
                    files.append(("file", (name, handle, FILE_CONTENT_TYPE)))

            response = self._post(
                "add",
                params={"recursive": "true", "pin": "false", "progress": "false"},
                files=files,
            )

        entries = _parse_add_entries(response.text)
        root_entries = [e for e in entries if e.get("Name") == root_name]
        if not root_entries:
            raise PublishError(f"add response did not include root entry {root_name!r}")
        address = root_entries[-1]["Hash"]
        logger.info("Added directory %s (%d entries) as %s", root, len(files), address)
        return address

    def pin(self, address: str) -> None:
        """Pin address recursively.

        Raises:
            PublishError: With error_code PIN_FAILED.
        """
        self._post("pin/add", params={"arg": address}, error_code=ErrorCode.PIN_FAILED)
        logger.info("Pinned %s", address)

    def unpin(self, address: str) -> None:
        """Remove the recursive pin on address."""
        self._post("pin/rm", params={"arg": address})
        logger.info("Unpinned %s", address)

    def get(self, address: str, destination: str | Path) -> int:
        """Fetch the file at address into destination atomically.

        Returns:
            Number of bytes written.
        """
        try:
            with self._client.stream(
                "POST", "/api/v0/cat", params={"arg": address}
            ) as response:
                if response.is_error:
                    response.read()
                    raise PublishError(
                        f"cat returned HTTP {response.status_code}: {_error_detail(response)}"
                    )
                return atomic_write_chunks(destination, response.iter_bytes())
        except httpx.HTTPError as e:
            raise PublishError(f"cat request failed: {e}") from e


def create_publisher(
    api_url: str = IPFS_API_URL,
    timeout_s: float = PUBLISH_TIMEOUT_SECONDS,
) -> ContentPublisher:
    """Build a ContentPublisher with its own httpx client."""
    client = httpx.Client(base_url=api_url, timeout=httpx.Timeout(timeout_s, connect=10.0))
    return ContentPublisher(client)
