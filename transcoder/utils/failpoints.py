"""Audio HLS Transcoder - Failpoint injection for crash testing.

Deterministic crash injection used to verify what a hard stop leaves behind:
a status record stalled at its last checkpoint, and recovery on restart.

Failpoints are only active when TRANSCODER_ENABLE_FAILPOINTS=1; otherwise
maybe_fail() is a no-op.

Environment variables:
- TRANSCODER_ENABLE_FAILPOINTS: "1" enables the system (default: disabled)
- TRANSCODER_FAILPOINT: Name of the failpoint to trigger
- TRANSCODER_FAILPOINT_EXIT_CODE: Exit code used when crashing (default: 42)
- TRANSCODER_FAILPOINT_ONCE: "1" clears the failpoint after it fires once

Usage:
    from transcoder.utils.failpoints import maybe_fail

    maybe_fail("PIPELINE_AFTER_CONVERTING_CHECKPOINT")
"""

from __future__ import annotations

import os

DEFAULT_EXIT_CODE = 42


def _normalize(name: str) -> str:
    name = name.upper()
    if name.startswith("FAILPOINT_"):
        name = name[len("FAILPOINT_") :]
    return name


def is_failpoint_enabled() -> bool:
    """Return True if TRANSCODER_ENABLE_FAILPOINTS=1."""
    return os.environ.get("TRANSCODER_ENABLE_FAILPOINTS") == "1"


def get_active_failpoint() -> str | None:
    """Return the armed failpoint name (normalized), or None."""
    if not is_failpoint_enabled():
        return None
    target = os.environ.get("TRANSCODER_FAILPOINT", "")
    if not target:
        return None
    return _normalize(target)


def maybe_fail(point: str) -> None:
    """Terminate the process immediately if point is the armed failpoint.

    Uses os._exit() so no finally blocks, context managers or atexit hooks
    run: scratch directories and status rows are left exactly as a power
    loss would leave them.

    Args:
        point: Failpoint name, with or without a FAILPOINT_ prefix.
    """
    target = get_active_failpoint()
    if target is None or _normalize(point) != target:
        return

    try:
        exit_code = int(os.environ.get("TRANSCODER_FAILPOINT_EXIT_CODE", str(DEFAULT_EXIT_CODE)))
    except ValueError:
        exit_code = DEFAULT_EXIT_CODE

    if os.environ.get("TRANSCODER_FAILPOINT_ONCE") == "1":
        os.environ.pop("TRANSCODER_FAILPOINT", None)
        os.environ.pop("TRANSCODER_FAILPOINT_ONCE", None)

    os._exit(exit_code)
