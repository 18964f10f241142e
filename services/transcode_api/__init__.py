"""Audio HLS Transcoder - Transcode API service.

FastAPI service for job admission (upload + local path) and status queries.
Owns the process-wide status store, admission queue and worker thread.
"""

__all__: list[str] = []
