"""Audio HLS Transcoder - Core application modules.

Provides:
- Status persistence (SQLite models, status store)
- Encoder gateway over ffmpeg/ffprobe
- Content publisher over the IPFS HTTP API
- Transcode pipeline state machine and single-slot admission queue
"""

__version__ = "0.1.0"
