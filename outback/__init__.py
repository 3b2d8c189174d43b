"""Live capture ingest, HLS transcoding and timelapse rendering server."""

__version__ = "0.3.0"
