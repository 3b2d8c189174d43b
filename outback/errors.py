"""Exception types shared by the streaming subsystems.

HTTP status hints live on the classes so the web layer can map them without
a lookup table of its own.
"""

from __future__ import annotations


class StreamingError(Exception):
    """Base class for every error raised by the streaming core."""

    status = 500
    code = "streaming_error"


class InvalidSessionKeyError(StreamingError, ValueError):
    status = 400
    code = "invalid_session_key"


class DuplicateSessionError(StreamingError):
    """A start was requested for a key that already has an active session."""

    status = 409
    code = "duplicate_session"


class SessionNotFoundError(StreamingError):
    status = 404
    code = "session_not_found"


class SinkClosedError(StreamingError):
    """Bytes were offered to an ingest sink that has already been closed."""

    code = "sink_closed"


class SourceMissingError(StreamingError):
    """No capture file exists to derive a rendition from."""

    status = 404
    code = "source_missing"


class JobInProgressError(StreamingError):
    status = 202
    code = "job_in_progress"


class EncoderSpawnError(StreamingError):
    """ffmpeg could not be launched at all (missing binary, bad arguments)."""

    code = "encoder_spawn_failed"


class EncoderRuntimeError(StreamingError):
    """ffmpeg started but exited with a failure status."""

    code = "encoder_failed"

    def __init__(self, message: str, returncode: int | None = None, stderr_tail: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr_tail = stderr_tail


class InvalidMessageError(StreamingError):
    """A control-channel message could not be parsed or is missing fields."""

    status = 400
    code = "invalid_message"
