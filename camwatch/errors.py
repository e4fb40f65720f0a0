# camwatch/errors.py
from __future__ import annotations

from typing import Optional


class StreamError(Exception):
    """Base class for errors raised by the stream manager."""

    code = "STREAM_ERROR"


class InvalidStreamId(StreamError, ValueError):
    code = "INVALID_STREAM_ID"


class InvalidQuality(StreamError, ValueError):
    code = "INVALID_QUALITY"


class StreamNotFound(StreamError):
    code = "STREAM_NOT_FOUND"


class AtCapacity(StreamError):
    code = "MAX_STREAMS_REACHED"


class AlreadyRunning(StreamError):
    code = "STREAM_ALREADY_RUNNING"


class LaunchFailed(StreamError):
    """ffmpeg did not produce a playlist inside the startup window."""

    code = "STREAM_START_FAILED"

    def __init__(self, message: str, returncode: Optional[int] = None, tail: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.tail = tail


class VendorError(StreamError):
    code = "NO_RTSP_URL"
