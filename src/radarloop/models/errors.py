"""
Fetch Error Taxonomy
====================

Fixed set of errors a frame fetch can end with.

Errors are carried as VALUES (inside FetchResult and LoadingState), never
raised across component boundaries. Each error has one machine-readable
code for the renderer.

Retry Policy per code:
    INVALID_TARGET  -> never retried
    TRANSPORT       -> retried up to the attempt bound
    DECODE          -> retried up to the attempt bound
    MISSING_RESULT  -> retried up to the attempt bound
    CANCELLED       -> not an error; the frame returns to Pending
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Machine-readable fetch error codes."""

    INVALID_TARGET = "INVALID_TARGET"
    TRANSPORT = "TRANSPORT"
    CANCELLED = "CANCELLED"
    DECODE = "DECODE"
    MISSING_RESULT = "MISSING_RESULT"


class FrameFetchError(Exception):
    """Base class for every frame fetch failure."""

    code: ErrorCode = ErrorCode.TRANSPORT
    retryable: bool = True


class InvalidTargetError(FrameFetchError):
    """The target URL is malformed. Fails fast, no network call."""

    code = ErrorCode.INVALID_TARGET
    retryable = False


class TransportError(FrameFetchError):
    """Timeout, connection failure or HTTP error status."""

    code = ErrorCode.TRANSPORT

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FetchCancelledError(FrameFetchError):
    """The request was aborted. Resets the frame, never reported as failure."""

    code = ErrorCode.CANCELLED
    retryable = False


class ImageDecodeError(FrameFetchError):
    """Bytes were received but are not a valid image."""

    code = ErrorCode.DECODE


class MissingResultError(FrameFetchError):
    """A round completed without producing a result for a requested frame."""

    code = ErrorCode.MISSING_RESULT
