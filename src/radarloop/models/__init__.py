"""
Data Models
===========

Core value types of the radar frame pipeline.

Models:
    Identity:
        - FrameKind: observed or forecast
        - FrameKey: (kind, source, target) identity of an artifact

    Loading:
        - LoadingPhase: discrete loading phases
        - LoadingState: phase plus attempt/error payload

    Errors:
        - ErrorCode, FrameFetchError and its subclasses

    Output:
        - FrameStatus, RendererSnapshot: renderer-facing views
"""

from radarloop.models.errors import (
    ErrorCode,
    FetchCancelledError,
    FrameFetchError,
    ImageDecodeError,
    InvalidTargetError,
    MissingResultError,
    TransportError,
)
from radarloop.models.frame_key import FrameKey, FrameKind
from radarloop.models.loading_state import LoadingPhase, LoadingState
from radarloop.models.output import FrameStatus, RendererSnapshot

__all__ = [
    # Identity
    "FrameKind",
    "FrameKey",
    # Loading
    "LoadingPhase",
    "LoadingState",
    # Errors
    "ErrorCode",
    "FrameFetchError",
    "InvalidTargetError",
    "TransportError",
    "FetchCancelledError",
    "ImageDecodeError",
    "MissingResultError",
    # Output
    "FrameStatus",
    "RendererSnapshot",
]
