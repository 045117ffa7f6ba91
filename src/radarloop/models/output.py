"""
Renderer Snapshot Models
========================

Output contract consumed by map renderers and status clients.

Output Contract:
    {
        "current_timestamp": "2025-09-15T12:05:00Z",
        "current_index": 0,
        "is_forecast": false,
        "is_loading": true,
        "is_animating": false,
        "error_message": null,
        "loaded_count": 7,
        "total_count": 16,
        "last_update_time": "2025-09-15T12:05:31Z",
        "frames": [
            {
                "key": "20250915_1205",
                "kind": "observed",
                "timestamp": "2025-09-15T12:05:00Z",
                "source_timestamp": "2025-09-15T12:05:00Z",
                "offset_minutes": 0,
                "state": "success",
                "attempt_count": 0,
                "error_code": null,
                "image_source": "network",
                "load_duration_seconds": 0.42
            }
        ]
    }

Design Rules:
    - Snapshots are read-only views; renderers never mutate frame records
    - Image bytes are NOT part of the snapshot (served separately)
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from radarloop.models.errors import ErrorCode
from radarloop.models.frame_key import FrameKind
from radarloop.models.loading_state import LoadingPhase


class FrameStatus(BaseModel):
    """Status of one frame record."""

    key: str = Field(..., description="External cache/string key")
    kind: FrameKind = Field(..., description="observed or forecast")
    timestamp: datetime = Field(..., description="Time depicted by the frame")
    source_timestamp: datetime = Field(..., description="Observed frame it derives from")
    offset_minutes: int = Field(default=0, ge=0, description="Forecast offset")
    state: LoadingPhase = Field(..., description="Loading phase")
    attempt_count: int = Field(default=0, ge=0, description="Failed attempts so far")
    error_code: Optional[ErrorCode] = Field(default=None, description="Last error code")
    image_source: str = Field(default="unknown", description="cache, network or unknown")
    load_duration_seconds: Optional[float] = Field(
        default=None,
        ge=0,
        description="Duration of the last fetch",
    )


class RendererSnapshot(BaseModel):
    """Everything a renderer needs besides the image bytes."""

    current_timestamp: Optional[datetime] = Field(
        default=None,
        description="Display timestamp of the current frame",
    )
    current_index: int = Field(default=0, ge=0, description="Index into the loaded view")
    is_forecast: bool = Field(default=False, description="Current frame is a forecast")
    is_loading: bool = Field(default=False, description="A fetch round is in progress")
    is_animating: bool = Field(default=False, description="Animation is running")
    error_message: Optional[str] = Field(default=None, description="Last user-visible error")
    loaded_count: int = Field(default=0, ge=0, description="Playable frame count")
    total_count: int = Field(default=0, ge=0, description="Frame records in the sequence")
    last_update_time: Optional[datetime] = Field(
        default=None,
        description="Completion time of the last fetch round",
    )
    frames: List[FrameStatus] = Field(default_factory=list)
