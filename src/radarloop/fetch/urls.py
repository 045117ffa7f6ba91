"""
Radar Image URLs
================

URL templates of the radar image server.

URL Formats:
    Observed: {base}/radar_{TS}_overlay{Q}.png
    Forecast: {forecast_base}/radar_{TS}_forecast_fct{OFFSET}_overlay{Q}.png

Where TS is the (source) yyyyMMdd_HHmm UTC timestamp, OFFSET the forecast
minutes ahead and Q the quality suffix ("2x" for best, "" for lower).
"""

from enum import Enum

import httpx

from radarloop.models.errors import InvalidTargetError
from radarloop.models.frame_key import FrameKey
from radarloop.timeline.radar_time import format_radar_timestamp


DEFAULT_BASE_URL = "https://radar.danielsuchy.cz/output"
DEFAULT_FORECAST_BASE_URL = "https://radar.danielsuchy.cz/output_forecast"


class ImageQuality(str, Enum):
    """Requested image resolution."""

    BEST = "best"
    LOWER = "lower"

    @property
    def suffix(self) -> str:
        return "2x" if self is ImageQuality.BEST else ""


class RadarUrlBuilder:
    """
    Builds image URLs for frame keys.

    Attributes:
        base_url: Directory URL of observed frames
        forecast_base_url: Directory URL of forecast frames
        quality: Requested resolution
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        forecast_base_url: str = DEFAULT_FORECAST_BASE_URL,
        quality: ImageQuality = ImageQuality.BEST,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.forecast_base_url = forecast_base_url.rstrip("/")
        self.quality = ImageQuality(quality)

    def url_for(self, key: FrameKey) -> str:
        """URL string for key (not validated)."""
        suffix = self.quality.suffix
        if key.is_forecast:
            return (
                f"{self.forecast_base_url}/radar_{format_radar_timestamp(key.source)}"
                f"_forecast_fct{key.offset_minutes}_overlay{suffix}.png"
            )
        return f"{self.base_url}/radar_{format_radar_timestamp(key.target)}_overlay{suffix}.png"

    def request_url(self, key: FrameKey) -> httpx.URL:
        """
        Validated URL for key.

        Raises:
            InvalidTargetError: If the URL is malformed or not http(s)
        """
        raw = self.url_for(key)
        try:
            url = httpx.URL(raw)
        except (httpx.InvalidURL, TypeError, ValueError) as e:
            raise InvalidTargetError(f"Invalid radar URL {raw!r}: {e}") from e

        if url.scheme not in ("http", "https") or not url.host:
            raise InvalidTargetError(f"Invalid radar URL {raw!r}: expected http(s) with a host")
        return url
