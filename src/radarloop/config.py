"""
Radarloop Configuration
=======================

This module handles configuration loading for the radar frame pipeline.

Configuration Sources (in order of precedence):
    1. Environment variables (highest priority)
    2. config.yaml file
    3. Default values (lowest priority)

Environment Variable Mapping:
    RADAR_BASE_URL          -> radar.base_url
    RADAR_FORECAST_BASE_URL -> radar.forecast_base_url
    RADAR_IMAGE_QUALITY     -> radar.image_quality
    RADAR_IMAGE_COUNT       -> sequence.image_count
    RADAR_INTERVAL_MINUTES  -> sequence.interval_minutes
    RADAR_FORECAST_ENABLED  -> sequence.forecast_enabled
    RADAR_CACHE_DIR         -> cache.directory
    RADAR_CACHE_ENABLED     -> cache.enabled
    RADAR_PORT              -> server.port
    RADAR_LOG_LEVEL         -> logging.level
    PORT                    -> server.port (Cloud Run)

Example:
    from radarloop.config import settings

    print(settings.radar.base_url)
    print(settings.sequence.image_count)
    print(settings.retry.observed_max_attempts)
"""

import os
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from radarloop.fetch.urls import DEFAULT_BASE_URL, DEFAULT_FORECAST_BASE_URL, ImageQuality
from radarloop.pipeline.orchestrator import ALLOWED_INTERVALS, PipelineOptions


logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 5


# =============================================================================
# Configuration Models
# =============================================================================

class RadarConfig(BaseModel):
    """Radar image server configuration."""

    base_url: str = Field(
        default=DEFAULT_BASE_URL,
        description="Directory URL of observed radar images",
    )
    forecast_base_url: str = Field(
        default=DEFAULT_FORECAST_BASE_URL,
        description="Directory URL of forecast radar images",
    )
    image_quality: ImageQuality = Field(
        default=ImageQuality.BEST,
        description="Image resolution: 'best' (2x) or 'lower'",
    )
    request_timeout_seconds: float = Field(
        default=25.0,
        gt=0,
        description="Per-request timeout",
    )


class SequenceConfig(BaseModel):
    """Frame sequence configuration."""

    image_count: int = Field(default=10, ge=1, le=48, description="Observed frames per round")
    interval_minutes: int = Field(
        default=DEFAULT_INTERVAL_MINUTES,
        description="Minutes between observed frames (5, 10, 15 or 20)",
    )
    forecast_enabled: bool = Field(default=True, description="Fetch the forecast tail")
    forecast_horizon_minutes: int = Field(
        default=60,
        ge=0,
        description="Furthest forecast offset in minutes",
    )
    forecast_interval_minutes: int = Field(
        default=10,
        gt=0,
        description="Minutes between forecast frames",
    )

    @field_validator("interval_minutes", mode="before")
    @classmethod
    def _fallback_interval(cls, value):
        try:
            minutes = int(value)
        except (TypeError, ValueError):
            minutes = None
        if minutes not in ALLOWED_INTERVALS:
            logger.warning(
                f"Invalid radar interval {value!r}, falling back to {DEFAULT_INTERVAL_MINUTES} minutes"
            )
            return DEFAULT_INTERVAL_MINUTES
        return minutes


class RetryConfig(BaseModel):
    """Retry and restart policy."""

    observed_max_attempts: int = Field(default=5, ge=1, description="Attempt budget of observed frames")
    forecast_max_attempts: int = Field(default=10, ge=1, description="Attempt budget of forecast frames")
    retry_delay_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Delay before retrying failed observed frames",
    )
    forecast_retry_delay_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Delay before retrying failed forecast frames",
    )
    restart_interval_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Delay before restarting a round that loaded nothing",
    )


class FetchConfig(BaseModel):
    """Fetch concurrency configuration."""

    forecast_max_concurrent: int = Field(
        default=3,
        ge=1,
        le=16,
        description="Parallel requests during a forecast pass",
    )


class CacheConfig(BaseModel):
    """Image cache configuration."""

    enabled: bool = Field(default=True, description="Use the on-disk image cache")
    directory: str = Field(default="./data/image_cache", description="Cache directory")
    max_size_bytes: int = Field(
        default=50 * 1024 * 1024,
        gt=0,
        description="Size budget enforced at startup",
    )
    max_age_days: float = Field(default=7.0, gt=0, description="Entry lifetime in days")


class UpdatesConfig(BaseModel):
    """Periodic update check and animation timing."""

    check_interval_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Seconds between update checks",
    )
    server_latency_offset_seconds: int = Field(
        default=20,
        ge=0,
        lt=60,
        description="Seconds after a 5-minute mark before new data is expected",
    )
    update_window_seconds: int = Field(
        default=30,
        ge=0,
        description="Seconds after the offset during which a check triggers a round",
    )
    animation_interval_seconds: float = Field(
        default=0.5,
        gt=0,
        description="Seconds between animation frames",
    )


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8002, ge=1, le=65535, description="Bind port")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format: json or text")


class Settings(BaseModel):
    """
    Main settings class for radarloop.

    Loads configuration from YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    radar: RadarConfig = Field(default_factory=RadarConfig)
    sequence: SequenceConfig = Field(default_factory=SequenceConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    updates: UpdatesConfig = Field(default_factory=UpdatesConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def pipeline_options(self) -> PipelineOptions:
        """Orchestrator tunables from these settings."""
        return PipelineOptions(
            image_count=self.sequence.image_count,
            interval_minutes=self.sequence.interval_minutes,
            forecast_enabled=self.sequence.forecast_enabled,
            forecast_horizon_minutes=self.sequence.forecast_horizon_minutes,
            forecast_interval_minutes=self.sequence.forecast_interval_minutes,
            forecast_max_concurrent=self.fetch.forecast_max_concurrent,
            retry_delay=self.retry.retry_delay_seconds,
            forecast_retry_delay=self.retry.forecast_retry_delay_seconds,
            restart_interval=self.retry.restart_interval_seconds,
            check_interval=self.updates.check_interval_seconds,
            server_latency_offset=self.updates.server_latency_offset_seconds,
            update_window=self.updates.update_window_seconds,
            animation_interval=self.updates.animation_interval_seconds,
        )


# =============================================================================
# Configuration Loading
# =============================================================================

def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load configuration from YAML file and environment variables.

    Priority (highest to lowest):
        1. Environment variables
        2. YAML config file
        3. Default values

    Args:
        config_path: Path to config.yaml. If None, searches common locations.

    Returns:
        Settings: Loaded configuration
    """
    if config_path is None:
        search_paths = [
            Path("config.yaml"),
            Path("config.yml"),
            Path(__file__).parent.parent.parent / "config.yaml",
        ]
        for path in search_paths:
            if path.exists():
                config_path = str(path)
                break

    config_data = {}
    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    else:
        logger.warning("No config file found, using defaults and environment variables")

    _apply_env_overrides(config_data)

    return Settings.model_validate(config_data)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(config_data: dict) -> None:
    """Apply environment variable overrides to config data."""

    # Radar server
    if env_url := os.environ.get("RADAR_BASE_URL"):
        config_data.setdefault("radar", {})["base_url"] = env_url
    if env_forecast_url := os.environ.get("RADAR_FORECAST_BASE_URL"):
        config_data.setdefault("radar", {})["forecast_base_url"] = env_forecast_url
    if env_quality := os.environ.get("RADAR_IMAGE_QUALITY"):
        config_data.setdefault("radar", {})["image_quality"] = env_quality.lower()

    # Sequence
    if env_count := os.environ.get("RADAR_IMAGE_COUNT"):
        config_data.setdefault("sequence", {})["image_count"] = int(env_count)
    if env_interval := os.environ.get("RADAR_INTERVAL_MINUTES"):
        config_data.setdefault("sequence", {})["interval_minutes"] = env_interval
    if env_forecast := os.environ.get("RADAR_FORECAST_ENABLED"):
        config_data.setdefault("sequence", {})["forecast_enabled"] = _parse_bool(env_forecast)

    # Cache
    if env_cache_dir := os.environ.get("RADAR_CACHE_DIR"):
        config_data.setdefault("cache", {})["directory"] = env_cache_dir
    if env_cache_enabled := os.environ.get("RADAR_CACHE_ENABLED"):
        config_data.setdefault("cache", {})["enabled"] = _parse_bool(env_cache_enabled)

    # Server settings (Cloud Run uses PORT env var)
    if env_port := os.environ.get("PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)
    elif env_port := os.environ.get("RADAR_PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)

    # Logging settings
    if env_log := os.environ.get("RADAR_LOG_LEVEL"):
        config_data.setdefault("logging", {})["level"] = env_log


def setup_logging(settings: Settings) -> None:
    """Configure logging based on settings."""
    log_level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    if settings.logging.format == "json":
        log_format = '{"time": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}'
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


# =============================================================================
# Global Settings Instance
# =============================================================================

# Global settings instance - loaded on import
settings = load_config()
setup_logging(settings)
