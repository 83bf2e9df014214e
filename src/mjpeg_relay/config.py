"""
MJPEG Relay Configuration
=========================

This module handles configuration loading for the relay.

Configuration Sources (in order of precedence):
    1. Environment variables (highest priority)
    2. config.yaml file
    3. Default values (lowest priority)

Environment Variable Mapping:
    MJPEG_RELAY_UPSTREAM_URL       -> upstream.url
    MJPEG_RELAY_STILLS             -> stills.paths (os.pathsep separated)
    MJPEG_RELAY_TICK_INTERVAL_MS   -> watchdog.tick_interval_ms
    MJPEG_RELAY_STREAM_PATH        -> server.stream_path
    MJPEG_RELAY_PORT               -> server.port
    MJPEG_RELAY_LOG_LEVEL          -> logging.level
    PORT                           -> server.port (container platforms)

Example:
    from mjpeg_relay.config import settings

    print(settings.upstream.url)
    print(settings.watchdog.tick_interval_ms)
"""

import os
import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when the relay cannot start with the supplied configuration."""


# =============================================================================
# Configuration Models
# =============================================================================

class RelayInfoConfig(BaseModel):
    """Relay identification configuration."""

    name: str = Field(default="mjpeg-relay", description="Service name")
    version: str = Field(default="v0.1.0", description="Service version")


class UpstreamConfig(BaseModel):
    """Upstream MJPEG source configuration."""

    url: Optional[str] = Field(
        default=None,
        description="HTTP URL of the source MJPEG stream (required)",
    )
    connect_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for establishing the upstream connection",
    )
    chunk_size: Optional[int] = Field(
        default=None,
        ge=1,
        description="Read size for upstream body chunks (None = as received)",
    )
    default_boundary: str = Field(
        default="ipcamera",
        min_length=1,
        description="Boundary token used until the upstream announces one",
    )


class StillsConfig(BaseModel):
    """Still images injected while the upstream is stalled."""

    paths: List[str] = Field(
        default_factory=list,
        description="Ordered JPEG files to rotate through during failover",
    )


class WatchdogConfig(BaseModel):
    """Stall detection timing."""

    tick_interval_ms: int = Field(
        default=240,
        ge=10,
        description="Interval between watchdog ticks",
    )
    stall_window_ms: int = Field(
        default=1000,
        gt=0,
        description="Time without a frame boundary before restarting upstream",
    )
    cooldown_window_ms: int = Field(
        default=10000,
        gt=0,
        description="Grace period after a restart before another can trigger",
    )


class ConsumersConfig(BaseModel):
    """Downstream client configuration."""

    max_pending_chunks: int = Field(
        default=256,
        ge=1,
        description="Chunks queued per client before it is disconnected",
    )


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, ge=1, le=65535, description="Bind port")
    stream_path: str = Field(default="/", description="Path serving the relayed stream")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")


class Settings(BaseModel):
    """
    Main settings class for the relay.

    Loads configuration from YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    relay: RelayInfoConfig = Field(default_factory=RelayInfoConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    stills: StillsConfig = Field(default_factory=StillsConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    consumers: ConsumersConfig = Field(default_factory=ConsumersConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


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
            Path("/etc/mjpeg-relay/config.yaml"),
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
        logger.debug("No config file found, using defaults and environment variables")

    _apply_env_overrides(config_data)

    return Settings.model_validate(config_data)


def _apply_env_overrides(config_data: dict) -> None:
    """Apply environment variable overrides to config data."""

    # Upstream settings
    if env_url := os.environ.get("MJPEG_RELAY_UPSTREAM_URL"):
        config_data.setdefault("upstream", {})["url"] = env_url

    # Still images
    if env_stills := os.environ.get("MJPEG_RELAY_STILLS"):
        config_data.setdefault("stills", {})["paths"] = [
            p for p in env_stills.split(os.pathsep) if p
        ]

    # Watchdog settings
    if env_tick := os.environ.get("MJPEG_RELAY_TICK_INTERVAL_MS"):
        config_data.setdefault("watchdog", {})["tick_interval_ms"] = int(env_tick)

    # Server settings
    if env_path := os.environ.get("MJPEG_RELAY_STREAM_PATH"):
        config_data.setdefault("server", {})["stream_path"] = env_path
    if env_port := os.environ.get("PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)
    elif env_port := os.environ.get("MJPEG_RELAY_PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)

    # Logging settings
    if env_log := os.environ.get("MJPEG_RELAY_LOG_LEVEL"):
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
