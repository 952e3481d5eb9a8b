"""Configuration management for castlink."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from castlink.access_code import SERVICE_PORT


@dataclass
class ChannelConfig:
    """Signaling channel timing."""

    keepalive_interval: float = 3.0  # seconds between pings
    reconnect_delay: float = 2.0  # seconds before a single retry
    connect_timeout: float = 10.0


@dataclass
class CaptureConfig:
    """Default screen capture settings."""

    video: bool = True
    audio: bool = True
    framerate: int = 30
    video_size: str | None = None  # e.g. "1920x1080", None = full screen


@dataclass
class Config:
    """Client configuration."""

    port: int = SERVICE_PORT
    log_level: str = "INFO"
    log_file: str | None = None
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "castlink" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        return yaml.safe_load(content)
    except yaml.YAMLError:
        return None


def load_config(
    path: Path | None = None,
    file_reader: Callable[[Path], dict[str, Any] | None] | None = None,
) -> Config:
    """Load configuration from file.

    Args:
        path: Path to config file. If None, uses default path.
        file_reader: Injectable file reader for testing.

    Returns:
        Config object with values from file or defaults.
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader

    data = reader(config_path)

    if not isinstance(data, dict):
        return Config()

    channel_data = data.get("channel") or {}
    channel_config = ChannelConfig(
        keepalive_interval=float(
            channel_data.get("keepalive_interval", ChannelConfig.keepalive_interval)
        ),
        reconnect_delay=float(
            channel_data.get("reconnect_delay", ChannelConfig.reconnect_delay)
        ),
        connect_timeout=float(
            channel_data.get("connect_timeout", ChannelConfig.connect_timeout)
        ),
    )

    capture_data = data.get("capture") or {}
    capture_config = CaptureConfig(
        video=capture_data.get("video", CaptureConfig.video),
        audio=capture_data.get("audio", CaptureConfig.audio),
        framerate=int(capture_data.get("framerate", CaptureConfig.framerate)),
        video_size=capture_data.get("video_size", CaptureConfig.video_size),
    )

    return Config(
        port=int(data.get("port", Config.port)),
        log_level=data.get("log_level", Config.log_level),
        log_file=data.get("log_file", Config.log_file),
        channel=channel_config,
        capture=capture_config,
    )
