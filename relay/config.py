"""
Configuration management for ws-relay.

Reads configuration from an env file and environment variables with sensible
defaults; command-line flags (see relay.__main__) override both.
"""

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

from relay.ingest.demuxer import FrameFormat

# Default env file location
DEFAULT_ENV_FILE = Path("/etc/ws-relay/relay.env")

DEFAULT_LISTEN = ":8080"
DEFAULT_MAX_FRAME_BYTES = 8 * 1024 * 1024

logger = logging.getLogger(__name__)


def _load_env_file() -> None:
    """Load environment variables from the env file if it exists."""
    env_path = Path(os.getenv("RELAY_ENV_FILE", str(DEFAULT_ENV_FILE)))
    if env_path.exists():
        # Don't override existing env vars
        load_dotenv(env_path, override=False)


def parse_listen_address(value: str) -> Tuple[str, int]:
    """
    Parse a listen address.

    Accepts ":8080", "0.0.0.0:8080", "localhost:8080" or a bare port "8080".
    An empty host means all interfaces.

    Raises:
        ValueError: If the port is missing or not a valid TCP port
    """
    value = value.strip()
    if ":" in value:
        host, port_str = value.rsplit(":", 1)
    else:
        host, port_str = "", value
    host = host.strip("[]") or "0.0.0.0"

    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"Invalid listen address: {value!r} (port must be an integer)")
    if not 0 <= port <= 65535:
        raise ValueError(f"Invalid listen address: {value!r} (port out of range)")
    return host, port


def parse_bool(value: str) -> bool:
    """Parse 1/0, true/false, yes/no, on/off."""
    normalized = value.strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"Invalid boolean: {value!r}")


def verbosity_to_level(verbosity: int) -> int:
    """
    Map relay verbosity (-v) to a logging level.

    5+ debug, 3-4 info (client connect/disconnect), 2 warnings and errors, 1 errors only.
    """
    if verbosity >= 5:
        return logging.DEBUG
    if verbosity >= 3:
        return logging.INFO
    if verbosity >= 2:
        return logging.WARNING
    return logging.ERROR


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid {name}: {raw} (must be an integer)")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return parse_bool(raw)
    except ValueError:
        raise ValueError(f"Invalid {name}: {raw} (must be a boolean)")


@dataclass
class RelayConfig:
    """Relay configuration loaded from env file, environment variables and CLI flags."""

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8080
    static_root: str = "."
    max_clients: int = 100
    ws_compression: bool = False

    # Ingest
    frame_format: FrameFormat = FrameFormat.JPEG
    max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES
    verify_png_crc: bool = False

    # Broadcast
    mailbox_capacity: int = 1
    registration_queue_size: int = 16

    # Logging
    verbosity: int = 3
    log_file: Optional[str] = None

    @property
    def listen_address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def log_level(self) -> int:
        return verbosity_to_level(self.verbosity)

    @classmethod
    def load_config(cls) -> "RelayConfig":
        """
        Load configuration from environment variables.

        Returns:
            RelayConfig instance with loaded values

        Raises:
            ValueError: If configuration is invalid
        """
        _load_env_file()

        listen = os.getenv("RELAY_LISTEN", DEFAULT_LISTEN)
        try:
            host, port = parse_listen_address(listen)
        except ValueError as e:
            raise ValueError(f"Invalid RELAY_LISTEN: {e}")

        format_str = os.getenv("RELAY_FORMAT", FrameFormat.JPEG.value)
        try:
            frame_format = FrameFormat.parse(format_str)
        except ValueError as e:
            raise ValueError(f"Invalid RELAY_FORMAT: {e}")

        config = cls(
            host=host,
            port=port,
            static_root=os.getenv("RELAY_STATIC_ROOT", "."),
            max_clients=_env_int("RELAY_MAX_CLIENTS", 100),
            ws_compression=_env_bool("RELAY_WS_COMPRESSION", False),
            frame_format=frame_format,
            max_frame_bytes=_env_int("RELAY_MAX_FRAME_BYTES", DEFAULT_MAX_FRAME_BYTES),
            verify_png_crc=_env_bool("RELAY_VERIFY_PNG_CRC", False),
            mailbox_capacity=_env_int("RELAY_QUEUE", 1),
            registration_queue_size=_env_int("RELAY_REGISTRATION_QUEUE", 16),
            verbosity=_env_int("RELAY_VERBOSITY", 3),
            log_file=os.getenv("RELAY_LOG_FILE") or None,
        )
        config.validate()
        return config

    def with_overrides(self, **overrides) -> "RelayConfig":
        """
        Return a copy with non-None overrides applied and validated.

        frame_format may be given as a name; it is parsed here so an unknown
        format is rejected before anything starts.
        """
        values = {k: v for k, v in overrides.items() if v is not None}
        if "frame_format" in values:
            values["frame_format"] = FrameFormat.parse(values["frame_format"])
        config = replace(self, **values)
        config.validate()
        return config

    def validate(self) -> None:
        """
        Check bounds.

        Raises:
            ValueError: If any value is out of range
        """
        if not isinstance(self.frame_format, FrameFormat):
            raise ValueError(f"frame_format must be a FrameFormat, got {self.frame_format!r}")
        if self.mailbox_capacity < 1:
            raise ValueError(f"Mailbox capacity must be >= 1, got {self.mailbox_capacity}")
        if self.registration_queue_size < 1:
            raise ValueError(f"Registration queue size must be >= 1, got {self.registration_queue_size}")
        if self.max_frame_bytes <= 0:
            raise ValueError(f"max_frame_bytes must be > 0, got {self.max_frame_bytes}")
        if self.max_clients < 1:
            raise ValueError(f"max_clients must be >= 1, got {self.max_clients}")
        if not 0 <= self.port <= 65535:
            raise ValueError(f"Port out of range: {self.port}")
