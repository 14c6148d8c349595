"""Configuration management for chatroom-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (CHATROOM_RTC_SIGNALING_WS, CHATROOM_RTC_STUN_URL, ...)
3. TOML configuration file
4. Default values (production environment)

Configuration files are loaded from:
- chatroom-rtc.toml in current working directory
- ~/.chatroom-rtc/config.toml

Environment selection via CHATROOM_RTC_ENV (development, staging, production).
Defaults to production if not set.
"""

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from aiortc import RTCIceServer
from loguru import logger


@dataclass
class IceServerConfig:
    """Configuration for a single network-traversal helper server.

    Attributes:
        urls: STUN or TURN URL (e.g. "stun:stun.l.google.com:19302").
        username: TURN username (required for turn: URLs).
        credential: TURN password (required for turn: URLs).
    """

    urls: str
    username: Optional[str] = None
    credential: Optional[str] = None

    def __post_init__(self):
        """Validate ICE server configuration after initialization."""
        if not self.urls:
            raise ValueError("ICE server urls cannot be empty")
        if self.is_turn and not (self.username and self.credential):
            raise ValueError("TURN server requires both username and credential")

    @property
    def is_turn(self) -> bool:
        return self.urls.startswith(("turn:", "turns:"))

    def to_rtc(self) -> RTCIceServer:
        """Convert to an aiortc RTCIceServer."""
        if self.is_turn:
            return RTCIceServer(
                urls=self.urls, username=self.username, credential=self.credential
            )
        return RTCIceServer(urls=self.urls)


@dataclass
class MediaConfig:
    """Local capture devices.

    Attributes:
        video_device: Device or file passed to aiortc's MediaPlayer for video.
        audio_device: Device or file passed to aiortc's MediaPlayer for audio.
        media_format: Optional container/format hint (e.g. "v4l2", "pulse").
    """

    video_device: Optional[str] = None
    audio_device: Optional[str] = None
    media_format: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "MediaConfig":
        """Create MediaConfig from TOML [media] section."""
        return cls(
            video_device=data.get("video_device"),
            audio_device=data.get("audio_device"),
            media_format=data.get("media_format"),
        )


# Default signaling relay and ICE settings
DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:4000"
DEFAULT_STUN_URL = "stun:stun.l.google.com:19302"

# Session defaults
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_RECONNECT_DELAY = 1.0  # seconds
DEFAULT_JOIN_TIMEOUT = 10.0  # seconds

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


class Config:
    """Configuration manager for chatroom-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.stun_url: str = DEFAULT_STUN_URL
        self.turn_url: Optional[str] = None
        self.turn_username: Optional[str] = None
        self.turn_password: Optional[str] = None
        self.max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
        self.reconnect_delay: float = DEFAULT_RECONNECT_DELAY
        self.join_timeout: float = DEFAULT_JOIN_TIMEOUT
        self.media: MediaConfig = MediaConfig()
        self.environment: str = "production"
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from CHATROOM_RTC_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("CHATROOM_RTC_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid CHATROOM_RTC_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. chatroom-rtc.toml in current working directory
        2. ~/.chatroom-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "chatroom-rtc.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".chatroom-rtc" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)

            session = self._config_data.get("session", {})
            if "max_reconnect_attempts" in session:
                self.max_reconnect_attempts = int(session["max_reconnect_attempts"])
            if "reconnect_delay" in session:
                self.reconnect_delay = float(session["reconnect_delay"])
            if "join_timeout" in session:
                self.join_timeout = float(session["join_timeout"])

            self.media = MediaConfig.from_dict(self._config_data.get("media", {}))

            environments = self._config_data.get("environments", {})
            env_config = environments.get(self.environment, {})

            if not env_config:
                logger.debug(
                    f"No configuration found for environment '{self.environment}' "
                    f"in {config_file}, using defaults"
                )
                return

            for key in (
                "signaling_websocket",
                "stun_url",
                "turn_url",
                "turn_username",
                "turn_password",
            ):
                if key in env_config:
                    setattr(self, key, env_config[key])
                    logger.debug(f"Loaded {key} from config")

        except Exception as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("CHATROOM_RTC_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

        stun_override = os.getenv("CHATROOM_RTC_STUN_URL")
        if stun_override:
            self.stun_url = stun_override
            logger.info(f"Overriding stun_url from env: {self.stun_url}")

        turn_override = os.getenv("CHATROOM_RTC_TURN_URL")
        if turn_override:
            self.turn_url = turn_override
            self.turn_username = os.getenv("CHATROOM_RTC_TURN_USERNAME")
            self.turn_password = os.getenv("CHATROOM_RTC_TURN_PASSWORD")
            logger.info(f"Overriding turn_url from env: {self.turn_url}")

    def get_ice_servers(self) -> List[IceServerConfig]:
        """Get the configured ICE servers.

        Returns:
            The STUN server, followed by the TURN server when one is configured
            with credentials. A TURN entry with missing credentials is skipped.
        """
        servers = [IceServerConfig(urls=self.stun_url)]
        if self.turn_url:
            try:
                servers.append(
                    IceServerConfig(
                        urls=self.turn_url,
                        username=self.turn_username,
                        credential=self.turn_password,
                    )
                )
            except ValueError as e:
                logger.warning(f"Skipping TURN server {self.turn_url}: {e}")
        return servers


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
