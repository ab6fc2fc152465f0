"""Configuration management for crew-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (CREW_RTC_SIGNALING_WS)
3. TOML configuration file
4. Default values (production environment)

Configuration files are loaded from:
- crew-rtc.toml in current working directory
- ~/.crew-rtc/config.toml

Environment selection via CREW_RTC_ENV (development, staging, production).
Defaults to production if not set.

Example config file::

    [environments.development]
    signaling_websocket = "ws://localhost:8080"

    [sync]
    connect_timeout = 15.0
    reconnection_attempts = 5
    reconnection_delay = 1.0
    broadcast_interval = 0.033
    ice_servers = [{ urls = "stun:stun.l.google.com:19302" }]
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from loguru import logger

# Default relay URL (a relay running locally)
DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8080"

# STUN servers used for NAT traversal when none are configured
DEFAULT_ICE_SERVERS = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


@dataclass
class SyncConfig:
    """Timing and transport settings for state synchronization.

    Attributes:
        connect_timeout: Seconds allowed for one relay connect attempt, and for
            the relay to answer a join.
        reconnection_attempts: Relay connect attempts before giving up.
        reconnection_delay: Seconds between relay connect attempts.
        broadcast_interval: Seconds between snapshot broadcasts (~30 Hz).
        ice_servers: ICE servers as ``{"urls": ..., "username": ..., "credential": ...}``.
    """

    connect_timeout: float = 15.0
    reconnection_attempts: int = 5
    reconnection_delay: float = 1.0
    broadcast_interval: float = 0.033
    ice_servers: List[dict] = field(
        default_factory=lambda: [dict(server) for server in DEFAULT_ICE_SERVERS]
    )

    def __post_init__(self):
        """Validate settings after initialization."""
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        if self.reconnection_attempts < 1:
            raise ValueError("reconnection_attempts must be at least 1")
        if self.reconnection_delay < 0:
            raise ValueError("reconnection_delay cannot be negative")
        if self.broadcast_interval <= 0:
            raise ValueError("broadcast_interval must be positive")

    @classmethod
    def from_dict(cls, data: dict) -> "SyncConfig":
        """Create SyncConfig from TOML dictionary.

        Unknown keys and invalid ICE server entries are skipped with a warning.

        Args:
            data: Dictionary from TOML [sync] section.

        Returns:
            SyncConfig instance.
        """
        known = {
            "connect_timeout",
            "reconnection_attempts",
            "reconnection_delay",
            "broadcast_interval",
        }
        kwargs = {}
        for key, value in data.items():
            if key in known:
                kwargs[key] = value
            elif key != "ice_servers":
                logger.warning(f"Ignoring unknown [sync] setting: {key}")

        if "ice_servers" in data:
            servers = []
            for entry in data["ice_servers"]:
                if not isinstance(entry, dict) or "urls" not in entry:
                    logger.warning(f"Skipping invalid ICE server entry: {entry}")
                    continue
                servers.append(dict(entry))
            kwargs["ice_servers"] = servers

        return cls(**kwargs)


class Config:
    """Configuration manager for crew-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.environment: str = "production"
        self.sync: SyncConfig = SyncConfig()
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables (CREW_RTC_SIGNALING_WS)
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from CREW_RTC_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("CREW_RTC_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid CREW_RTC_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. crew-rtc.toml in current working directory
        2. ~/.crew-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "crew-rtc.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".crew-rtc" / "config.toml"
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
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            return

        if "sync" in self._config_data:
            try:
                self.sync = SyncConfig.from_dict(self._config_data["sync"])
            except (TypeError, ValueError) as e:
                logger.warning(f"Invalid [sync] section in {config_file}: {e}")

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})

        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )
            return

        if "signaling_websocket" in env_config:
            self.signaling_websocket = env_config["signaling_websocket"]
            logger.debug(
                f"Loaded signaling_websocket from config: {self.signaling_websocket}"
            )

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("CREW_RTC_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

    def get_websocket_url(self, port: int = 8080) -> str:
        """Get the relay WebSocket URL.

        Args:
            port: Port number to use if not specified in URL (default: 8080).

        Returns:
            WebSocket URL with port.
        """
        url = self.signaling_websocket
        if ":" not in url.split("//")[-1]:
            url = f"{url}:{port}"
        return url


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
