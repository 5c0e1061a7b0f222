"""Configuration management for Huddle."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml


DEFAULT_STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:global.stun.twilio.com:3478",
]


@dataclass
class StoreConfig:
    """Key-value backend configuration."""

    redis_url: str | None = None  # None means in-process memory store
    lock_timeout: float = 5.0  # seconds a room lock may be held


@dataclass
class RegistryConfig:
    """Short-code registry configuration."""

    max_attempts: int = 10
    transfer_ttl: int = 15 * 60  # seconds
    meeting_ttl: int = 2 * 60 * 60  # seconds


@dataclass
class DirectoryConfig:
    """Room directory configuration."""

    room_ttl: int = 24 * 60 * 60  # seconds
    max_participants: int = 20
    waiting_ttl: int = 5 * 60  # stale waiting records are pruned after this


@dataclass
class SessionConfig:
    """Client session configuration."""

    waiting_timeout: float = 15 * 60  # seconds in WAITING before giving up
    connect_timeout: float = 5 * 60  # seconds in CONNECTING/VERIFYING
    waiting_room_ttl: float = 5 * 60  # host-side expiry of join requests
    track_poll_interval: float = 1.0
    verification_attempts: int = 5
    signal_poll_interval: float = 1.0


@dataclass
class Config:
    """Huddle configuration."""

    port: int = 8787
    bind_address: str = "0.0.0.0"
    server_url: str = "http://localhost:8787"
    log_level: str = "INFO"
    log_file: str | None = None
    rate_limit: int = 120  # requests per minute per client IP
    stun_servers: list[str] = field(default_factory=lambda: DEFAULT_STUN_SERVERS.copy())
    store: StoreConfig = field(default_factory=StoreConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    directory: DirectoryConfig = field(default_factory=DirectoryConfig)
    session: SessionConfig = field(default_factory=SessionConfig)


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "huddle" / "config.yaml"


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

    store_data = data.get("store", {})
    store_config = StoreConfig(
        redis_url=store_data.get("redis_url", StoreConfig.redis_url),
        lock_timeout=store_data.get("lock_timeout", StoreConfig.lock_timeout),
    )

    registry_data = data.get("registry", {})
    registry_config = RegistryConfig(
        max_attempts=registry_data.get("max_attempts", RegistryConfig.max_attempts),
        transfer_ttl=registry_data.get("transfer_ttl", RegistryConfig.transfer_ttl),
        meeting_ttl=registry_data.get("meeting_ttl", RegistryConfig.meeting_ttl),
    )

    directory_data = data.get("directory", {})
    directory_config = DirectoryConfig(
        room_ttl=directory_data.get("room_ttl", DirectoryConfig.room_ttl),
        max_participants=directory_data.get(
            "max_participants", DirectoryConfig.max_participants
        ),
        waiting_ttl=directory_data.get("waiting_ttl", DirectoryConfig.waiting_ttl),
    )

    session_data = data.get("session", {})
    session_config = SessionConfig(
        waiting_timeout=session_data.get(
            "waiting_timeout", SessionConfig.waiting_timeout
        ),
        connect_timeout=session_data.get(
            "connect_timeout", SessionConfig.connect_timeout
        ),
        waiting_room_ttl=session_data.get(
            "waiting_room_ttl", SessionConfig.waiting_room_ttl
        ),
        track_poll_interval=session_data.get(
            "track_poll_interval", SessionConfig.track_poll_interval
        ),
        verification_attempts=session_data.get(
            "verification_attempts", SessionConfig.verification_attempts
        ),
        signal_poll_interval=session_data.get(
            "signal_poll_interval", SessionConfig.signal_poll_interval
        ),
    )

    return Config(
        port=data.get("port", Config.port),
        bind_address=data.get("bind_address", Config.bind_address),
        server_url=data.get("server_url", Config.server_url),
        log_level=data.get("log_level", Config.log_level),
        log_file=data.get("log_file", Config.log_file),
        rate_limit=data.get("rate_limit", Config.rate_limit),
        stun_servers=data.get("stun_servers", DEFAULT_STUN_SERVERS.copy()),
        store=store_config,
        registry=registry_config,
        directory=directory_config,
        session=session_config,
    )
