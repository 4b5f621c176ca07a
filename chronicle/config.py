"""Configuration loading for Chronicle."""

import os
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml


def get_data_home() -> Path:
    """Return $XDG_DATA_HOME, falling back to ~/.local/share."""
    if xdg := os.environ.get("XDG_DATA_HOME"):
        return Path(xdg)
    return Path.home() / ".local" / "share"


def get_config_home() -> Path:
    """Return $XDG_CONFIG_HOME, falling back to ~/.config."""
    if xdg := os.environ.get("XDG_CONFIG_HOME"):
        return Path(xdg)
    return Path.home() / ".config"


def default_db_path() -> Path:
    return get_data_home() / "chronicle" / "chronicle.db"


def default_config_path() -> Path:
    return get_config_home() / "chronicle" / "config.yaml"


@dataclass
class StorageConfig:
    """Configuration for the local entry database."""

    db_path: str = ""

    def resolved_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path).expanduser()
        return default_db_path()


@dataclass
class SyncConfig:
    """Configuration for multi-device sync."""

    server: str = ""
    user_id: str = ""
    token: str = ""
    refresh_token: str = ""
    token_expires: str = ""  # RFC 3339
    derived_key: str = ""  # hex secret the encryption key is derived from
    device_id: str = ""
    auto_sync: bool = False
    batch_size: int = 100
    max_retries: int = 3
    request_timeout_seconds: float = 30.0
    round_timeout_seconds: float = 120.0

    def is_configured(self) -> bool:
        """True once login has stored everything sync needs."""
        return bool(self.server and self.user_id and self.token and self.derived_key)

    def can_sync(self) -> bool:
        return bool(self.server and self.token and self.user_id)


@dataclass
class Config:
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


@dataclass
class ProjectConfig:
    """Per-project settings read from a ``.chronicle`` file."""

    local_logging: bool = False
    log_dir: str = "logs"
    log_format: str = "markdown"


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with CHRONICLE_ prefix."""
    return os.environ.get(f"CHRONICLE_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if db_path := _get_env("DB_PATH"):
        config.storage.db_path = db_path

    if server := _get_env("SYNC_SERVER"):
        config.sync.server = server
    if user_id := _get_env("SYNC_USER_ID"):
        config.sync.user_id = user_id
    if token := _get_env("SYNC_TOKEN"):
        config.sync.token = token
    if device_id := _get_env("SYNC_DEVICE_ID"):
        config.sync.device_id = device_id
    if auto := _get_env("SYNC_AUTO"):
        config.sync.auto_sync = auto.lower() in ("true", "1", "yes")

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses the XDG default.

    Returns:
        Loaded Config object. Missing files yield defaults.
    """
    config = Config()
    path = Path(config_path) if config_path else default_config_path()

    if path.exists():
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if "storage" in data:
            storage_data = data["storage"] or {}
            config.storage = StorageConfig(
                db_path=storage_data.get("db_path", config.storage.db_path),
            )

        if "sync" in data:
            sync_data = data["sync"] or {}
            defaults = SyncConfig()
            config.sync = SyncConfig(
                server=sync_data.get("server", defaults.server),
                user_id=sync_data.get("user_id", defaults.user_id),
                token=sync_data.get("token", defaults.token),
                refresh_token=sync_data.get("refresh_token", defaults.refresh_token),
                token_expires=sync_data.get("token_expires", defaults.token_expires),
                derived_key=sync_data.get("derived_key", defaults.derived_key),
                device_id=sync_data.get("device_id", defaults.device_id),
                auto_sync=sync_data.get("auto_sync", defaults.auto_sync),
                batch_size=sync_data.get("batch_size", defaults.batch_size),
                max_retries=sync_data.get("max_retries", defaults.max_retries),
                request_timeout_seconds=sync_data.get(
                    "request_timeout_seconds", defaults.request_timeout_seconds
                ),
                round_timeout_seconds=sync_data.get(
                    "round_timeout_seconds", defaults.round_timeout_seconds
                ),
            )

    return _apply_env_overrides(config)


def save_config(config: Config, config_path: str | Path | None = None) -> Path:
    """Write configuration back to YAML.

    The file holds the sync token and key, so it is created user-readable only.
    """
    path = Path(config_path) if config_path else default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        yaml.safe_dump(asdict(config), f, default_flow_style=False, sort_keys=False)

    return path


def find_project_root(start: str | Path) -> Path | None:
    """Walk up from ``start`` looking for a ``.chronicle`` file.

    Stops at the filesystem root or the user's home directory.
    """
    current = Path(start).resolve()
    home = Path.home().resolve()

    while True:
        if (current / ".chronicle").is_file():
            return current
        if current == home or current.parent == current:
            return None
        current = current.parent


def load_project_config(path: str | Path) -> ProjectConfig:
    """Load a ``.chronicle`` TOML file.

    Raises:
        tomllib.TOMLDecodeError: If the file is not valid TOML.
    """
    with open(path, "rb") as f:
        data = tomllib.load(f)

    defaults = ProjectConfig()
    return ProjectConfig(
        local_logging=bool(data.get("local_logging", defaults.local_logging)),
        log_dir=data.get("log_dir", defaults.log_dir),
        log_format=data.get("log_format", defaults.log_format),
    )
