"""
Application configuration
"""
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from .constants import (
    APP_NAME,
    CONFIG_FILE_NAME,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_KDF_LOG2_N,
    DEFAULT_KDF_P,
    DEFAULT_KDF_R,
    DEFAULT_PROGRESS_INTERVAL,
    DEFAULT_SSH_TIMEOUT,
    DEFAULT_TERM_COLS,
    DEFAULT_TERM_ROWS,
    LOG_FILE_NAME,
    VAULT_FILE_NAME,
)
from .exceptions import ConfigError


def default_app_dir() -> Path:
    """Platform application-config directory"""
    return Path(typer.get_app_dir(APP_NAME))


def default_config_file() -> Path:
    return default_app_dir() / CONFIG_FILE_NAME


@dataclass
class AppConfig:
    """Application configuration"""
    app_dir: Path = field(default_factory=default_app_dir)
    vault_path: Optional[Path] = None
    log_path: Optional[Path] = None
    log_level: str = "WARNING"

    # Connections
    connect_timeout: float = DEFAULT_SSH_TIMEOUT
    term_cols: int = DEFAULT_TERM_COLS
    term_rows: int = DEFAULT_TERM_ROWS

    # Transfers
    chunk_size: int = DEFAULT_CHUNK_SIZE
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL

    # Vault
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    kdf_log2_n: int = DEFAULT_KDF_LOG2_N
    kdf_r: int = DEFAULT_KDF_R
    kdf_p: int = DEFAULT_KDF_P

    def __post_init__(self) -> None:
        self.app_dir = Path(self.app_dir).expanduser()
        if self.vault_path is None:
            self.vault_path = self.app_dir / VAULT_FILE_NAME
        if self.log_path is None:
            self.log_path = self.app_dir / LOG_FILE_NAME
        self.vault_path = Path(self.vault_path).expanduser()
        self.log_path = Path(self.log_path).expanduser()

    @property
    def known_hosts_path(self) -> Path:
        return self.app_dir / "known_hosts"

    def validate(self) -> None:
        """Validate configuration"""
        if self.chunk_size <= 0:
            raise ConfigError(f"Invalid chunk_size: {self.chunk_size}")
        if self.progress_interval < 0:
            raise ConfigError(f"Invalid progress_interval: {self.progress_interval}")
        if self.connect_timeout <= 0:
            raise ConfigError(f"Invalid connect_timeout: {self.connect_timeout}")
        if self.term_cols < 1 or self.term_rows < 1:
            raise ConfigError(f"Invalid terminal size: {self.term_cols}x{self.term_rows}")
        if self.idle_timeout < 0:
            raise ConfigError(f"Invalid idle_timeout: {self.idle_timeout}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        for key in ("app_dir", "vault_path", "log_path"):
            data[key] = str(data[key])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        """Create from dictionary"""
        # Only use fields defined on the class
        valid_fields = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        try:
            config = cls(**valid_fields)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
        config.validate()
        return config
