"""
Configuration loader with priority: env > CLI > TOML > defaults
"""
import os
import tomllib
from pathlib import Path
from typing import Dict, Any, Optional

from ...core.config import AppConfig, default_config_file
from ...core.exceptions import ConfigError


class ConfigLoader:
    """Configuration loader with priority support"""

    # Environment variable -> config key, and the type it converts to
    ENV_MAPPINGS = {
        "SSHDECK_APP_DIR": ("app_dir", str),
        "SSHDECK_VAULT": ("vault_path", str),
        "SSHDECK_LOG_FILE": ("log_path", str),
        "SSHDECK_LOG_LEVEL": ("log_level", str),
        "SSHDECK_TIMEOUT": ("connect_timeout", float),
        "SSHDECK_CHUNK_SIZE": ("chunk_size", int),
        "SSHDECK_PROGRESS_INTERVAL": ("progress_interval", float),
        "SSHDECK_IDLE_TIMEOUT": ("idle_timeout", float),
        "SSHDECK_KDF_LOG2_N": ("kdf_log2_n", int),
    }

    def load_toml(self, path: Path) -> Dict[str, Any]:
        """Load TOML configuration file"""
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        try:
            data = tomllib.loads(path.read_text(encoding='utf-8'))
        except (tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
            raise ConfigError(f"Failed to parse TOML configuration: {e}") from e

        # Accept either top-level keys or a [sshdeck] table
        return data.get("sshdeck", data)

    def load_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables"""
        config = {}

        for env_key, (config_key, convert) in self.ENV_MAPPINGS.items():
            value = os.getenv(env_key)
            if value:
                try:
                    config[config_key] = convert(value)
                except ValueError as e:
                    raise ConfigError(f"Invalid value for {env_key}: {value!r}") from e

        return config

    def merge_configs(self, *configs: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge multiple configurations with priority.
        Later configs override earlier ones.
        """
        result: Dict[str, Any] = {}
        for config in configs:
            result.update({k: v for k, v in config.items() if v is not None})
        return result

    def load(
        self,
        toml_path: Optional[Path] = None,
        cli_overrides: Optional[Dict[str, Any]] = None,
        use_env: bool = True,
    ) -> AppConfig:
        """
        Load configuration with priority: env > CLI > TOML > defaults

        Args:
            toml_path: Path to TOML configuration file (default file is
                used when it exists)
            cli_overrides: CLI parameter overrides
            use_env: Whether to load from environment variables

        Returns:
            Merged AppConfig
        """
        configs = []

        # 1. Load TOML
        if toml_path is not None:
            configs.append(self.load_toml(toml_path))
        else:
            default_path = default_config_file()
            if default_path.exists():
                configs.append(self.load_toml(default_path))

        # 2. Apply CLI overrides
        if cli_overrides:
            configs.append(cli_overrides)

        # 3. Load environment variables (highest priority)
        if use_env:
            env_config = self.load_env()
            if env_config:
                configs.append(env_config)

        return AppConfig.from_dict(self.merge_configs(*configs))
