"""
Configuration management for subnetproxy

Settings come from, in increasing priority: defaults, environment variables
(``SUBNETPROXY_*`` and the ``.env`` file), an optional YAML file, and explicit
command line overrides.
"""

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from networking.exceptions import ProxyConfigurationError
from networking.selector import SelectionStrategy


class Settings(BaseSettings):
    """Proxy settings loaded from environment variables"""

    # Listener
    listen: str = ":1080"
    proxy_protocol: bool = False

    # Egress pool
    subnet: str = ""
    strategy: SelectionStrategy = SelectionStrategy.HASH

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_dir: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="SUBNETPROXY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("subnet", mode="before")
    @classmethod
    def _join_subnets(cls, value: List[str] | str | None) -> str:
        if value is None:
            return ""
        if isinstance(value, (list, tuple)):
            return ",".join(str(item) for item in value)
        return value

    @field_validator("strategy", mode="before")
    @classmethod
    def _normalise_strategy(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        return value

    @property
    def subnets(self) -> List[str]:
        """Configured subnet tokens; empty when the pool is disabled."""
        if not self.subnet:
            return []
        return self.subnet.split(",")


def load_yaml_config(config_path: Path) -> Dict[str, Any]:
    """
    Load a YAML mapping of settings.

    Raises:
        ProxyConfigurationError: If the file is missing or not a mapping.
    """
    path = Path(config_path)
    if not path.exists():
        raise ProxyConfigurationError(f"Config file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ProxyConfigurationError(f"Config file {path} must contain a mapping")
    return data


def load_settings(
    config_path: Optional[Path] = None,
    *,
    env_file: Optional[str] = ".env",
    **overrides: Any,
) -> Settings:
    """
    Build the effective settings.

    Args:
        config_path: Optional YAML file with settings keys.
        env_file: Environment file read by pydantic-settings.
        **overrides: Explicit values (e.g. from the CLI); ``None`` means unset.
    """
    data: Dict[str, Any] = {}
    if config_path is not None:
        data.update(load_yaml_config(config_path))
    data.update({key: value for key, value in overrides.items() if value is not None})

    try:
        return Settings(_env_file=env_file, **data)
    except ValidationError as exc:
        raise ProxyConfigurationError(f"Invalid configuration: {exc}") from exc
