"""
Configuration management for envstack.

Settings come from ``$ENVSTACK_HOME/config.yaml`` (default ``~/.envstack``)
when present, overridden by environment variables. The remote API token and
workspace are required; ``validate()`` fails fast before any remote call.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from envstack.errors import ConfigError
from envstack.remote.client import DEFAULT_API_URL
from envstack.resource_graph import ResourceGraphSettings


# Environment variable -> StackConfig field
ENV_OVERRIDES = {
    "SI_API_TOKEN": "api_token",
    "SI_WORKSPACE_ID": "workspace_id",
    "SI_API_URL": "api_url",
    "ENVSTACK_ARTIFACT_DIR": "artifact_dir",
    "ENVSTACK_LOG_LEVEL": "log_level",
    "ENVSTACK_LOG_FORMAT": "log_format",
    "ENVSTACK_LOG_FILE": "log_file",
}

TIMING_FIELDS = (
    "request_timeout",
    "apply_timeout",
    "apply_interval",
    "convergence_timeout",
    "convergence_interval",
    "address_timeout",
    "address_interval",
)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def check_log_level(log_level: str) -> str:
    """Return LOG_LEVEL upper-cased, or raise ConfigError if logging has no such level."""
    level = str(log_level).upper()
    if level not in LOG_LEVELS:
        raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")
    return level


def get_envstack_home() -> Path:
    """Directory holding config.yaml (``$ENVSTACK_HOME`` or ``~/.envstack``)."""
    return Path(os.environ.get("ENVSTACK_HOME", "~/.envstack")).expanduser()


@dataclass
class StackConfig:
    """Complete envstack configuration."""
    api_token: str = ""
    workspace_id: str = ""
    api_url: str = DEFAULT_API_URL
    artifact_dir: str = "."
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    bootstrap_template: Optional[str] = None

    request_timeout: float = 30
    apply_timeout: float = 120
    apply_interval: float = 5
    convergence_timeout: float = 300
    convergence_interval: float = 10
    address_timeout: float = 60
    address_interval: float = 3

    resources: ResourceGraphSettings = field(default_factory=ResourceGraphSettings)

    @property
    def artifact_path(self) -> Path:
        return Path(self.artifact_dir).expanduser()

    @property
    def bootstrap_template_path(self) -> Optional[Path]:
        return Path(self.bootstrap_template).expanduser() if self.bootstrap_template else None

    def validate(self) -> None:
        """Validate settings needed to talk to the remote API."""
        missing = [
            var for var, attr in (("SI_API_TOKEN", "api_token"), ("SI_WORKSPACE_ID", "workspace_id"))
            if not getattr(self, attr)
        ]
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

        for name in TIMING_FIELDS:
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")

        if self.log_format not in ("pretty", "structured"):
            raise ConfigError(f"log_format must be 'pretty' or 'structured', got {self.log_format!r}")

        check_log_level(self.log_level)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StackConfig":
        data = dict(data)
        resources_data = data.pop("resources", None)

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config key(s): {', '.join(unknown)}")

        for name in TIMING_FIELDS:
            if name in data:
                try:
                    data[name] = float(data[name])
                except (TypeError, ValueError):
                    raise ConfigError(f"{name} must be a number, got {data[name]!r}")

        return cls(resources=ResourceGraphSettings.from_dict(resources_data), **data)

    def __repr__(self) -> str:
        token = "***" if self.api_token else ""
        return f"StackConfig(workspace_id={self.workspace_id!r}, api_url={self.api_url!r}, api_token={token!r})"


def _load_yaml(config_path: Path) -> dict[str, Any]:
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {config_path} must contain a mapping")
    return data


def load_config(config_path: Optional[Path] = None) -> StackConfig:
    """
    Load configuration from YAML (if present) and the environment.

    Args:
        config_path: Path to config file. Defaults to $ENVSTACK_HOME/config.yaml

    Returns:
        StackConfig instance (not yet validated)

    Raises:
        ConfigError: If an explicit config file is missing or the file is invalid
    """
    explicit = config_path is not None
    if config_path is None:
        config_path = get_envstack_home() / "config.yaml"

    data: dict[str, Any] = {}
    if config_path.exists():
        data = _load_yaml(config_path)
    elif explicit:
        raise ConfigError(f"Configuration file not found: {config_path}")

    for var, attr in ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if value:
            data[attr] = value

    return StackConfig.from_dict(data)


def default_config_dict() -> dict[str, Any]:
    """Defaults written by ``stack init``. Secrets stay in the environment."""
    defaults = StackConfig()
    return {
        "api_url": defaults.api_url,
        "artifact_dir": defaults.artifact_dir,
        "log_level": defaults.log_level,
        "log_format": defaults.log_format,
        "apply_timeout": defaults.apply_timeout,
        "apply_interval": defaults.apply_interval,
        "convergence_timeout": defaults.convergence_timeout,
        "convergence_interval": defaults.convergence_interval,
        "address_timeout": defaults.address_timeout,
        "address_interval": defaults.address_interval,
    }
