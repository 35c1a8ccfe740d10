"""
envkit configuration -- ~/.envkit/config.yaml plus environment overrides.

Environment:
    ENVKIT_HOME               home directory (default ~/.envkit)
    ENVKIT_ENCRYPTION_PEPPER  the process-wide secret; never written to disk
    ENVKIT_REMOTE_PATH        path of the SQLite remote store
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from . import ENVKIT_HOME
from .errors import ConfigError
from .sync.models import MergePolicy

logger = logging.getLogger("envkit.config")

CONFIG_FILE = "config.yaml"
PEPPER_ENV = "ENVKIT_ENCRYPTION_PEPPER"
REMOTE_PATH_ENV = "ENVKIT_REMOTE_PATH"


class RemoteConfig(BaseModel):
    """Where the authoritative store lives."""

    backend: str = "sqlite"
    path: Optional[Path] = None


class EnvkitConfig(BaseModel):
    """Complete envkit configuration."""

    home: Path = Field(default_factory=lambda: Path(ENVKIT_HOME).expanduser())
    env_file: str = ".env.local"
    project_name: Optional[str] = None
    default_stage: str = "development"
    batch_size: int = Field(default=50, ge=1)
    max_workers: int = Field(default=4, ge=1)
    pull_policy: MergePolicy = MergePolicy.OVERRIDE_ALL
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    pepper: Optional[str] = Field(default=None, exclude=True, repr=False)

    def remote_path(self) -> Path:
        """Path of the SQLite remote store."""
        if self.remote.path is not None:
            return Path(self.remote.path).expanduser()
        return self.home / "remote.db"

    def require_pepper(self) -> str:
        """Return the pepper or fail loudly.

        Raises:
            ConfigError: If no pepper is configured.
        """
        if not self.pepper:
            raise ConfigError(
                f"No encryption pepper configured. Set {PEPPER_ENV}."
            )
        return self.pepper


def load_config(home: Optional[Path] = None) -> EnvkitConfig:
    """Load configuration from disk and the environment.

    Args:
        home: envkit home. Defaults to ENVKIT_HOME.

    Returns:
        EnvkitConfig with environment overrides applied.

    Raises:
        ConfigError: If config.yaml exists but is invalid.
    """
    home_path = Path(home or ENVKIT_HOME).expanduser()
    config_file = home_path / CONFIG_FILE

    data: dict = {}
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid {config_file}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Invalid {config_file}: expected a mapping")

    data.pop("pepper", None)
    data["home"] = home_path

    remote_override = os.environ.get(REMOTE_PATH_ENV)
    if remote_override:
        remote = dict(data.get("remote") or {})
        remote["path"] = remote_override
        data["remote"] = remote

    try:
        config = EnvkitConfig(**data)
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid {config_file}: {exc}") from exc

    config.pepper = os.environ.get(PEPPER_ENV) or None
    logger.debug("Loaded config from %s", home_path)
    return config


def save_config(config: EnvkitConfig) -> Path:
    """Persist configuration to config.yaml. The pepper is never written."""
    config.home.mkdir(parents=True, exist_ok=True)
    config_file = config.home / CONFIG_FILE
    data = config.model_dump(mode="json", exclude={"home"})
    config_file.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    return config_file
