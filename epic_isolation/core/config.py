"""Settings for worktree isolation, loaded from YAML.

Settings are always passed explicitly to the resolver and manager;
nothing in this package reads ambient global state.
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from epic_isolation.core.errors import ConfigError
from epic_isolation.core.models import WorktreeLocation

logger = logging.getLogger(__name__)

CONFIG_DIR = ".epic-isolation"
CONFIG_FILENAME = "config.yaml"


class WorktreeSettings(BaseModel):
    """Global worktree isolation settings."""

    # Global tier of the enablement cascade
    enable_worktree_support: bool = False

    default_location: WorktreeLocation = WorktreeLocation.SIBLING
    custom_base_path: str | None = None
    max_worktrees: int = Field(default=5, ge=1)
    slug_max_length: int = Field(default=30, ge=1)
    subfolder_name: str = ".worktrees"
    metadata_dir_name: str = ".claude"

    # No default timeout: git calls block until they finish
    git_timeout: float | None = Field(default=None, gt=0)

    # One in-flight creation per project
    serialize_creation: bool = True
    lock_timeout: float = Field(default=10.0, ge=0)

    @field_validator("custom_base_path")
    @classmethod
    def _base_path_absolute(cls, value: str | None) -> str | None:
        if value is not None and not Path(value).is_absolute():
            raise ValueError("custom_base_path must be an absolute path")
        return value

    @field_validator("subfolder_name", "metadata_dir_name")
    @classmethod
    def _single_component(cls, value: str) -> str:
        if not value or "/" in value or "\\" in value or value in (".", ".."):
            raise ValueError("must be a single directory name")
        return value


def default_config_path(repo_path: Path) -> Path:
    """Location of the per-repository settings file."""
    return Path(repo_path) / CONFIG_DIR / CONFIG_FILENAME


def load_settings(config_path: str | Path | None = None) -> WorktreeSettings:
    """Load settings from a YAML file.

    The file may hold the settings at top level or under a `worktrees:`
    key. A missing file (or no path at all) yields the defaults.

    Raises:
        ConfigError: If the file cannot be parsed or fails validation
    """
    if config_path is None:
        return WorktreeSettings()

    path = Path(config_path)
    if not path.exists():
        logger.debug(f"No settings file at {path}, using defaults")
        return WorktreeSettings()

    try:
        with open(path, encoding="utf-8") as f:
            raw: Any = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read settings from {path}: {e}") from e

    if raw is None:
        return WorktreeSettings()
    if not isinstance(raw, dict):
        raise ConfigError(f"Settings file {path} must contain a mapping")

    section = raw.get("worktrees", raw)
    if not isinstance(section, dict):
        raise ConfigError(f"'worktrees' section in {path} must be a mapping")

    try:
        settings = WorktreeSettings.model_validate(section)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings in {path}: {e}") from e

    logger.debug(f"Loaded worktree settings from {path}")
    return settings
