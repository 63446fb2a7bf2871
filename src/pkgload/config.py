"""Configuration for loaders and the consistency check.

Settings come from PKGLOAD_* environment variables; build-language semantics
can be kept in a YAML file, either one named by PKGLOAD_SEMANTICS_FILE or the
workspace's own .pkgload.yaml:

    semantics:
      build_file_names: [BUILD]
      incompatible_disallow_glob: true
"""

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .semantics import DEFAULT_SEMANTICS, SemanticsConfig

WORKSPACE_CONFIG_FILE = ".pkgload.yaml"


class ConfigurationError(RuntimeError):
    """Raised when configuration values are invalid."""


class LoaderSettings(BaseSettings):
    """
    Runtime settings for package loading in tests and scripts.

    Every field can be overridden by the matching environment variable,
    e.g. PKGLOAD_JOBS=8.
    """

    model_config = SettingsConfigDict(
        env_prefix="PKGLOAD_",
        case_sensitive=False,
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    verify_loaders: bool = Field(default=True, description="Install the consistency checker on test graphs")
    jobs: int = Field(default=4, ge=1, description="Worker threads for PackageGraph.get_packages")
    log_level: str = Field(default="WARNING", description="Root logging level")
    semantics_file: Optional[Path] = Field(default=None, description="YAML file with build-language semantics")

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"{value!r} is not a logging level")
        return level

    @classmethod
    def from_environment(cls) -> "LoaderSettings":
        """Read settings from the environment.

        Raises:
            ConfigurationError: If a PKGLOAD_* variable holds an invalid value
        """
        try:
            return cls()
        except ValidationError as e:
            raise ConfigurationError(f"Invalid PKGLOAD_* settings: {e}") from e


def load_semantics(path: str | Path) -> SemanticsConfig:
    """Load build-language semantics from a YAML file.

    Args:
        path: YAML file; options may sit at the top level or under "semantics"

    Returns:
        The validated SemanticsConfig

    Raises:
        ConfigurationError: If the file can't be read or holds invalid options
    """
    path = Path(path)
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read semantics from {path}: {e}") from e

    if data is None:
        return DEFAULT_SEMANTICS
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected a mapping, got {type(data).__name__}")
    if "semantics" in data:
        data = data["semantics"] or {}
    try:
        return SemanticsConfig(**data)
    except (ValidationError, TypeError) as e:
        raise ConfigurationError(f"{path}: invalid semantics: {e}") from e


def workspace_semantics(workspace_root: str | Path) -> SemanticsConfig:
    """Semantics from the workspace's .pkgload.yaml, or the defaults."""
    path = Path(workspace_root) / WORKSPACE_CONFIG_FILE
    if not path.is_file():
        return DEFAULT_SEMANTICS
    return load_semantics(path)


def resolve_semantics(settings: LoaderSettings, workspace_root: str | Path) -> SemanticsConfig:
    """An explicit semantics file wins over the workspace's own config."""
    if settings.semantics_file is not None:
        return load_semantics(settings.semantics_file)
    return workspace_semantics(workspace_root)
