"""Configuration management for Etz."""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .exceptions import ConfigNotFoundError, InvalidConfigError, InvalidNameError
from .validation import validate_path_component

CONFIG_FILENAME = ".etzconfig.json"
DEFAULT_BASE_BRANCH = "master"


def _expand(v: Any) -> Path:
    path = Path(v) if not isinstance(v, Path) else v
    return path.expanduser().resolve()


class RepoConfig(BaseModel):
    """A repository that takes part in every worktree group."""

    model_config = ConfigDict(frozen=True)

    name: str
    base_path: Path

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        """Repository names become directory segments."""
        try:
            return validate_path_component(v, "repo name")
        except InvalidNameError as e:
            raise ValueError(str(e)) from e

    @field_validator("base_path", mode="before")
    @classmethod
    def resolve_base_path(cls, v: Any) -> Path:
        """Expand ``~`` and resolve the repository path."""
        return _expand(v)


class BuildSettings(BaseModel):
    """Repository names and Xcode settings used by the build pipelines."""

    model_config = ConfigDict(frozen=True)

    ios_repo: str = Field(default="project.ios")
    android_repo: str = Field(default="project.android")
    infra_repo: str = Field(default="project.mobile.infra")

    # Relative path the iOS Package.swift uses for a local infra checkout
    infra_reference: str = Field(default="../../project.mobile.infra")

    ios_workspace: str = Field(default="Project.xcworkspace")
    ios_scheme: str = Field(default="Project-Staging")
    ios_configuration: str = Field(default="Debug")
    ipa_name: str = Field(default="Project-Staging-Debug.ipa")


class Config(BaseModel):
    """Configuration settings for Etz."""

    model_config = ConfigDict(frozen=True)

    # Git settings
    base_branch: str | None = Field(default=None)
    worktrees_dir: Path
    repos: list[RepoConfig] = Field(default_factory=list)

    # Build settings
    build: BuildSettings = Field(default_factory=BuildSettings)
    derived_data_dir: Path = Field(
        default_factory=lambda: Path.home() / "Library" / "Developer" / "Xcode" / "DerivedData"
    )

    # Logging settings
    log_level: str = Field(default="INFO")
    log_file: Path | None = Field(default=None)

    @field_validator("worktrees_dir", "derived_data_dir", mode="before")
    @classmethod
    def resolve_path(cls, v: Any) -> Path:
        """Expand ``~`` and resolve to an absolute path."""
        return _expand(v)

    @field_validator("base_branch")
    @classmethod
    def strip_base_branch(cls, v: str | None) -> str | None:
        """Treat a blank base branch as unset."""
        if v is None or not v.strip():
            return None
        return v.strip()

    @model_validator(mode="after")
    def check_unique_repo_names(self) -> "Config":
        """Repository names must be unique."""
        seen = set()
        for repo in self.repos:
            if repo.name in seen:
                raise ValueError(f"Duplicate repository name: {repo.name}")
            seen.add(repo.name)
        return self

    def get_repo(self, name: str) -> RepoConfig | None:
        """Look up a repository by name."""
        for repo in self.repos:
            if repo.name == name:
                return repo
        return None

    def resolve_base_branch(self, override: str | None = None) -> str:
        """Per-repo override > configured base branch > ``master``."""
        return override or self.base_branch or DEFAULT_BASE_BRANCH

    def ensure_directories(self) -> None:
        """Ensure required directories exist."""
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Validate a mapping into a Config."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidConfigError(str(e)) from e

    @classmethod
    def load_from_file(cls, config_path: Path | None = None) -> "Config":
        """Load configuration from a JSON file.

        Args:
            config_path: Explicit path; searched with :func:`find_config_path`
                when omitted

        Raises:
            ConfigNotFoundError: If the file does not exist
            InvalidConfigError: If the file cannot be parsed or validated
        """
        path = Path(config_path) if config_path else find_config_path()
        if not path.is_file():
            raise ConfigNotFoundError(str(path))

        try:
            return cls.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise InvalidConfigError(str(e)) from e
        except OSError as e:
            raise InvalidConfigError(f"Failed to read {path}: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump(mode="json")


def find_config_path(cwd: Path | None = None, home: Path | None = None) -> Path:
    """Locate the config file in the current directory, then the home directory."""
    for directory in (cwd or Path.cwd(), home or Path.home()):
        candidate = directory / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    raise ConfigNotFoundError(f"{CONFIG_FILENAME} (current directory or home directory)")
