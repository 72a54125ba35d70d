"""Result and value models shared across Etz components."""

import time
from enum import Enum

from pydantic import BaseModel, Field


class SwitchStatus(str, Enum):
    """Outcome of ensuring a worktree for one repository."""
    ALREADY_EXISTS = "already_exists"
    ALREADY_IN_USE = "already_in_use"
    DRY_RUN = "dry_run"
    CREATED_NEW = "created_new"
    ADDED_LOCAL = "added_local"
    ADDED_REMOTE = "added_remote"
    ERROR = "error"
    SKIPPED = "skipped"


class CleanStatus(str, Enum):
    """Outcome of cleaning one repository's worktree."""
    NOT_FOUND = "not_found"
    NOT_WORKTREE = "not_worktree"
    DRY_RUN = "dry_run"
    DELETED = "deleted"
    ERROR = "error"


class CheckStatus(str, Enum):
    """Status of a diagnostic or build pre-condition check."""
    PASS = "pass"
    FAIL = "fail"
    WARNING = "warning"


class Platform(str, Enum):
    """Target platform of a build."""
    IOS = "ios"
    ANDROID = "android"


class BuildType(str, Enum):
    """Kinds of tracked build subprocesses."""
    POD_INSTALL = "pod_install"
    BUILD_INFRA_IOS = "build_infra_ios"
    BUILD_IOS = "build_ios"
    BUILD_ANDROID = "build_android"


class GitStatus(BaseModel):
    """Working tree status of a repository."""
    clean: bool
    modified: int = 0
    staged: int = 0
    untracked: int = 0
    ahead: int = 0
    behind: int = 0


class WorktreeEntry(BaseModel):
    """One record of ``git worktree list --porcelain``."""
    path: str
    branch: str = ""
    bare: bool = False


class SwitchResult(BaseModel):
    """Per-repository result of creating a worktree group."""
    repo_name: str
    success: bool
    message: str
    status: SwitchStatus
    warnings: list[str] = Field(default_factory=list)


class CleanResult(BaseModel):
    """Per-repository result of cleaning a worktree group."""
    repo_name: str
    success: bool
    message: str
    status: CleanStatus
    warnings: list[str] = Field(default_factory=list)


class RepoWorktreeInfo(BaseModel):
    """Live state of one repository's worktree under a label."""
    name: str
    branch: str
    path: str
    clean: bool
    uncommitted: int
    exists: bool


class WorktreeInfo(BaseModel):
    """A label and the state of every configured repository under it."""
    label: str
    repos: list[RepoWorktreeInfo] = Field(default_factory=list)


class DoctorCheck(BaseModel):
    """Single diagnostic check."""
    name: str
    status: CheckStatus
    message: str


class DoctorResult(BaseModel):
    """Aggregated diagnostics."""
    success: bool
    checks: list[DoctorCheck] = Field(default_factory=list)


class BuildPreCondition(BaseModel):
    """Point-in-time assessment of one build requirement."""
    id: str
    name: str
    status: CheckStatus
    message: str
    can_auto_fix: bool = False
    fix_action: str | None = None


class BuildPreCheckResult(BaseModel):
    """All pre-conditions for a platform build."""
    platform: Platform
    repo: str
    ready: bool
    conditions: list[BuildPreCondition] = Field(default_factory=list)


class BuildProgress(BaseModel):
    """Progress event forwarded to build callers."""
    label: str
    stage: str
    progress: int
    message: str
    timestamp: float = Field(default_factory=time.time)


class BuildProcessResult(BaseModel):
    """Result of a single tracked subprocess (fix actions)."""
    success: bool
    output: str = ""
    error: str | None = None


class BuildResult(BaseModel):
    """Result of a full platform build."""
    success: bool
    platform: Platform
    repo: str
    duration: float | None = None  # seconds
    output: str | None = None
    error: str | None = None


class ActiveBuildInfo(BaseModel):
    """Snapshot of a running build."""
    build_type: BuildType
    duration_ms: int
