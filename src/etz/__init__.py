"""
Etz - Coordinate git worktrees across several related repositories.

One label maps to one folder holding a worktree of every configured repository,
so an iOS app, an Android app and their shared infra can be worked on
together on matching branches, inspected, built and removed as a group.
"""

from .build import BuildTracker
from .cleanup import CleanupManager
from .config import BuildSettings, Config, RepoConfig
from .detect import RepoType, detect_repo_type, detect_repo_type_by_name, detect_repo_type_with_fallback
from .exceptions import (
    BuildError,
    ConfigNotFoundError,
    EtzError,
    GitOperationError,
    InvalidConfigError,
    InvalidNameError,
    PathTraversalError,
    RepositoryNotFoundError,
    WorktreeNotFoundError,
)
from .orchestrator import Orchestrator, run_doctor
from .utils import FileUtils, GitUtils
from .worktree import Worktree, WorktreeManager

__version__ = "0.1.0"

__all__ = [
    "BuildError",
    "BuildSettings",
    "BuildTracker",
    "CleanupManager",
    "Config",
    "ConfigNotFoundError",
    "EtzError",
    "FileUtils",
    "GitOperationError",
    "GitUtils",
    "InvalidConfigError",
    "InvalidNameError",
    "Orchestrator",
    "PathTraversalError",
    "RepoConfig",
    "RepoType",
    "RepositoryNotFoundError",
    "Worktree",
    "WorktreeManager",
    "WorktreeNotFoundError",
    "detect_repo_type",
    "detect_repo_type_by_name",
    "detect_repo_type_with_fallback",
    "run_doctor",
]
