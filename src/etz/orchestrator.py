"""Orchestrator tying worktree groups, cleanup and builds together."""

import logging
from pathlib import Path

from .build import BuildTracker, ProgressCallback
from .cleanup import CleanupManager
from .config import CONFIG_FILENAME, Config, find_config_path
from .exceptions import (
    ConfigNotFoundError,
    GitOperationError,
    InvalidConfigError,
    RepositoryNotFoundError,
    WorktreeNotFoundError,
)
from .models import (
    BuildPreCheckResult,
    BuildProcessResult,
    BuildResult,
    CheckStatus,
    CleanResult,
    DoctorCheck,
    DoctorResult,
    Platform,
    SwitchResult,
    WorktreeInfo,
)
from .utils import GitUtils
from .worktree import WorktreeManager

# Set up logger
logger = logging.getLogger(__name__)


class Orchestrator:
    """High-level entry point for every etz operation."""

    def __init__(self, config: Config):
        """Initialize the orchestrator.

        Args:
            config: Configuration settings
        """
        self.config = config
        self.worktree_manager = WorktreeManager(config)
        self.build_tracker = BuildTracker(config)
        self.cleanup_manager = CleanupManager(config, build_tracker=self.build_tracker)

        logger.debug(f"Initialized orchestrator for {len(config.repos)} repositories "
                     f"under {config.worktrees_dir}")

    @classmethod
    def from_config_file(cls, config_path: Path | None = None) -> "Orchestrator":
        """Load the configuration file and build an orchestrator from it."""
        return cls(Config.load_from_file(config_path))

    # Worktree groups

    def switch(self,
               label: str | None = None,
               branch_map: dict[str, str] | None = None,
               default_branch: str | None = None,
               base_branch_map: dict[str, str] | None = None,
               dry_run: bool = False,
               repo: str | None = None) -> list[SwitchResult]:
        """Create (or reuse) the worktree group for a label."""
        return self.worktree_manager.create_worktree_group(
            label=label,
            branch_map=branch_map,
            default_branch=default_branch,
            base_branch_map=base_branch_map,
            dry_run=dry_run,
            repo=repo,
        )

    def clean(self,
              label: str,
              repo: str | None = None,
              force: bool = False,
              delete_branches: bool = False,
              dry_run: bool = False) -> list[CleanResult]:
        """Delete the worktree group for a label."""
        return self.cleanup_manager.clean_worktree_group(
            label,
            repo=repo,
            force=force,
            delete_branches=delete_branches,
            dry_run=dry_run,
        )

    def list_worktrees(self) -> list[WorktreeInfo]:
        """List every worktree group."""
        return self.worktree_manager.list_worktree_groups()

    def get_worktree(self, label: str) -> WorktreeInfo | None:
        """Get the worktree group for a label, if it exists."""
        return self.worktree_manager.get_worktree_group(label)

    def require_worktree(self, label: str) -> WorktreeInfo:
        """Get the worktree group for a label.

        Raises:
            WorktreeNotFoundError: If no directory exists for the label
        """
        info = self.get_worktree(label)
        if info is None:
            raise WorktreeNotFoundError(label)
        return info

    # Repositories

    def get_branches(self, repo: str | None = None) -> list[str]:
        """List branches of a repository, the first configured one by default.

        A failed fetch is logged and the local view of the remote is used.

        Raises:
            RepositoryNotFoundError: If the repository is not configured
        """
        if repo:
            repo_config = self.config.get_repo(repo)
            if repo_config is None:
                raise RepositoryNotFoundError(repo)
        elif self.config.repos:
            repo_config = self.config.repos[0]
        else:
            raise RepositoryNotFoundError()

        try:
            GitUtils.fetch_repo(repo_config.base_path)
        except GitOperationError as e:
            logger.warning(f"Failed to fetch {repo_config.name}, using cached branches: {e}")

        return GitUtils.list_branches(repo_config.base_path)

    def doctor(self) -> DoctorResult:
        """Check the worktree root and every configured repository."""
        checks = []
        success = True

        worktrees_dir = self.config.worktrees_dir
        if worktrees_dir.is_dir():
            checks.append(DoctorCheck(name="Worktrees directory", status=CheckStatus.PASS,
                                      message=f"Worktrees directory exists at {worktrees_dir}"))
        else:
            checks.append(DoctorCheck(
                name="Worktrees directory",
                status=CheckStatus.WARNING,
                message=f"Worktrees directory doesn't exist yet: {worktrees_dir} (will be created when needed)",
            ))

        if not self.config.repos:
            checks.append(DoctorCheck(name="Repository configuration", status=CheckStatus.WARNING,
                                      message="No repositories defined in configuration"))

        for repo in self.config.repos:
            name = f"Repository: {repo.name}"
            if not repo.base_path.exists():
                success = False
                checks.append(DoctorCheck(name=name, status=CheckStatus.FAIL,
                                          message=f"Repository path does not exist: {repo.base_path}"))
            elif not GitUtils.is_git_repo(repo.base_path):
                success = False
                checks.append(DoctorCheck(name=name, status=CheckStatus.FAIL,
                                          message=f"Path exists but is not a git repository: {repo.base_path}"))
            else:
                checks.append(DoctorCheck(name=name, status=CheckStatus.PASS,
                                          message=f"Found at {repo.base_path}"))

        return DoctorResult(success=success, checks=checks)

    # Builds

    async def check_build_pre_conditions(self, label: str, platform: Platform,
                                         repo: str | None = None) -> BuildPreCheckResult:
        """Inspect whether a platform build can start."""
        repo = repo or self._platform_repo(platform)
        return self.build_tracker.check_pre_conditions(label, platform, repo)

    async def run_build(self, label: str, platform: Platform,
                        on_progress: ProgressCallback | None = None) -> BuildResult:
        """Run the full build for a platform."""
        return await self.build_tracker.run_build(label, platform, on_progress)

    async def run_fix_action(self, label: str, action: str,
                             on_progress: ProgressCallback | None = None) -> BuildProcessResult:
        """Run the fix action a pre-condition suggested."""
        return await self.build_tracker.run_fix_action(label, action, on_progress)

    def _platform_repo(self, platform: Platform) -> str:
        if Platform(platform) is Platform.IOS:
            return self.config.build.ios_repo
        return self.config.build.android_repo


def run_doctor(config_path: Path | None = None) -> DoctorResult:
    """Full diagnostics, starting with locating and parsing the config file."""
    checks = []

    try:
        path = Path(config_path) if config_path else find_config_path()
        if not path.is_file():
            raise ConfigNotFoundError(str(path))
    except ConfigNotFoundError:
        checks.append(DoctorCheck(
            name="Config file exists",
            status=CheckStatus.FAIL,
            message=f"{CONFIG_FILENAME} not found in current directory or home directory",
        ))
        return DoctorResult(success=False, checks=checks)
    checks.append(DoctorCheck(name="Config file exists", status=CheckStatus.PASS,
                              message=f"{CONFIG_FILENAME} found at {path}"))

    try:
        config = Config.load_from_file(path)
    except InvalidConfigError as e:
        checks.append(DoctorCheck(name="Config is valid", status=CheckStatus.FAIL,
                                  message=f"Failed to parse config: {e.details}"))
        return DoctorResult(success=False, checks=checks)
    checks.append(DoctorCheck(name="Config is valid", status=CheckStatus.PASS,
                              message="Configuration file is valid and parseable"))

    result = Orchestrator(config).doctor()
    return DoctorResult(success=result.success, checks=checks + result.checks)
