"""Worktree group creation and status for Etz."""

import logging
from pathlib import Path

from .config import Config, RepoConfig
from .exceptions import GitOperationError, InvalidNameError
from .models import RepoWorktreeInfo, SwitchResult, SwitchStatus, WorktreeInfo
from .utils import FileUtils, GitUtils
from .validation import validate_branch_name, validate_path_component

logger = logging.getLogger(__name__)


class WorktreeManager:
    """Creates and inspects worktree groups across all configured repositories."""

    def __init__(self, config: Config):
        """Initialize worktree manager.

        Args:
            config: Configuration with the worktree root and repositories
        """
        self.config = config
        self.worktrees_dir = config.worktrees_dir

    def worktree_path(self, label: str, repo_name: str) -> Path:
        """Path of ``repo_name``'s worktree under ``label``."""
        return self.worktrees_dir / label / repo_name

    def create_worktree_group(self,
                              label: str | None = None,
                              branch_map: dict[str, str] | None = None,
                              default_branch: str | None = None,
                              base_branch_map: dict[str, str] | None = None,
                              dry_run: bool = False,
                              repo: str | None = None) -> list[SwitchResult]:
        """Ensure a worktree exists for every configured repository.

        Repositories are processed one at a time in configuration order. A
        failure in one repository is reported in its result and never stops
        the others.

        Args:
            label: Folder name under the worktree root; the branch name is
                used when omitted
            branch_map: Repository name to branch name
            default_branch: Branch for repositories missing from ``branch_map``
            base_branch_map: Repository name to the base branch new branches
                are created from
            dry_run: Report what would happen without touching git
            repo: Only process this repository

        Returns:
            One result per processed repository
        """
        branch_map = branch_map or {}
        base_branch_map = base_branch_map or {}

        if label is not None:
            try:
                validate_path_component(label, "label")
            except InvalidNameError as e:
                return [SwitchResult(repo_name="", success=False, message=str(e),
                                     status=SwitchStatus.ERROR)]

        repos = self.config.repos
        if repo is not None:
            repos = [r for r in repos if r.name == repo]
            if not repos:
                return [SwitchResult(repo_name=repo, success=False,
                                     message=f"Repository '{repo}' not found in configuration",
                                     status=SwitchStatus.ERROR)]

        results = []
        for repo_config in repos:
            result = self._switch_repo(repo_config, label, branch_map, default_branch,
                                       base_branch_map, dry_run)
            logger.info(f"{repo_config.name}: {result.status.value} - {result.message}")
            results.append(result)
        return results

    def _switch_repo(self, repo_config: RepoConfig, label: str | None,
                     branch_map: dict[str, str], default_branch: str | None,
                     base_branch_map: dict[str, str], dry_run: bool) -> SwitchResult:
        name = repo_config.name
        branch = branch_map.get(name) or default_branch

        if not branch:
            return SwitchResult(repo_name=name, success=False,
                                message="No branch specified", status=SwitchStatus.SKIPPED)

        try:
            validate_branch_name(branch)
            # Without a label the branch doubles as the folder name
            label_folder = validate_path_component(label or branch, "label")
        except InvalidNameError as e:
            return SwitchResult(repo_name=name, success=False, message=str(e),
                                status=SwitchStatus.ERROR)

        base_branch = self.config.resolve_base_branch(base_branch_map.get(name))
        logger.debug(f"Repo {name}: using base branch '{base_branch}'")

        return self.ensure_worktree(
            repo_name=name,
            base_repo_path=repo_config.base_path,
            worktree_path=self.worktree_path(label_folder, name),
            branch=branch,
            base_branch=base_branch,
            dry_run=dry_run,
        )

    def ensure_worktree(self, repo_name: str, base_repo_path: Path, worktree_path: Path,
                        branch: str, base_branch: str, dry_run: bool = False) -> SwitchResult:
        """Attach ``branch`` at ``worktree_path`` choosing the right git sequence."""
        if worktree_path.exists():
            return SwitchResult(repo_name=repo_name, success=True,
                                message=f"Worktree already exists at {worktree_path}",
                                status=SwitchStatus.ALREADY_EXISTS)

        existing_path = GitUtils.find_worktree_by_branch(base_repo_path, branch)
        if existing_path:
            return SwitchResult(repo_name=repo_name, success=False,
                                message=f"Branch '{branch}' is already checked out at {existing_path}",
                                status=SwitchStatus.ALREADY_IN_USE)

        if dry_run:
            return SwitchResult(repo_name=repo_name, success=True,
                                message=f"Would create worktree for branch '{branch}' at {worktree_path}",
                                status=SwitchStatus.DRY_RUN)

        warnings: list[str] = []
        try:
            # Created only once a git mutation follows; the read-only checks above
            # and dry runs leave no empty label folder behind
            FileUtils.create_directory(worktree_path.parent)

            try:
                GitUtils.fetch_repo(base_repo_path)
            except GitOperationError as e:
                logger.warning(f"Fetch failed for {repo_name}, using local refs: {e}")
                warnings.append(f"Fetch failed: {e.details}")

            exists_locally = GitUtils.branch_exists_locally(base_repo_path, branch)
            exists_remotely = GitUtils.branch_exists_remotely(base_repo_path, branch)

            if exists_locally:
                GitUtils.add_worktree(base_repo_path, worktree_path, branch, create_branch=False)
                self._detach_upstream(worktree_path, warnings)
                return SwitchResult(repo_name=repo_name, success=True,
                                    message=f"Added worktree for existing local branch '{branch}'",
                                    status=SwitchStatus.ADDED_LOCAL, warnings=warnings)

            if exists_remotely:
                GitUtils.add_worktree_with_tracking(base_repo_path, worktree_path,
                                                    branch, f"origin/{branch}")
                return SwitchResult(repo_name=repo_name, success=True,
                                    message=f"Added worktree and tracking remote branch 'origin/{branch}'",
                                    status=SwitchStatus.ADDED_REMOTE, warnings=warnings)

            GitUtils.create_branch(base_repo_path, branch, f"origin/{base_branch}")
            GitUtils.add_worktree(base_repo_path, worktree_path, branch, create_branch=False)
            self._detach_upstream(worktree_path, warnings)
            return SwitchResult(repo_name=repo_name, success=True,
                                message=f"Created new branch '{branch}' from origin/{base_branch} and added worktree",
                                status=SwitchStatus.CREATED_NEW, warnings=warnings)

        except Exception as e:
            logger.error(f"Failed to create worktree for {repo_name}: {e}")
            return SwitchResult(repo_name=repo_name, success=False,
                                message=f"Failed to create worktree: {e}",
                                status=SwitchStatus.ERROR, warnings=warnings)

    @staticmethod
    def _detach_upstream(worktree_path: Path, warnings: list[str]) -> None:
        # A fresh branch must not pull from or push to the base it came from
        if not GitUtils.unset_upstream(worktree_path):
            warnings.append("Could not unset upstream tracking branch")

    def get_worktree_group(self, label: str) -> WorktreeInfo | None:
        """Probe every configured repository under ``label``.

        Returns:
            WorktreeInfo, or None if the label directory does not exist
        """
        try:
            validate_path_component(label, "label")
        except InvalidNameError:
            return None

        label_dir = self.worktrees_dir / label
        if not label_dir.is_dir():
            return None

        repos = [
            Worktree(repo.name, label_dir / repo.name).to_info()
            for repo in self.config.repos
        ]
        return WorktreeInfo(label=label, repos=repos)

    def list_worktree_groups(self) -> list[WorktreeInfo]:
        """List every label found under the worktree root."""
        if not self.worktrees_dir.is_dir():
            return []

        labels = sorted(
            entry.name for entry in self.worktrees_dir.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

        groups = []
        for label in labels:
            info = self.get_worktree_group(label)
            if info:
                groups.append(info)
        return groups

    def worktree_group_exists(self, label: str) -> bool:
        """Check whether the label directory exists."""
        return self.get_worktree_group(label) is not None


class Worktree:
    """One repository's worktree inside a label directory."""

    def __init__(self, name: str, path: Path):
        """Initialize worktree instance."""
        self.name = name
        self.path = path

    @property
    def exists(self) -> bool:
        """Check if the directory exists and is a git worktree."""
        return FileUtils.is_worktree(self.path)

    @property
    def current_branch(self) -> str:
        """Get current branch name."""
        return GitUtils.get_current_branch(self.path)

    @property
    def uncommitted_count(self) -> int:
        """Number of modified, staged and untracked files."""
        return GitUtils.get_uncommitted_count(self.path)

    def to_info(self) -> RepoWorktreeInfo:
        """Read the live state of this worktree."""
        if not self.exists:
            return RepoWorktreeInfo(name=self.name, branch="", path=str(self.path),
                                    clean=True, uncommitted=0, exists=False)

        try:
            branch = self.current_branch
        except GitOperationError as e:
            logger.warning(f"Could not read git info for {self.path}: {e}")
            return RepoWorktreeInfo(name=self.name, branch="?", path=str(self.path),
                                    clean=False, uncommitted=0, exists=True)

        uncommitted = self.uncommitted_count
        return RepoWorktreeInfo(name=self.name, branch=branch, path=str(self.path),
                                clean=uncommitted == 0, uncommitted=uncommitted, exists=True)

    def __str__(self) -> str:
        """String representation of worktree."""
        return f"Worktree(name={self.name}, path={self.path})"

    def __repr__(self) -> str:
        """Detailed string representation of worktree."""
        return f"Worktree(name='{self.name}', path='{self.path}', exists={self.exists})"
