"""Tearing down worktree groups across repositories."""

import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from .config import Config, RepoConfig
from .detect import xcode_project_name
from .exceptions import GitOperationError, InvalidNameError, PathTraversalError
from .models import CleanResult, CleanStatus
from .utils import FileUtils, GitUtils
from .validation import resolve_within, validate_path_component

if TYPE_CHECKING:
    from .build import BuildTracker

logger = logging.getLogger(__name__)


class CleanupManager:
    """Removes worktrees, their directories and optionally their branches."""

    def __init__(self, config: Config, build_tracker: "BuildTracker | None" = None):
        """Initialize cleanup manager.

        Args:
            config: Configuration with the worktree root and repositories
            build_tracker: Tracker whose builds for a label are killed
                before that label is deleted
        """
        self.config = config
        self.build_tracker = build_tracker

    def find_derived_data(self, worktree_path: Path) -> Path | None:
        """Locate the Xcode derived data directory of the project at ``worktree_path``.

        Matches ``<ProjectName>-*`` by name only, so a different checkout of
        the same project shares the match.
        """
        project_name = xcode_project_name(worktree_path)
        if not project_name:
            return None

        derived_data_dir = self.config.derived_data_dir
        try:
            entries = sorted(derived_data_dir.iterdir())
        except OSError:
            return None

        for entry in entries:
            if entry.name.startswith(f"{project_name}-") and entry.is_dir():
                return entry
        return None

    def clean_worktree_group(self,
                             label: str,
                             repo: str | None = None,
                             force: bool = False,
                             delete_branches: bool = False,
                             dry_run: bool = False) -> list[CleanResult]:
        """Remove every repository worktree under ``label``.

        Args:
            label: Label whose directory is cleaned
            repo: Only clean this repository
            force: Delete directories that are not git worktrees and keep
                going when ``git worktree remove`` fails
            delete_branches: Also force-delete the local branch of each worktree
            dry_run: Report what would be deleted without deleting

        Returns:
            One result per repository, plus a trailing result when the empty
            label folder itself is removed
        """
        try:
            validate_path_component(label, "label")
            label_dir = resolve_within(self.config.worktrees_dir, label)
        except (InvalidNameError, PathTraversalError) as e:
            logger.error(f"Refusing to clean '{label}': {e}")
            return [CleanResult(repo_name="", success=False, message=str(e),
                                status=CleanStatus.ERROR)]

        if self.build_tracker is not None:
            killed = self.build_tracker.kill_all_builds_for_label(label)
            if killed:
                logger.info(f"Killed {killed} active build(s) for {label}")

        if not label_dir.exists():
            return [CleanResult(repo_name="", success=False,
                                message=f"No worktree directory found at {label_dir}",
                                status=CleanStatus.NOT_FOUND)]

        repos = self.config.repos
        if repo is not None:
            repos = [r for r in repos if r.name == repo]
            if not repos:
                return [CleanResult(repo_name=repo, success=False,
                                    message=f"Repository '{repo}' not found in configuration",
                                    status=CleanStatus.ERROR)]

        results = []
        for repo_config in repos:
            result = self._clean_repo(repo_config, label_dir / repo_config.name,
                                      force, delete_branches, dry_run)
            logger.info(f"{repo_config.name}: {result.status.value} - {result.message}")
            results.append(result)

        if not dry_run and label_dir.exists():
            try:
                if not FileUtils.visible_entries(label_dir):
                    shutil.rmtree(label_dir)
                    results.append(CleanResult(repo_name="", success=True,
                                               message=f"Deleted empty label folder: {label_dir}",
                                               status=CleanStatus.DELETED))
            except OSError as e:
                logger.warning(f"Could not remove label folder {label_dir}: {e}")

        return results

    def _clean_repo(self, repo_config: RepoConfig, worktree_path: Path, force: bool,
                    delete_branches: bool, dry_run: bool) -> CleanResult:
        name = repo_config.name

        if not worktree_path.exists():
            return CleanResult(repo_name=name, success=True,
                               message=f"Path not found (already deleted): {worktree_path}",
                               status=CleanStatus.NOT_FOUND)

        is_worktree = FileUtils.is_worktree(worktree_path)
        if not is_worktree and not force:
            return CleanResult(repo_name=name, success=False,
                               message="Not a Git worktree (use force to delete)",
                               status=CleanStatus.NOT_WORKTREE)

        derived_data = self.find_derived_data(worktree_path)

        if dry_run:
            message = f"Would delete: {worktree_path}"
            if derived_data:
                message += f"\nWould also delete DerivedData: {derived_data}"
            return CleanResult(repo_name=name, success=True, message=message,
                               status=CleanStatus.DRY_RUN)

        warnings: list[str] = []
        try:
            branch_name = None
            if delete_branches and is_worktree:
                try:
                    branch_name = GitUtils.get_current_branch(worktree_path)
                except GitOperationError as e:
                    logger.warning(f"Could not read branch of {worktree_path}: {e}")
                    warnings.append(f"Could not determine branch: {e.details}")

            remove_failed = False
            if is_worktree:
                try:
                    GitUtils.remove_worktree(repo_config.base_path, worktree_path, force=force)
                except GitOperationError as e:
                    if not force:
                        return CleanResult(repo_name=name, success=False,
                                           message=f"Failed to remove Git worktree: {e}",
                                           status=CleanStatus.ERROR)
                    remove_failed = True
                    logger.warning(f"git worktree remove failed for {worktree_path}, deleting anyway: {e}")
                    warnings.append(f"git worktree remove failed: {e.details}")

            if derived_data:
                try:
                    shutil.rmtree(derived_data)
                except OSError as e:
                    logger.warning(f"Could not delete DerivedData {derived_data}: {e}")
                    warnings.append(f"Could not delete DerivedData: {e}")
                    derived_data = None

            if FileUtils.remove_directory(worktree_path):
                message = f"Successfully deleted: {worktree_path}"
            else:
                message = "Worktree removed (folder already deleted)"
            if derived_data:
                message += f"\nAlso deleted DerivedData: {derived_data}"

            if remove_failed:
                # Directory is gone; drop the metadata git still holds for it
                try:
                    GitUtils.prune_worktrees(repo_config.base_path)
                except GitOperationError as e:
                    logger.debug(f"Prune failed for {name}: {e}")

            if branch_name:
                try:
                    GitUtils.delete_local_branch(repo_config.base_path, branch_name, force=True)
                    message += f"\nAlso deleted local branch: {branch_name}"
                except GitOperationError as e:
                    logger.warning(f"Could not delete branch {branch_name} in {name}: {e}")
                    message += f"\nFailed to delete local branch '{branch_name}': {e}"
                    warnings.append(f"Branch deletion failed: {e.details}")

            return CleanResult(repo_name=name, success=True, message=message,
                               status=CleanStatus.DELETED, warnings=warnings)

        except Exception as e:
            logger.error(f"Failed to delete {worktree_path}: {e}")
            return CleanResult(repo_name=name, success=False, message=f"Failed to delete: {e}",
                               status=CleanStatus.ERROR, warnings=warnings)
