"""Git, filesystem and process utilities for Etz."""

import asyncio
import logging
import shutil
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path

from git import Repo
from git.exc import GitCommandError, GitError

from .exceptions import GitOperationError
from .models import GitStatus, WorktreeEntry

logger = logging.getLogger(__name__)

REMOTE_PREFIX = "remotes/origin/"


@contextmanager
def _git_operation(operation: str):
    """Translate GitPython failures into GitOperationError."""
    try:
        yield
    except GitCommandError as e:
        details = (e.stderr or "").strip() or str(e)
        raise GitOperationError(operation, details) from e
    except GitError as e:
        raise GitOperationError(operation, str(e)) from e


def _git(repo_path: str | Path):
    """Command wrapper bound to ``repo_path``."""
    return Repo(repo_path).git


def parse_worktree_list(output: str) -> list[WorktreeEntry]:
    """Parse ``git worktree list --porcelain`` output.

    Records are separated by blank lines; a record is only emitted when it
    carries a ``worktree`` line.
    """
    worktrees: list[WorktreeEntry] = []
    current: dict = {}

    def flush():
        if current.get("path"):
            worktrees.append(WorktreeEntry(
                path=current["path"],
                branch=current.get("branch", ""),
                bare=current.get("bare", False),
            ))

    for line in output.split("\n"):
        line = line.rstrip("\r")
        if line.startswith("worktree "):
            current["path"] = line[len("worktree "):]
        elif line.startswith("branch "):
            branch = line[len("branch "):]
            if branch.startswith("refs/heads/"):
                branch = branch[len("refs/heads/"):]
            current["branch"] = branch
        elif line == "bare":
            current["bare"] = True
        elif line == "":
            flush()
            current = {}

    # git output is stripped, so the last record has no trailing blank line
    flush()
    return worktrees


def parse_status(output: str) -> GitStatus:
    """Parse ``git status --porcelain --branch`` output."""
    modified = staged = untracked = ahead = behind = 0

    for line in output.splitlines():
        if line.startswith("## "):
            if "[" in line and line.endswith("]"):
                tracking = line[line.rindex("[") + 1:-1]
                for part in tracking.split(","):
                    part = part.strip()
                    if part.startswith("ahead "):
                        ahead = int(part.split()[1])
                    elif part.startswith("behind "):
                        behind = int(part.split()[1])
            continue

        if len(line) < 2:
            continue

        if line.startswith("??"):
            untracked += 1
            continue

        index_status, worktree_status = line[0], line[1]
        if index_status != " ":
            staged += 1
        if worktree_status != " ":
            modified += 1

    return GitStatus(
        clean=(modified + staged + untracked) == 0,
        modified=modified,
        staged=staged,
        untracked=untracked,
        ahead=ahead,
        behind=behind,
    )


class GitUtils:
    """Git utility functions."""

    @staticmethod
    def is_git_repo(path: str | Path) -> bool:
        """Check if path is a git repository."""
        try:
            _git(path).rev_parse("--git-dir")
            return True
        except (GitError, OSError):
            return False

    @staticmethod
    def get_status(repo_path: str | Path) -> GitStatus:
        """Get the working tree status."""
        with _git_operation("status"):
            output = _git(repo_path).status("--porcelain", "--branch")
        return parse_status(output)

    @staticmethod
    def get_uncommitted_count(repo_path: str | Path) -> int:
        """Modified, staged and untracked files combined; 0 if unreadable."""
        try:
            status = GitUtils.get_status(repo_path)
        except GitOperationError as e:
            logger.debug(f"Could not read status of {repo_path}: {e}")
            return 0
        return status.modified + status.staged + status.untracked

    @staticmethod
    def get_current_branch(repo_path: str | Path) -> str:
        """Get the current branch name."""
        with _git_operation("get-branch"):
            return _git(repo_path).rev_parse("--abbrev-ref", "HEAD").strip()

    @staticmethod
    def list_branches(repo_path: str | Path) -> list[str]:
        """List local and remote branches with the origin prefix removed."""
        with _git_operation("get-branches"):
            output = _git(repo_path).branch("-a", "--format=%(refname)")

        branches = set()
        for ref in output.splitlines():
            ref = ref.strip()
            # Skip the HEAD pseudo-ref and "(HEAD detached at ...)"
            if not ref or ref.startswith("(") or ref.split("/")[-1] == "HEAD":
                continue
            if ref.startswith("refs/heads/"):
                name = ref[len("refs/heads/"):]
            elif ref.startswith("refs/remotes/"):
                name = "remotes/" + ref[len("refs/remotes/"):]
            else:
                name = ref
            if name.startswith(REMOTE_PREFIX):
                name = name[len(REMOTE_PREFIX):]
            branches.add(name)
        return sorted(branches)

    @staticmethod
    def branch_exists_locally(repo_path: str | Path, branch_name: str) -> bool:
        """Check if ``refs/heads/<branch_name>`` exists."""
        try:
            _git(repo_path).show_ref("--verify", f"refs/heads/{branch_name}")
            return True
        except (GitError, OSError):
            return False

    @staticmethod
    def branch_exists_remotely(repo_path: str | Path, branch_name: str) -> bool:
        """Check if origin advertises ``branch_name``."""
        try:
            output = _git(repo_path).ls_remote("--heads", "origin", branch_name)
        except (GitError, OSError):
            return False
        target = f"refs/heads/{branch_name}"
        return any(line.split("\t")[-1].strip() == target for line in output.splitlines())

    @staticmethod
    def list_worktrees(repo_path: str | Path) -> list[WorktreeEntry]:
        """List all worktrees attached to a repository."""
        with _git_operation("list-worktrees"):
            output = _git(repo_path).worktree("list", "--porcelain")
        return parse_worktree_list(output)

    @staticmethod
    def find_worktree_by_branch(repo_path: str | Path, branch_name: str) -> str | None:
        """Return the path of the worktree that has ``branch_name`` checked out."""
        target = branch_name[len("refs/heads/"):] if branch_name.startswith("refs/heads/") else branch_name
        try:
            worktrees = GitUtils.list_worktrees(repo_path)
        except GitOperationError as e:
            logger.debug(f"Could not list worktrees for {repo_path}: {e}")
            return None

        for worktree in worktrees:
            if worktree.branch == target:
                return worktree.path
        return None

    @staticmethod
    def add_worktree(repo_path: str | Path, worktree_path: str | Path,
                     branch_name: str, create_branch: bool = False) -> None:
        """Add a worktree, optionally creating the branch with ``-b``."""
        args = ["add"]
        if create_branch:
            args.extend(["-b", branch_name])
        args.append(str(worktree_path))
        if not create_branch:
            args.append(branch_name)

        with _git_operation("add-worktree"):
            _git(repo_path).worktree(*args)

    @staticmethod
    def add_worktree_with_tracking(repo_path: str | Path, worktree_path: str | Path,
                                   local_branch: str, remote_ref: str) -> None:
        """Add a worktree on a new local branch tracking ``remote_ref``."""
        with _git_operation("add-worktree-tracking"):
            _git(repo_path).worktree("add", "--track", "-b", local_branch,
                                     str(worktree_path), remote_ref)

    @staticmethod
    def remove_worktree(repo_path: str | Path, worktree_path: str | Path,
                        force: bool = False) -> None:
        """Remove a worktree."""
        args = ["remove"]
        if force:
            args.append("--force")
        args.append(str(worktree_path))

        with _git_operation("remove-worktree"):
            _git(repo_path).worktree(*args)

    @staticmethod
    def prune_worktrees(repo_path: str | Path) -> None:
        """Prune stale worktree metadata."""
        with _git_operation("prune-worktrees"):
            _git(repo_path).worktree("prune")

    @staticmethod
    def fetch_repo(repo_path: str | Path) -> None:
        """Fetch latest changes from the default remote."""
        with _git_operation("fetch"):
            _git(repo_path).fetch()

    @staticmethod
    def create_branch(repo_path: str | Path, branch_name: str, start_point: str) -> None:
        """Create a local branch at ``start_point``."""
        with _git_operation("create-branch"):
            _git(repo_path).branch(branch_name, start_point)

    @staticmethod
    def delete_local_branch(repo_path: str | Path, branch_name: str, force: bool = False) -> None:
        """Delete a local branch (``-D`` when forced, ``-d`` otherwise)."""
        with _git_operation("delete-branch"):
            _git(repo_path).branch("-D" if force else "-d", branch_name)

    @staticmethod
    def unset_upstream(worktree_path: str | Path) -> bool:
        """Drop the upstream of the checked out branch.

        Returns:
            True on success, False if git refused (not critical)
        """
        try:
            _git(worktree_path).branch("--unset-upstream")
            return True
        except (GitError, OSError) as e:
            logger.debug(f"Could not unset upstream in {worktree_path}: {e}")
            return False


class FileUtils:
    """File system utility functions."""

    @staticmethod
    def is_worktree(path: Path) -> bool:
        """A worktree directory exists and carries a ``.git`` marker."""
        return path.exists() and (path / ".git").exists()

    @staticmethod
    def remove_directory(path: Path) -> bool:
        """Recursively delete ``path``; False if it was already gone."""
        if not path.exists() and not path.is_symlink():
            return False
        if path.is_symlink() or path.is_file():
            path.unlink()
        else:
            shutil.rmtree(path)
        return True

    @staticmethod
    def create_directory(path: Path, parents: bool = True) -> None:
        """Create directory."""
        path.mkdir(parents=parents, exist_ok=True)

    @staticmethod
    def visible_entries(path: Path) -> list[str]:
        """Directory entries that are not dotfiles."""
        return sorted(entry.name for entry in path.iterdir() if not entry.name.startswith("."))

    @staticmethod
    def read_file(path: Path) -> str | None:
        """Read file content."""
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None


class ProcessUtils:
    """Process utility functions."""

    @staticmethod
    async def run_command(command: list[str], cwd: Path | None = None,
                          timeout: int | None = None,
                          on_start: Callable[[asyncio.subprocess.Process], None] | None = None
                          ) -> tuple[int, str, str]:
        """Run a command asynchronously.

        ``on_start`` receives the process right after it is spawned, so a
        caller can terminate it while output is still being collected.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd
            )
        except OSError as e:
            return -1, "", str(e)

        if on_start is not None:
            on_start(process)

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return -1, "", "Command timed out"
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        return process.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")
