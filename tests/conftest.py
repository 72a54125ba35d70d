"""Shared fixtures: real git repositories cloned from a local bare origin."""

import subprocess
from pathlib import Path

import pytest

from etz.config import Config, RepoConfig

REPO_NAMES = ("project.ios", "project.android")


def git(*args: str, cwd: Path) -> str:
    """Run git with a fixed identity and return stdout."""
    result = subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@test.com", *args],
        cwd=cwd, check=True, capture_output=True, text=True,
    )
    return result.stdout


def commit_file(repo_path: Path, name: str, content: str, message: str) -> None:
    (repo_path / name).write_text(content)
    git("add", name, cwd=repo_path)
    git("commit", "-m", message, cwd=repo_path)


def make_repo(root: Path, name: str) -> Path:
    """Create ``base/<name>``, a clone of ``origin/<name>.git``.

    The origin has ``main``, ``develop`` (one commit ahead of main, adding
    ``develop.txt``) and ``remote-feature``. Only ``main`` exists locally.
    """
    seed = root / "seed" / name
    seed.mkdir(parents=True)
    git("init", cwd=seed)
    commit_file(seed, "README.md", f"# {name}", "Initial commit")
    git("branch", "-M", "main", cwd=seed)

    git("checkout", "-b", "develop", cwd=seed)
    commit_file(seed, "develop.txt", "develop", "Develop work")
    git("checkout", "main", cwd=seed)
    git("checkout", "-b", "remote-feature", cwd=seed)
    commit_file(seed, "feature.txt", "feature", "Feature work")
    git("checkout", "main", cwd=seed)

    origin = root / "origin" / f"{name}.git"
    origin.parent.mkdir(parents=True, exist_ok=True)
    git("clone", "--bare", str(seed), str(origin), cwd=root)

    base = root / "base" / name
    base.parent.mkdir(parents=True, exist_ok=True)
    git("clone", str(origin), str(base), cwd=root)
    return base


@pytest.fixture
def repos(tmp_path):
    """Base clones keyed by repository name."""
    return {name: make_repo(tmp_path, name) for name in REPO_NAMES}


@pytest.fixture
def config(tmp_path, repos):
    """Configuration over the base clones with ``main`` as base branch."""
    return Config(
        base_branch="main",
        worktrees_dir=tmp_path / "worktrees",
        repos=[RepoConfig(name=name, base_path=path) for name, path in repos.items()],
        derived_data_dir=tmp_path / "DerivedData",
    )


@pytest.fixture
def empty_config(tmp_path):
    """Configuration without repositories."""
    return Config(worktrees_dir=tmp_path / "worktrees", derived_data_dir=tmp_path / "DerivedData")


@pytest.fixture
def run_git():
    """The ``git`` helper, for tests that prepare repository state."""
    return git
