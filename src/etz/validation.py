"""Validation of user supplied labels, repository names and branch names."""

import os
import re
from pathlib import Path

from .exceptions import InvalidNameError, PathTraversalError

SHELL_METACHARACTERS = re.compile(r"[;&|`$()<>\\]")


def validate_path_component(value: str | None, param_name: str = "label") -> str:
    """Validate a string that becomes a single directory name.

    Args:
        value: The label or repository name to check
        param_name: Name used in the error message

    Returns:
        The value unchanged

    Raises:
        InvalidNameError: If the value is empty, absolute or contains
            path separators or traversal sequences
    """
    if not value or not value.strip():
        raise InvalidNameError(f"Invalid {param_name}: cannot be empty")

    if ".." in value or "/" in value or "\\" in value:
        raise InvalidNameError(
            f"Invalid {param_name}: cannot contain path separators or traversal sequences"
        )

    if os.path.isabs(value) or Path(value).is_absolute():
        raise InvalidNameError(f"Invalid {param_name}: cannot be an absolute path")

    return value


def validate_branch_name(branch: str | None) -> str:
    """Basic git ref validation for a branch name passed to git."""
    if not branch or not branch.strip():
        raise InvalidNameError("Branch name cannot be empty")

    if SHELL_METACHARACTERS.search(branch):
        raise InvalidNameError("Invalid branch name: contains shell metacharacters")

    if branch.startswith("-"):
        raise InvalidNameError("Invalid branch name: cannot start with -")

    return branch


def resolve_within(root: str | Path, *parts: str) -> Path:
    """Join ``parts`` onto ``root`` and check the result stays inside it.

    Both sides are fully resolved (symlinks followed) before comparison, so a
    label that passes character validation but points elsewhere through a
    symlink is still rejected.

    Raises:
        PathTraversalError: If the resolved path is not a strict descendant
            of the resolved root
    """
    resolved_root = Path(root).resolve()
    candidate = resolved_root.joinpath(*parts).resolve()

    if candidate == resolved_root or resolved_root not in candidate.parents:
        raise PathTraversalError("Security error: path traversal detected")

    return candidate
