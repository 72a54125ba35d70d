"""Exception hierarchy for Etz."""


class EtzError(Exception):
    """Base exception for all Etz errors."""
    pass


class ConfigNotFoundError(EtzError):
    """Raised when no configuration file can be located."""

    def __init__(self, location: str | None = None):
        self.location = location
        message = "Configuration file not found"
        if location:
            message += f": {location}"
        super().__init__(message)


class InvalidConfigError(EtzError):
    """Raised when the configuration cannot be parsed or validated."""

    def __init__(self, message: str):
        self.details = message
        super().__init__(f"Invalid configuration: {message}")


class WorktreeNotFoundError(EtzError):
    """Raised when a worktree label has no directory under the worktree root."""

    def __init__(self, label: str):
        self.label = label
        super().__init__(f"Worktree '{label}' not found")


class RepositoryNotFoundError(EtzError):
    """Raised when a repository name is not in the configuration."""

    def __init__(self, name: str | None = None):
        self.name = name
        if name:
            super().__init__(f"Repository '{name}' not found in configuration")
        else:
            super().__init__("No repositories configured")


class GitOperationError(EtzError):
    """Raised when a git subcommand fails."""

    def __init__(self, operation: str, details: str):
        self.operation = operation
        self.details = details
        super().__init__(f"Git operation '{operation}' failed: {details}")


class InvalidNameError(EtzError):
    """Raised when a label, repository or branch name fails validation."""
    pass


class PathTraversalError(EtzError):
    """Raised when a resolved path escapes the worktree root."""
    pass


class BuildError(EtzError):
    """Raised by build pipeline steps that fail after the main process."""
    pass
