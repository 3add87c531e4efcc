from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class SnapTreeError(Exception):
    """Base exception for errors in the snaptree module."""

    def __str__(self) -> str:
        return getattr(self, "message", type(self).__name__)

    def to_dict(self) -> dict[str, Any]:
        """Structured representation of the error, safe to log or serialize."""
        payload = {k: (str(v) if isinstance(v, Path) else v) for k, v in asdict(self).items()}
        payload["error"] = type(self).__name__
        return payload


@dataclass(frozen=True)
class ValidationError(SnapTreeError):
    """Raised when a caller supplies an invalid argument."""

    field: str
    value: Any = None
    message: str = "Invalid argument."


@dataclass(frozen=True)
class ConfigurationError(SnapTreeError):
    """Raised when a configuration key is unknown or a profile cannot be parsed."""

    key: str
    message: str = "Invalid configuration."


@dataclass(frozen=True)
class ProfileNotFoundError(SnapTreeError):
    """Raised when a named folder profile does not exist."""

    name: str
    search_path: Path
    message: str = "Profile not found."


@dataclass(frozen=True)
class CancelledError(SnapTreeError):
    """Raised when an operation is stopped through its cancellation token."""

    message: str = "Operation cancelled."


@dataclass(frozen=True)
class PipelineError(SnapTreeError):
    """Raised when a stage fails and no recovery hook produced a substitute context."""

    stage: str
    message: str = "Pipeline stage failed."


@dataclass(frozen=True)
class TransformError(SnapTreeError):
    """Raised by a content transformer that cannot handle a file."""

    transformer: str
    path: str
    message: str = "Transformer failed."


@dataclass(frozen=True)
class SecretFindingSummary:
    """Location of a secret finding; never holds the matched text."""

    file: str
    line: int
    rule_id: str


@dataclass(frozen=True)
class SecretsDetectedError(SnapTreeError):
    """Raised when secrets are found and the guard runs in fail-on-secrets mode."""

    count: int
    findings: tuple[SecretFindingSummary, ...] = field(default_factory=tuple)

    @property
    def message(self) -> str:
        return f"Secrets detected: {self.count} secret(s) found"

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "count": self.count,
            "findings": [asdict(f) for f in self.findings],
        }


@dataclass(frozen=True)
class GitCommandError(SnapTreeError):
    """Raised when a git command fails."""

    command: str
    returncode: int
    stdout: str
    stderr: str

    @property
    def message(self) -> str:
        return f"git command failed ({self.returncode}): {self.command}"


@dataclass(frozen=True)
class NotAGitRepositoryError(SnapTreeError):
    """Raised when the specified directory is not a Git repository."""

    folder: Path
    message: str = "The specified directory is not a Git repository."
