from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from snaptree.settings import Settings

if TYPE_CHECKING:
    from snaptree.concurrency import CancellationToken
    from snaptree.events import EventEmitter


class FileDescriptor(BaseModel):
    """One file of a snapshot.

    Created by discovery without content, then completed in place by the
    downstream stages (content, binary classification, flags).

    Attributes:
        path: POSIX path relative to the base directory, unique within an operation.
        absolute_path: Absolute path on disk.
        size: File size in bytes, as seen during discovery.
        modified: Modification time (UTC).
        content: Text content, base64 text, a placeholder, or None when not loaded.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    path: str = Field(..., description="POSIX relative path")
    absolute_path: Path = Field(..., description="Absolute file path")
    size: int = Field(default=0, ge=0, description="File size in bytes")
    modified: datetime | None = Field(default=None, description="Modification time")
    is_binary: bool = Field(default=False, description="Binary classification")
    binary_category: str | None = Field(default=None, description="Binary category when binary")
    encoding: str | None = Field(default=None, description="Detected encoding or 'base64'")
    content: str | None = Field(default=None, description="Loaded content")
    git_status: str | None = Field(default=None, description="Version-control status")
    always_include: bool = Field(default=False, description="Force-include marker")
    excluded: bool = Field(default=False, description="Rendered as an exclusion comment")
    exclude_reason: str | None = Field(default=None, description="Why content was excluded")
    truncated: bool = Field(default=False, description="Content was truncated")
    original_length: int | None = Field(default=None, description="Length before truncation")
    secrets_redacted: int = Field(default=0, ge=0, description="Number of redacted spans")
    transformed_by: str | None = Field(default=None, description="Transformer identifier")

    @computed_field
    @property
    def name(self) -> str:
        """Base name of the file."""
        return PurePosixPath(self.path).name

    @computed_field
    @property
    def extension(self) -> str:
        """Lower-cased suffix including the dot, or an empty string."""
        return PurePosixPath(self.path).suffix.lower()

    @computed_field
    @property
    def depth(self) -> int:
        """Number of directories between the base and the file."""
        return self.path.count("/")

    def release_content(self) -> None:
        """Drop loaded content once it has been serialized."""
        self.content = None


class ProfileOptions(BaseModel):
    """Walk options of a profile."""

    model_config = ConfigDict(frozen=True)

    respect_gitignore: bool = True
    include_hidden: bool = False
    follow_symlinks: bool = False
    max_depth: int | None = Field(default=None, ge=0)
    min_file_size: int | None = Field(default=None, ge=0)
    max_file_size: int | None = Field(default=None, ge=0)
    max_total_size: int | None = Field(default=None, ge=0)
    max_file_count: int | None = Field(default=None, ge=0)


class ExternalSource(BaseModel):
    """A directory outside the base path merged into the snapshot.

    Attributes:
        source: Directory to read, relative paths resolve against the base path.
        destination: Prefix given to the merged paths.
        rules: Include globs applied inside ``source``; empty means every file.
        optional: Skip the source with a warning instead of failing the run.
    """

    model_config = ConfigDict(frozen=True)

    source: str = Field(..., min_length=1)
    destination: str = ""
    rules: tuple[str, ...] = ()
    optional: bool = False


class Profile(BaseModel):
    """Merged filtering policy for one operation. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    name: str = "default"
    include: tuple[str, ...] = ("**/*",)
    exclude: tuple[str, ...] = ()
    filter: tuple[str, ...] = ()
    always: tuple[str, ...] = ()
    options: ProfileOptions = Field(default_factory=ProfileOptions)
    external: tuple[ExternalSource, ...] = ()


class LastCommit(BaseModel):
    """Subset of the most recent commit."""

    hash: str
    message: str = ""


class GitMetadata(BaseModel):
    """Repository facts rendered by the serializers."""

    branch: str | None = None
    last_commit: LastCommit | None = None
    has_uncommitted_changes: bool = False
    filter_type: str | None = None


@dataclass
class Metrics:
    """Counters for one operation, threaded through the context."""

    files_loaded: int = 0
    bytes_read: int = 0
    stage_durations: dict[str, float] = field(default_factory=dict)

    def record_read(self, nbytes: int) -> None:
        self.files_loaded += 1
        self.bytes_read += nbytes


@dataclass
class PipelineContext:
    """Mutable work item passed from stage to stage."""

    base_path: Path
    settings: Settings = field(default_factory=Settings)
    profile: Profile = field(default_factory=Profile)
    options: dict[str, Any] = field(default_factory=dict)
    files: list[FileDescriptor] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)
    metrics: Metrics = field(default_factory=Metrics)
    git_metadata: GitMetadata | None = None
    instructions: str | None = None
    instructions_name: str | None = None
    token: CancellationToken | None = None
    events: EventEmitter | None = None

    def check_cancelled(self) -> None:
        """Raise CancelledError when the operation's token was cancelled."""
        if self.token is not None:
            self.token.raise_if_cancelled()

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        if self.events is not None:
            self.events.emit(event, payload)
