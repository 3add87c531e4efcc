from __future__ import annotations

import hashlib
import re
import sys
from enum import StrEnum, auto
from typing import TYPE_CHECKING, Any

import pathspec

from snaptree.exceptions import ValidationError
from snaptree.git import GitClient
from snaptree.logging import logger
from snaptree.pipeline import BaseStage

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

    from snaptree.models import FileDescriptor, PipelineContext

    GitClientFactory = Callable[[Path], GitClient]

CASE_INSENSITIVE_PLATFORM = sys.platform in {"win32", "darwin"}
_DIGITS = re.compile(r"(\d+)")
GLOB_CHARS = frozenset("*?[")


class SortBy(StrEnum):
    """Sort criteria of :class:`SortStage`."""

    PATH = auto()
    NAME = auto()
    SIZE = auto()
    MODIFIED = auto()
    EXTENSION = auto()
    DEPTH = auto()


def natural_key(text: str) -> tuple[Any, ...]:
    """Case-insensitive key ordering embedded numbers by value (``file2`` < ``file10``)."""
    return tuple(int(tok) if tok.isdigit() else tok.lower() for tok in _DIGITS.split(text))


def _compile(patterns: Sequence[str], *, casefold: bool = False) -> pathspec.PathSpec:
    lines = [p.lower() for p in patterns] if casefold else list(patterns)
    return pathspec.PathSpec.from_lines("gitwildmatch", lines)


class AlwaysIncludeStage(BaseStage):
    """Flag files matching any force-include pattern.

    Patterns without glob characters match an exact path or a base name.
    Matching ignores case only on case-insensitive platforms.
    """

    name = "always_include"

    def __init__(self, patterns: Sequence[str] | None = None, *, case_insensitive: bool | None = None) -> None:
        self.patterns = list(patterns) if patterns is not None else None
        self.case_insensitive = CASE_INSENSITIVE_PLATFORM if case_insensitive is None else case_insensitive

    def matches(self, file: FileDescriptor, patterns: Sequence[str]) -> bool:
        fold = str.lower if self.case_insensitive else str
        path = fold(file.path)
        name = fold(file.name)
        literal = [fold(p.strip("/")) for p in patterns if not any(c in GLOB_CHARS for c in p)]
        if path in literal or name in literal:
            return True
        globs = [p for p in patterns if any(c in GLOB_CHARS for c in p)]
        return bool(globs) and _compile(globs, casefold=self.case_insensitive).match_file(path)

    def process(self, context: PipelineContext) -> PipelineContext:
        patterns = self.patterns if self.patterns is not None else list(context.profile.always)
        if not patterns:
            return context
        marked = 0
        for file in context.files:
            if self.matches(file, patterns):
                file.always_include = True
                marked += 1
        context.stats["always_included"] = marked
        logger.info("always_include_marked", count=marked)
        return context


class ProfileFilterStage(BaseStage):
    """Apply the profile's filter and exclude globs; flagged files always survive."""

    name = "profile_filter"

    def process(self, context: PipelineContext) -> PipelineContext:
        profile = context.profile
        filters = _compile(profile.filter) if profile.filter else None
        excludes = _compile(profile.exclude) if profile.exclude else None
        kept: list[FileDescriptor] = []
        for file in context.files:
            context.check_cancelled()
            if file.always_include:
                kept.append(file)
                continue
            if filters is not None and not filters.match_file(file.path):
                continue
            if excludes is not None and excludes.match_file(file.path):
                continue
            kept.append(file)
        context.stats["excluded_by_profile"] = len(context.files) - len(kept)
        context.files = kept
        return context


class GitFilterStage(BaseStage):
    """Restrict files to those modified (or changed since a ref) and annotate git status.

    Options read from the context: ``modified`` (bool), ``changed`` (ref name)
    and ``with_git_status`` (bool). Failures keep the unfiltered list.
    """

    name = "git_filter"

    def __init__(self, client_factory: GitClientFactory | None = None) -> None:
        self.client_factory = client_factory

    def _client(self, context: PipelineContext) -> GitClient:
        if self.client_factory is not None:
            return self.client_factory(context.base_path)
        return GitClient(context.base_path, context.settings.retry)

    def process(self, context: PipelineContext) -> PipelineContext:
        opts = context.options
        modified = bool(opts.get("modified"))
        changed: str | None = opts.get("changed")
        with_status = bool(opts.get("with_git_status"))
        if not (modified or changed or with_status):
            return context
        client = self._client(context)
        if not client.is_repository():
            logger.info("git_filter_skipped", reason="not a repository")
            return context

        filter_type = None
        if modified or changed:
            if modified:
                wanted = set(client.get_modified_files())
                filter_type = "modified"
            else:
                wanted = set(client.get_changed_files(changed))
                filter_type = f"changed:{changed}"
            before = len(context.files)
            context.files = [f for f in context.files if f.path in wanted]
            context.stats["git_filtered"] = before - len(context.files)

        if with_status:
            statuses = client.get_file_statuses(f.path for f in context.files)
            for file in context.files:
                file.git_status = statuses.get(file.path, "unknown")

        context.git_metadata = client.metadata(filter_type)
        return context

    def on_error(self, error: Exception, context: PipelineContext) -> PipelineContext:
        logger.warning("git_filter_failed", error=str(error))
        return context


class DedupeStage(BaseStage):
    """Keep the first file of every group of identical text content."""

    name = "dedupe"

    def process(self, context: PipelineContext) -> PipelineContext:
        seen: set[str] = set()
        kept: list[FileDescriptor] = []
        for file in context.files:
            if file.content is None or file.is_binary:
                kept.append(file)
                continue
            digest = hashlib.md5(file.content.encode("utf-8"), usedforsecurity=False).hexdigest()
            if digest in seen:
                continue
            seen.add(digest)
            kept.append(file)
        context.stats["duplicates_removed"] = len(context.files) - len(kept)
        context.files = kept
        return context

    def on_error(self, error: Exception, context: PipelineContext) -> PipelineContext:
        logger.warning("dedupe_failed", error=str(error))
        return context


def sort_key(sort_by: SortBy) -> Callable[[FileDescriptor], Any]:
    """Primary key for ``sort_by`` followed by the natural path order."""
    primary: dict[SortBy, Callable[[FileDescriptor], Any]] = {
        SortBy.PATH: lambda f: (),
        SortBy.NAME: lambda f: natural_key(f.name),
        SortBy.SIZE: lambda f: f.size,
        SortBy.MODIFIED: lambda f: f.modified.timestamp() if f.modified else 0.0,
        SortBy.EXTENSION: lambda f: f.extension,
        SortBy.DEPTH: lambda f: f.depth,
    }
    pick = primary[sort_by]
    return lambda f: (pick(f), natural_key(f.path))


class SortStage(BaseStage):
    """Stable sort by path, name, size, modified time, extension or depth."""

    name = "sort"

    def __init__(self, sort_by: str = "path", order: str = "asc") -> None:
        self.sort_by = sort_by
        self.order = order

    def validate(self, context: PipelineContext) -> bool:
        if self.sort_by not in {s.value for s in SortBy}:
            raise ValidationError(field="sort_by", value=self.sort_by, message=f"Invalid sort field: {self.sort_by}")
        if self.order not in {"asc", "desc"}:
            raise ValidationError(field="order", value=self.order, message=f"Invalid sort order: {self.order}")
        return True

    def process(self, context: PipelineContext) -> PipelineContext:
        context.files = sorted(context.files, key=sort_key(SortBy(self.sort_by)), reverse=self.order == "desc")
        return context


class LimitStage(BaseStage):
    """Keep only the first ``limit`` files."""

    name = "limit"

    def __init__(self, limit: int) -> None:
        self.limit = limit

    def process(self, context: PipelineContext) -> PipelineContext:
        if len(context.files) > self.limit:
            context.stats["truncated_count"] = len(context.files) - self.limit
            context.files = context.files[: self.limit]
        return context

