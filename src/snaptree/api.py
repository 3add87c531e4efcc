from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from snaptree.discovery import DiscoveryStage
from snaptree.exceptions import ValidationError
from snaptree.external import ExternalSourceStage
from snaptree.filters import AlwaysIncludeStage, DedupeStage, GitFilterStage, LimitStage, ProfileFilterStage, SortStage
from snaptree.formatters import format_files, format_stream
from snaptree.formatting import FormatOptions, parse_format, total_size
from snaptree.loading import CHAR_LIMIT_NOTICE, CharLimitStage, FileLoader, LoadingStage
from snaptree.logging import logger
from snaptree.models import PipelineContext
from snaptree.pipeline import Pipeline
from snaptree.profiles import resolve_profile
from snaptree.secrets import SecretsGuard, SecretsGuardStage, build_engine, guard_one
from snaptree.settings import Settings
from snaptree.transform import TRANSFORMERS, InstructionsStage, TransformStage, select_transformers, transform_one

if TYPE_CHECKING:
    from collections.abc import Iterator

    from snaptree.concurrency import CancellationToken
    from snaptree.events import EventEmitter
    from snaptree.models import FileDescriptor
    from snaptree.pipeline import Stage

__all__ = ["CopyResult", "build_stages", "copy", "copy_stream", "format_files", "format_stream", "scan"]


@dataclass
class CopyResult:
    """Outcome of :func:`copy`."""

    output: str
    files: list[FileDescriptor] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)
    output_path: Path | None = None


def _validate_base(base_path: str | Path) -> Path:
    if base_path is None or str(base_path).strip() == "":
        raise ValidationError(field="base_path", value=base_path, message="Base path must not be empty")
    base = Path(base_path).expanduser()
    if not base.exists():
        raise ValidationError(field="base_path", value=str(base), message=f"Path does not exist: {base}")
    if not base.is_dir():
        raise ValidationError(field="base_path", value=str(base), message=f"Path is not a directory: {base}")
    return base.resolve()


def _prepare_context(
    base_path: str | Path,
    options: dict[str, Any] | None,
    settings: Settings | None,
    token: CancellationToken | None,
    events: EventEmitter | None = None,
) -> PipelineContext:
    base = _validate_base(base_path)
    opts = dict(options or {})
    settings = settings if settings is not None else Settings.load()
    profile = resolve_profile(base, opts, settings)
    return PipelineContext(base_path=base, settings=settings, profile=profile, options=opts, token=token, events=events)


def build_stages(options: dict[str, Any], *, load: bool = True) -> list[Stage]:
    """Assemble the stage list of one operation.

    Args:
        options (dict[str, Any]): caller options.
        load (bool): include the content stages (loading, dedupe, transform,
            secrets guard, character budget).

    Returns:
        list[Stage]: stages in execution order.
    """
    stages: list[Stage] = [DiscoveryStage(), ExternalSourceStage(), AlwaysIncludeStage()]
    if options.get("modified") or options.get("changed") or options.get("with_git_status"):
        stages.append(GitFilterStage())
    stages.append(ProfileFilterStage())
    stages.append(SortStage(options.get("sort") or "path", options.get("order") or "asc"))
    if load:
        stages.append(LoadingStage())
        if options.get("dedupe"):
            stages.append(DedupeStage())
        stages.append(TransformStage())
        stages.append(SecretsGuardStage())
    stages.append(InstructionsStage())
    if options.get("limit"):
        stages.append(LimitStage(int(options["limit"])))
    if load and options.get("char_limit"):
        stages.append(CharLimitStage(int(options["char_limit"])))
    return stages


def _run(context: PipelineContext, stages: list[Stage]) -> PipelineContext:
    token = context.token
    if token is None:
        return Pipeline(stages, events=context.events).run(context)

    def on_cancel() -> None:
        logger.info("operation_cancelled", base_path=str(context.base_path))

    token.add_listener(on_cancel)
    try:
        return Pipeline(stages, events=context.events).run(context)
    finally:
        token.remove_listener(on_cancel)


def scan(
    base_path: str | Path,
    options: dict[str, Any] | None = None,
    *,
    settings: Settings | None = None,
    token: CancellationToken | None = None,
    events: EventEmitter | None = None,
) -> Iterator[FileDescriptor]:
    """Discover, filter and (unless ``include_content`` is False) load the files of ``base_path``.

    The pipeline runs before this function returns, so caller errors surface
    immediately; the returned iterator checks ``token`` between files.

    Args:
        base_path: Directory to snapshot.
        options: Caller options (``filter``, ``exclude``, ``always``, ``sort``,
            ``limit``, ``include_content``, ``transforms``...).
        settings: Configuration instance owned by this call; a fresh one is
            loaded when None.
        token: Cancellation signal.
        events: Observer receiving pipeline and stage events.

    Returns:
        Iterator[FileDescriptor]: the selected files in output order.

    Raises:
        ValidationError: If ``base_path`` is empty, missing or not a directory.
        CancelledError: If ``token`` is cancelled.
    """
    context = _prepare_context(base_path, options, settings, token, events)
    load = context.options.get("include_content", True)
    context = _run(context, build_stages(context.options, load=load))

    def iterate() -> Iterator[FileDescriptor]:
        for file in context.files:
            context.check_cancelled()
            yield file

    return iterate()


def format_options(context: PipelineContext, options: dict[str, Any]) -> FormatOptions:
    """Rendering options for the files of ``context``."""
    settings = context.settings
    return FormatOptions(
        format=options.get("format", "xml"),
        only_tree=bool(options.get("only_tree")),
        add_line_numbers=bool(options.get("add_line_numbers")),
        show_size=options.get("show_size", True),
        pretty_print=options.get("pretty_print", settings.pretty_print),
        include_git_status=bool(options.get("with_git_status")),
        char_limit_applied=bool(context.stats.get("truncated_files") or context.stats.get("skipped_files")),
        base_path=str(context.base_path),
        profile_name=context.profile.name,
        instructions=context.instructions,
        instructions_name=context.instructions_name,
        git_metadata=context.git_metadata,
        generated=options.get("generated"),
        tool_name=settings.tool_name,
    )


def copy(
    base_path: str | Path,
    options: dict[str, Any] | None = None,
    *,
    settings: Settings | None = None,
    token: CancellationToken | None = None,
    events: EventEmitter | None = None,
) -> CopyResult:
    """Snapshot ``base_path`` into one formatted document.

    ``dry_run`` skips content loading and renders the selection only.
    ``output`` writes the document to that path as well.

    Raises:
        ValidationError: If the base path or the format is invalid.
        SecretsDetectedError: If secrets are found in fail-on-secrets mode.
        CancelledError: If ``token`` is cancelled.
        PipelineError: If a stage fails without recovering.
    """
    opts = dict(options or {})
    parse_format(opts.get("format", "xml"))
    started = time.perf_counter()
    context = _prepare_context(base_path, opts, settings, token, events)
    dry_run = bool(opts.get("dry_run"))
    context = _run(context, build_stages(opts, load=not dry_run))
    output = format_files(context.files, format_options(context, opts))

    stats = {
        **context.stats,
        "total_files": len(context.files),
        "total_size": total_size(context.files),
        "duration_ms": (time.perf_counter() - started) * 1000,
        "dry_run": dry_run,
        "bytes_read": context.metrics.bytes_read,
        "stage_durations": dict(context.metrics.stage_durations),
    }
    output_path = None
    if opts.get("output"):
        output_path = Path(opts["output"])
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(output, encoding="utf-8")
        logger.info("output_written", path=str(output_path), size=len(output))
    return CopyResult(output=output, files=context.files, stats=stats, output_path=output_path)


class FilePreparer:
    """Load, dedupe, transform, guard and budget one file right before it is rendered."""

    def __init__(self, context: PipelineContext) -> None:
        opts = context.options
        self.context = context
        self.loader = FileLoader(context.settings, context.metrics, opts.get("max_chars_per_file"))
        self.dedupe = bool(opts.get("dedupe"))
        self.seen: set[str] = set()
        self.transformers = select_transformers(opts.get("transforms"), TRANSFORMERS)
        self.guard: SecretsGuard | None = None
        secrets = context.settings.secrets
        if secrets.enabled:
            engine = build_engine(secrets)
            if engine.is_available():
                self.guard = SecretsGuard(secrets, engine)
            else:
                logger.warning("secrets_guard_disabled", engine=engine.name, reason="engine unavailable")
        self.remaining: int | None = int(opts["char_limit"]) if opts.get("char_limit") else None

    def _duplicate(self, file: FileDescriptor) -> bool:
        if not self.dedupe or file.content is None or file.is_binary:
            return False
        digest = hashlib.md5(file.content.encode("utf-8"), usedforsecurity=False).hexdigest()
        if digest in self.seen:
            return True
        self.seen.add(digest)
        return False

    def _budget(self, file: FileDescriptor) -> FileDescriptor | None:
        if self.remaining is None or not file.content:
            return file
        size = len(file.content)
        if size <= self.remaining:
            self.remaining -= size
            return file
        if self.remaining <= 0:
            return None
        file.original_length = file.original_length or size
        file.content = file.content[: self.remaining] + CHAR_LIMIT_NOTICE
        file.truncated = True
        self.remaining = 0
        return file

    def __call__(self, file: FileDescriptor) -> FileDescriptor | None:
        self.context.check_cancelled()
        if self.loader.load(file) is None or self._duplicate(file):
            return None
        if self.transformers:
            transform_one(file, self.transformers)
        if self.guard is not None and guard_one(file, self.guard) is None:
            return None
        return self._budget(file)


def copy_stream(
    base_path: str | Path,
    options: dict[str, Any] | None = None,
    *,
    settings: Settings | None = None,
    token: CancellationToken | None = None,
    events: EventEmitter | None = None,
) -> Iterator[str]:
    """Snapshot ``base_path`` as a lazy sequence of chunks.

    Discovery and filtering run up front. Each file is then loaded,
    transformed and guarded just before its chunk is produced, and its content
    is released right after, so XML, JSON, Markdown and NDJSON hold a single
    file's content at a time.

    Raises:
        ValidationError: If the base path or the format is invalid.
        CancelledError: If ``token`` is cancelled, either up front or while iterating.
    """
    opts = dict(options or {})
    parse_format(opts.get("format", "xml"))
    context = _prepare_context(base_path, opts, settings, token, events)
    context = _run(context, build_stages(opts, load=False))
    fmt = format_options(context, opts).model_copy(update={"char_limit_applied": bool(opts.get("char_limit"))})
    prepare = None if opts.get("dry_run") else FilePreparer(context)
    return format_stream(context.files, fmt, prepare=prepare)
