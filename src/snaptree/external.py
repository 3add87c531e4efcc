from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from snaptree import events as ev
from snaptree.discovery import discover_files
from snaptree.exceptions import ConfigurationError
from snaptree.logging import logger
from snaptree.models import Profile
from snaptree.pipeline import BaseStage

if TYPE_CHECKING:
    from snaptree.concurrency import CancellationToken
    from snaptree.models import ExternalSource, FileDescriptor, PipelineContext
    from snaptree.settings import Settings

EXTERNAL_EXCLUDES = ("**/.git/**", "**/node_modules/**")


def resolve_source(item: ExternalSource, base: Path) -> Path:
    """Absolute directory of an external source.

    Raises:
        ConfigurationError: If the source is not an existing directory.
    """
    path = Path(item.source).expanduser()
    if not path.is_absolute():
        path = base / path
    path = path.resolve()
    if not path.is_dir():
        raise ConfigurationError(key="external", message=f"External source path does not exist: {path}")
    return path


def load_external(
    item: ExternalSource,
    base: Path,
    settings: Settings,
    token: CancellationToken | None = None,
) -> list[FileDescriptor]:
    """Discover the files of one external source, renamed under its destination.

    Args:
        item (ExternalSource): the source declaration.
        base (Path): base path of the operation, used to resolve relative sources.
        settings (Settings): operation settings.
        token (CancellationToken | None): cancellation signal.

    Returns:
        list[FileDescriptor]: descriptors whose ``path`` carries the destination prefix.
    """
    root = resolve_source(item, base)
    profile = Profile(include=item.rules or ("**/*",), exclude=EXTERNAL_EXCLUDES)
    files = discover_files(root, profile, settings, parallel=False, token=token)
    prefix = PurePosixPath(item.destination.strip("/")) if item.destination.strip("/") else None
    for file in files:
        if prefix is not None:
            file.path = (prefix / file.path).as_posix()
    return files


class ExternalSourceStage(BaseStage):
    """Merge files from the profile's external sources into ``context.files``.

    A failing optional source is logged and skipped; a failing required one
    fails the stage. Paths already present in the context keep the local file.
    """

    name = "external_sources"

    def process(self, context: PipelineContext) -> PipelineContext:
        items = context.profile.external
        if not items:
            return context
        known = {f.path for f in context.files}
        added = 0
        for item in items:
            context.check_cancelled()
            try:
                files = load_external(item, context.base_path, context.settings, context.token)
            except (ConfigurationError, OSError) as exc:
                logger.error("external_source_failed", source=item.source, error=str(exc))
                if not item.optional:
                    raise
                logger.warning("external_source_skipped", source=item.source)
                continue
            for file in files:
                if file.path in known:
                    logger.warning("external_path_shadowed", path=file.path, source=item.source)
                    continue
                known.add(file.path)
                context.files.append(file)
                context.emit(ev.FILE_DISCOVERED, {"path": file.path, "size": file.size})
                added += 1
            logger.info("external_source_loaded", source=item.source, count=len(files))
        context.stats["external_files"] = added
        return context
