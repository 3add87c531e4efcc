from __future__ import annotations

import fnmatch
import os
import stat
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

import pathspec

from snaptree import events as ev
from snaptree.concurrency import BoundedWorkerQueue, call_with_retry
from snaptree.logging import logger
from snaptree.models import FileDescriptor, PipelineContext, Profile, ProfileOptions
from snaptree.pipeline import BaseStage

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Sequence

    from snaptree.concurrency import CancellationToken
    from snaptree.settings import Settings

GLOB_CHARS = frozenset("*?[")


def read_pattern_file(path: Path) -> list[str]:
    """Read a line-oriented pattern file, dropping blank lines and ``#`` comments.

    Args:
        path (Path): the ignore or force-include file.

    Returns:
        list[str]: the patterns in file order, or an empty list if the file is missing.
    """
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return []
    out: list[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        if line and not line.startswith("#"):
            out.append(line)
    return out


def expand_force_include(pattern: str) -> str:
    """Normalize one force-include pattern.

    Globs are kept as written. A bare name becomes "everything under it at any
    depth" (``.claude`` -> ``**/.claude/**``); a leading ``/`` anchors it to the
    base path instead (``/docs`` -> ``docs/**``).

    Args:
        pattern (str): the raw pattern.

    Returns:
        str: a gitwildmatch pattern.
    """
    pattern = pattern.strip().replace("\\", "/")
    if any(c in GLOB_CHARS for c in pattern):
        return pattern
    if pattern.startswith("/"):
        pattern = pattern.lstrip("/")
    else:
        pattern = f"**/{pattern}"
    return f"{pattern}**" if pattern.endswith("/") else f"{pattern}/**"


def scope_pattern(pattern: str, scope: str) -> str:
    """Re-anchor a force-include pattern read in directory ``scope`` to the base path."""
    if not scope:
        return pattern
    negated = pattern.startswith("!")
    body = pattern[1:] if negated else pattern
    body = body.removeprefix("/")
    if "/" not in body.rstrip("/"):
        body = f"**/{body}"
    return f"{'!' if negated else ''}{scope}/{body}"


@dataclass(frozen=True)
class _IgnoreLayer:
    scope: str
    spec: pathspec.PathSpec

    def verdict(self, rel: str) -> bool | None:
        """Last matching pattern wins; None when no pattern of this layer matches."""
        local = rel[len(self.scope) + 1 :] if self.scope else rel
        result: bool | None = None
        for pattern in self.spec.patterns:
            if pattern.include is None:
                continue
            if pattern.match_file(local) is not None:
                result = pattern.include
        return result


@dataclass(frozen=True)
class IgnoreRules:
    """Gitignore-style rules stacked from the base directory down.

    Deeper layers override shallower ones. Instances are immutable so that
    concurrent walkers can share them.
    """

    layers: tuple[_IgnoreLayer, ...] = ()

    def with_layer(self, scope: str, lines: Sequence[str]) -> IgnoreRules:
        if not lines:
            return self
        spec = pathspec.PathSpec.from_lines("gitwildmatch", lines)
        return IgnoreRules((*self.layers, _IgnoreLayer(scope, spec)))

    def is_ignored(self, rel: str, *, is_dir: bool = False) -> bool:
        candidate = f"{rel}/" if is_dir else rel
        ignored = False
        for layer in self.layers:
            verdict = layer.verdict(candidate)
            if verdict is not None:
                ignored = verdict
        return ignored


@dataclass(frozen=True)
class DiscoveryOptions:
    """Resolved walk parameters for one discovery run."""

    include: pathspec.PathSpec
    exclude: pathspec.PathSpec
    excluded_dirs: frozenset[str]
    excluded_files: tuple[str, ...]
    ignore_file: str
    include_file: str
    respect_gitignore: bool
    include_hidden: bool
    follow_symlinks: bool
    max_depth: int | None
    min_size: int | None
    max_size: int | None
    max_total_size: int | None
    max_file_count: int | None
    always: tuple[str, ...] = ()

    @classmethod
    def build(cls, profile: Profile, settings: Settings) -> DiscoveryOptions:
        opts: ProfileOptions = profile.options
        ds = settings.discovery
        return cls(
            include=pathspec.PathSpec.from_lines("gitwildmatch", profile.include or ("**/*",)),
            exclude=pathspec.PathSpec.from_lines("gitwildmatch", profile.exclude),
            excluded_dirs=frozenset(ds.excluded_dirs),
            excluded_files=tuple(ds.excluded_files),
            ignore_file=ds.ignore_file,
            include_file=ds.include_file,
            respect_gitignore=opts.respect_gitignore,
            include_hidden=opts.include_hidden,
            follow_symlinks=opts.follow_symlinks,
            max_depth=opts.max_depth,
            min_size=opts.min_file_size,
            max_size=opts.max_file_size if opts.max_file_size is not None else ds.max_file_size,
            max_total_size=opts.max_total_size if opts.max_total_size is not None else ds.max_total_size,
            max_file_count=opts.max_file_count if opts.max_file_count is not None else ds.max_file_count,
            always=tuple(profile.always),
        )

    @property
    def control_files(self) -> frozenset[str]:
        return frozenset({self.ignore_file, self.include_file, ".gitignore"})


@dataclass(frozen=True)
class _DirUnit:
    path: Path
    rel: str
    depth: int
    ancestors: frozenset[tuple[int, int]]
    rules: IgnoreRules


@dataclass
class _DirResult:
    files: list[FileDescriptor] = field(default_factory=list)
    subdirs: list[_DirUnit] = field(default_factory=list)
    force_patterns: list[str] = field(default_factory=list)


def order_key(rel: str) -> tuple[str, ...]:
    """Sort key equal to a depth-first walk visiting entries by name."""
    return PurePosixPath(rel).parts


def _join(rel: str, name: str) -> str:
    return f"{rel}/{name}" if rel else name


def _within_size(size: int, options: DiscoveryOptions) -> bool:
    if options.min_size is not None and size < options.min_size:
        return False
    return not (options.max_size is not None and size > options.max_size)


class Walker:
    """Shared per-directory logic of the sequential and concurrent walkers."""

    def __init__(
        self,
        base: Path,
        options: DiscoveryOptions,
        settings: Settings,
        token: CancellationToken | None = None,
    ) -> None:
        self.base = base
        self.options = options
        self.settings = settings
        self.token = token

    def _check(self) -> None:
        if self.token is not None:
            self.token.raise_if_cancelled()

    def root_unit(self) -> _DirUnit:
        st = self.base.stat()
        return _DirUnit(self.base, "", 0, frozenset({(st.st_dev, st.st_ino)}), IgnoreRules())

    def _layer_lines(self, directory: Path) -> list[str]:
        lines: list[str] = []
        if self.options.respect_gitignore:
            lines.extend(read_pattern_file(directory / ".gitignore"))
        lines.extend(read_pattern_file(directory / self.options.ignore_file))
        return lines

    def _list(self, directory: Path) -> list[os.DirEntry[str]]:
        def scan() -> list[os.DirEntry[str]]:
            with os.scandir(directory) as it:
                return sorted(it, key=lambda e: e.name)

        return call_with_retry(scan, settings=self.settings.retry, operation="scandir")

    def _entry_stat(self, entry: os.DirEntry[str]) -> os.stat_result | None:
        try:
            if entry.is_symlink() and not self.options.follow_symlinks:
                return None
            return entry.stat(follow_symlinks=True)
        except OSError:
            return None

    def scan_dir(self, unit: _DirUnit, *, force: bool = False) -> _DirResult:
        """List one directory.

        In normal mode ignore rules, hidden-file and include/exclude filters
        apply; in ``force`` mode only structural limits (excluded directory
        names, symlinks, depth) do, because force-include bypasses the rest.
        """
        self._check()
        opts = self.options
        result = _DirResult()
        rules = unit.rules
        if not force:
            rules = rules.with_layer(unit.rel, self._layer_lines(unit.path))
            result.force_patterns = [
                scope_pattern(expand_force_include(p), unit.rel)
                for p in read_pattern_file(unit.path / opts.include_file)
            ]
        try:
            entries = self._list(unit.path)
        except OSError as exc:
            logger.warning("directory_unreadable", path=unit.rel or ".", error=str(exc))
            return result

        for entry in entries:
            self._check()
            name = entry.name
            rel = _join(unit.rel, name)
            st = self._entry_stat(entry)
            if st is None:
                continue
            hidden = name.startswith(".")
            if stat.S_ISDIR(st.st_mode):
                if name in opts.excluded_dirs:
                    continue
                if opts.max_depth is not None and unit.depth >= opts.max_depth:
                    continue
                key = (st.st_dev, st.st_ino)
                if key in unit.ancestors:
                    logger.warning("symlink_cycle_skipped", path=rel)
                    continue
                if not force and (
                    (hidden and not opts.include_hidden) or rules.is_ignored(rel, is_dir=True)
                ):
                    continue
                result.subdirs.append(_DirUnit(Path(entry.path), rel, unit.depth + 1, unit.ancestors | {key}, rules))
            elif stat.S_ISREG(st.st_mode):
                if name in opts.control_files or any(fnmatch.fnmatch(name, p) for p in opts.excluded_files):
                    continue
                if not _within_size(st.st_size, opts):
                    continue
                if not force and not self._selected(rel, hidden=hidden, rules=rules):
                    continue
                result.files.append(self._descriptor(Path(entry.path), rel, st))
        return result

    def _selected(self, rel: str, *, hidden: bool, rules: IgnoreRules) -> bool:
        opts = self.options
        if hidden and not opts.include_hidden:
            return False
        if rules.is_ignored(rel):
            return False
        if not opts.include.match_file(rel):
            return False
        return not opts.exclude.match_file(rel)

    def _descriptor(self, path: Path, rel: str, st: os.stat_result) -> FileDescriptor:
        return FileDescriptor(
            path=rel,
            absolute_path=path,
            size=st.st_size,
            modified=datetime.fromtimestamp(st.st_mtime, tz=UTC),
        )

    def walk(
        self,
        *,
        force: bool = False,
        on_dir: Callable[[_DirUnit, _DirResult], None] | None = None,
        descend: Callable[[str], bool] | None = None,
    ) -> Iterator[FileDescriptor]:
        """Yield files in walk order using an explicit stack.

        Args:
            force (bool): list directories in force mode (see :meth:`scan_dir`).
            on_dir (Callable | None): called with every listed directory and its result.
            descend (Callable | None): return False to skip a subdirectory by its relative path.

        Yields:
            FileDescriptor: files ordered by :func:`order_key`.
        """
        stack: list[_DirUnit | FileDescriptor] = [self.root_unit()]
        while stack:
            item = stack.pop()
            if isinstance(item, FileDescriptor):
                yield item
                continue
            res = self.scan_dir(item, force=force)
            if on_dir is not None:
                on_dir(item, res)
            subdirs = [d for d in res.subdirs if descend is None or descend(d.rel)]
            children: list[tuple[tuple[str, ...], _DirUnit | FileDescriptor]] = [
                *((order_key(fd.path), fd) for fd in res.files),
                *((order_key(d.rel), d) for d in subdirs),
            ]
            children.sort(key=lambda pair: pair[0])
            stack.extend(child for _, child in reversed(children))

    def force_included(self, patterns: Iterable[str]) -> list[FileDescriptor]:
        """Walk the tree again and return every file matched by a force-include pattern.

        Directories no pattern can reach are not entered, and the walk stops
        once the count or byte budget is spent, since files past that point
        would be cut by :func:`apply_budget` anyway.
        """
        lines = [p for p in patterns if p]
        if not lines:
            return []
        spec = pathspec.PathSpec.from_lines("gitwildmatch", lines)
        prefixes = [_literal_prefix(p) for p in lines if not p.startswith("!")]
        descend = None if () in prefixes else _reachable(prefixes)
        opts = self.options
        found: list[FileDescriptor] = []
        total = 0
        for fd in self.walk(force=True, descend=descend):
            if not spec.match_file(fd.path):
                continue
            if opts.max_file_count is not None and len(found) >= opts.max_file_count:
                break
            if opts.max_total_size is not None and total + fd.size > opts.max_total_size:
                break
            fd.always_include = True
            found.append(fd)
            total += fd.size
        return found


def _literal_prefix(pattern: str) -> tuple[str, ...]:
    """Leading directory segments of a gitwildmatch pattern that hold no glob.

    An empty tuple means the pattern can match at any depth.
    """
    body = pattern.rstrip("/")
    if "/" not in body:
        return ()
    segments = body.lstrip("/").split("/")[:-1]
    prefix: list[str] = []
    for segment in segments:
        if any(c in GLOB_CHARS for c in segment):
            break
        prefix.append(segment)
    return tuple(prefix)


def _reachable(prefixes: Sequence[tuple[str, ...]]) -> Callable[[str], bool]:
    def descend(rel: str) -> bool:
        parts = order_key(rel)
        return any(parts[: len(p)] == p[: len(parts)] for p in prefixes)

    return descend


def _ordered_patterns(collected: Iterable[tuple[tuple[str, ...], list[str]]]) -> list[str]:
    """Flatten per-directory force-include patterns in walk order, keeping line order."""
    return [p for _, patterns in sorted(collected, key=lambda pair: pair[0]) for p in patterns]


def apply_budget(files: Iterable[FileDescriptor], options: DiscoveryOptions) -> list[FileDescriptor]:
    """Keep the longest prefix, in walk order, that fits the count and byte budgets."""
    kept: list[FileDescriptor] = []
    total = 0
    for fd in sorted(files, key=lambda f: order_key(f.path)):
        if options.max_file_count is not None and len(kept) >= options.max_file_count:
            break
        if options.max_total_size is not None and total + fd.size > options.max_total_size:
            break
        kept.append(fd)
        total += fd.size
    return kept


def _merge(
    walker: Walker,
    walked: list[FileDescriptor],
    force_patterns: list[str],
) -> list[FileDescriptor]:
    merged = {fd.path: fd for fd in walked}
    for fd in walker.force_included([*walker.options.always, *force_patterns]):
        if fd.path in merged:
            merged[fd.path].always_include = True
        else:
            merged[fd.path] = fd
    return apply_budget(merged.values(), walker.options)


def walk_sequential(walker: Walker) -> list[FileDescriptor]:
    """Depth-first, single-threaded walk.

    Stops early once the count or byte budget is exhausted. A force-include
    file only reaches into its own subtree, and every unvisited subtree sorts
    after the stop point, so the patterns collected so far are all that can
    still contribute.
    """
    opts = walker.options
    files: list[FileDescriptor] = []
    collected: list[tuple[tuple[str, ...], list[str]]] = []
    total = 0

    def on_dir(unit: _DirUnit, res: _DirResult) -> None:
        collected.append((order_key(unit.rel), res.force_patterns))

    for fd in walker.walk(on_dir=on_dir):
        if opts.max_file_count is not None and len(files) >= opts.max_file_count:
            break
        if opts.max_total_size is not None and total + fd.size > opts.max_total_size:
            break
        files.append(fd)
        total += fd.size
    return _merge(walker, files, _ordered_patterns(collected))


def walk_concurrent(walker: Walker, workers: int) -> list[FileDescriptor]:
    """Breadth-first walk with at most ``workers`` directories listed at once.

    The count and byte budgets are applied to the merged result in walk order,
    so the outcome equals :func:`walk_sequential` for the same inputs.
    """
    files: list[FileDescriptor] = []
    collected: list[tuple[tuple[str, ...], list[str]]] = []
    lock = threading.Lock()

    def work(unit: _DirUnit) -> list[_DirUnit]:
        res = walker.scan_dir(unit)
        with lock:
            files.extend(res.files)
            collected.append((order_key(unit.rel), res.force_patterns))
        return res.subdirs

    BoundedWorkerQueue(workers, walker.token).drain(work, [walker.root_unit()])
    return _merge(walker, files, _ordered_patterns(collected))


def discover_files(
    base: Path,
    profile: Profile,
    settings: Settings,
    *,
    parallel: bool | None = None,
    workers: int | None = None,
    token: CancellationToken | None = None,
) -> list[FileDescriptor]:
    """Discover the files of ``base`` selected by ``profile``.

    Args:
        base (Path): existing directory to walk.
        profile (Profile): include/exclude/force-include patterns and walk options.
        settings (Settings): operation settings (excluded names, defaults, retry).
        parallel (bool | None): strategy; None uses ``settings.discovery.parallel``.
        workers (int | None): worker count of the concurrent walker.
        token (CancellationToken | None): cancellation signal checked per entry.

    Returns:
        list[FileDescriptor]: descriptors without content, in walk order.
    """
    options = DiscoveryOptions.build(profile, settings)
    walker = Walker(base.resolve(), options, settings, token)
    use_parallel = settings.discovery.parallel if parallel is None else parallel
    if use_parallel:
        return walk_concurrent(walker, workers or settings.discovery.max_concurrency)
    return walk_sequential(walker)


class DiscoveryStage(BaseStage):
    """Populate ``context.files`` from the filesystem."""

    name = "discovery"

    def __init__(self, *, parallel: bool | None = None, workers: int | None = None) -> None:
        self.parallel = parallel
        self.workers = workers

    def validate(self, context: PipelineContext) -> bool:
        return context.base_path.is_dir()

    def process(self, context: PipelineContext) -> PipelineContext:
        parallel = self.parallel
        if parallel is None:
            parallel = context.options.get("parallel")
        files = discover_files(
            context.base_path,
            context.profile,
            context.settings,
            parallel=parallel,
            workers=self.workers or context.options.get("workers"),
            token=context.token,
        )
        for file in files:
            context.emit(ev.FILE_DISCOVERED, {"path": file.path, "size": file.size})
        context.files = files
        context.stats["discovered"] = len(files)
        context.stats["force_included"] = sum(1 for f in files if f.always_include)
        logger.info("files_discovered", count=len(files), parallel=bool(parallel))
        return context
