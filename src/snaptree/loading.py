from __future__ import annotations

import base64
import fnmatch
from typing import TYPE_CHECKING

from snaptree.binary import BinaryAction, BinaryCategory, classify, detect_bom
from snaptree.concurrency import call_with_retry
from snaptree.filters import CASE_INSENSITIVE_PLATFORM
from snaptree.logging import logger
from snaptree.pipeline import BaseStage

if TYPE_CHECKING:
    from collections.abc import Sequence

    from snaptree.models import FileDescriptor, Metrics, PipelineContext
    from snaptree.settings import Settings

CHAR_LIMIT_NOTICE = "\n\n... truncated due to character limit ..."


def normalize_newlines(text: str) -> str:
    """Turn ``\\r\\n`` and lone ``\\r`` into ``\\n``."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


def matches_structure_only(path: str, patterns: Sequence[str], *, case_insensitive: bool = CASE_INSENSITIVE_PLATFORM) -> bool:
    """Whether ``path`` (or its base name) matches a structure-only glob."""
    name = path.rsplit("/", 1)[-1]
    if case_insensitive:
        path, name = path.lower(), name.lower()
        patterns = [p.lower() for p in patterns]
    return any(fnmatch.fnmatchcase(name, p) or fnmatch.fnmatchcase(path, p) for p in patterns)


def decode_text(data: bytes) -> tuple[str, str]:
    """Decode ``data`` honoring a byte-order mark, else as UTF-8 with replacement.

    Returns:
        tuple[str, str]: the text with normalized newlines, and the encoding used.
    """
    encoding = detect_bom(data[:4]) or "utf-8"
    text = data.decode(encoding, errors="replace")
    if encoding in {"utf-16-le", "utf-16-be", "utf-32-le", "utf-32-be"}:
        text = text.removeprefix("\ufeff")
    return normalize_newlines(text), encoding


class FileLoader:
    """Attach content to descriptors according to the operation settings."""

    def __init__(self, settings: Settings, metrics: Metrics | None = None, max_chars: int | None = None) -> None:
        self.settings = settings
        self.metrics = metrics
        self.max_chars = max_chars if max_chars is not None else settings.loading.max_file_size

    def _read(self, file: FileDescriptor) -> bytes:
        return call_with_retry(file.absolute_path.read_bytes, settings=self.settings.retry, operation="read")

    def _apply_binary_policy(self, file: FileDescriptor, data: bytes, category: BinaryCategory) -> FileDescriptor | None:
        cfg = self.settings.loading
        action = BinaryAction(cfg.binary_policy.get(category.value, BinaryAction.PLACEHOLDER))
        file.is_binary = True
        file.binary_category = category.value
        if action is BinaryAction.SKIP:
            return None
        if action is BinaryAction.BASE64:
            file.content = base64.b64encode(data).decode("ascii")
            file.encoding = "base64"
        elif action is BinaryAction.COMMENT:
            file.excluded = True
            file.exclude_reason = "binary-comment-policy"
            file.content = None
        else:
            file.content = cfg.binary_placeholder
        return file

    def load(self, file: FileDescriptor) -> FileDescriptor | None:
        """Load one file in place.

        Args:
            file (FileDescriptor): descriptor produced by discovery.

        Returns:
            FileDescriptor | None: the completed descriptor, or None when the
                binary policy drops the file.
        """
        cfg = self.settings.loading
        if matches_structure_only(file.path, cfg.structure_only_patterns):
            file.content = cfg.structure_only_placeholder
            file.is_binary = True
            file.exclude_reason = "structure-only"
            return file
        try:
            data = self._read(file)
        except OSError as exc:
            logger.warning("file_unreadable", path=file.path, error=str(exc))
            file.content = f"[Error loading file: {exc.strerror or exc}]"
            return file
        if self.metrics is not None:
            self.metrics.record_read(len(data))

        category = classify(file.path, data[: cfg.sample_bytes], cfg.non_printable_threshold)
        if category is not None:
            return self._apply_binary_policy(file, data, category)

        text, encoding = decode_text(data)
        file.encoding = encoding
        if self.max_chars is not None and len(text) > self.max_chars:
            file.original_length = len(text)
            file.truncated = True
            text = text[: self.max_chars]
        file.content = text
        return file


class LoadingStage(BaseStage):
    """Read content for every descriptor of the context."""

    name = "loading"

    def process(self, context: PipelineContext) -> PipelineContext:
        loader = FileLoader(context.settings, context.metrics, context.options.get("max_chars_per_file"))
        loaded: list[FileDescriptor] = []
        for file in context.files:
            context.check_cancelled()
            result = loader.load(file)
            if result is not None:
                loaded.append(result)
        context.stats["binary_skipped"] = len(context.files) - len(loaded)
        context.stats["bytes_read"] = context.metrics.bytes_read
        context.files = loaded
        return context


class CharLimitStage(BaseStage):
    """Bound the total number of content characters across all files.

    The file crossing the limit is truncated; files after it are dropped.
    """

    name = "char_limit"

    def __init__(self, limit: int = 2_000_000) -> None:
        self.limit = limit

    def process(self, context: PipelineContext) -> PipelineContext:
        total = 0
        kept: list[FileDescriptor] = []
        truncated = skipped = 0
        for index, file in enumerate(context.files):
            if not file.content:
                kept.append(file)
                continue
            size = len(file.content)
            if total + size <= self.limit:
                kept.append(file)
                total += size
                continue
            first_dropped = index
            if total < self.limit:
                remaining = self.limit - total
                file.original_length = file.original_length or size
                file.content = file.content[:remaining] + CHAR_LIMIT_NOTICE
                file.truncated = True
                kept.append(file)
                total += remaining
                truncated = 1
                first_dropped = index + 1
            skipped = len(context.files) - first_dropped
            break
        context.files = kept
        context.stats.update({"total_characters": total, "character_limit": self.limit, "truncated_files": truncated, "skipped_files": skipped})
        return context
