from __future__ import annotations

import hashlib
import re
from datetime import UTC, datetime
from enum import StrEnum, auto
from importlib.metadata import PackageNotFoundError, version
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any
from xml.sax.saxutils import escape

from pydantic import BaseModel, ConfigDict, Field

from snaptree.exceptions import ValidationError
from snaptree.models import GitMetadata

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from pathlib import Path

    from snaptree.models import FileDescriptor


class OutputFormat(StrEnum):
    """Serialization formats."""

    XML = auto()
    JSON = auto()
    MARKDOWN = auto()
    TREE = auto()
    NDJSON = auto()
    SARIF = auto()


FORMAT_ALIASES = {"md": OutputFormat.MARKDOWN}

FENCE_LANGUAGE: dict[str, str] = {
    ".bash": "bash",
    ".c": "c",
    ".cc": "cpp",
    ".cfg": "ini",
    ".cjs": "js",
    ".conf": "ini",
    ".cpp": "cpp",
    ".css": "css",
    ".csv": "csv",
    ".go": "go",
    ".h": "c",
    ".hh": "cpp",
    ".hpp": "cpp",
    ".htm": "html",
    ".html": "html",
    ".ini": "ini",
    ".java": "java",
    ".js": "js",
    ".json": "json",
    ".jsx": "jsx",
    ".md": "markdown",
    ".mjs": "js",
    ".php": "php",
    ".py": "python",
    ".rb": "ruby",
    ".rs": "rust",
    ".sass": "scss",
    ".scss": "scss",
    ".sh": "bash",
    ".sql": "sql",
    ".toml": "toml",
    ".ts": "ts",
    ".tsx": "tsx",
    ".txt": "text",
    ".xml": "xml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".zsh": "bash",
}

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")
_BACKTICK_RUN = re.compile(r"`+")


def tool_version() -> str:
    try:
        return version("snaptree")
    except PackageNotFoundError:
        return "0.0.0"


def parse_format(name: str) -> OutputFormat:
    """Resolve a format name (case-insensitive, ``md`` aliases ``markdown``).

    Raises:
        ValidationError: If the name is not a known format.
    """
    key = str(name).strip().lower()
    if key in FORMAT_ALIASES:
        return FORMAT_ALIASES[key]
    try:
        return OutputFormat(key)
    except ValueError:
        choices = ", ".join(f.value for f in OutputFormat)
        raise ValidationError(field="format", value=name, message=f"Unknown format: {name!r} (expected one of {choices})") from None


class FormatOptions(BaseModel):
    """Per-call rendering options and run metadata."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    format: str = Field(default="xml", description="xml, json, markdown (md), tree, ndjson or sarif")
    only_tree: bool = Field(default=False, description="Omit file content")
    add_line_numbers: bool = Field(default=False, description="Prefix text lines with their number")
    show_size: bool = Field(default=True, description="Show file sizes in the tree format")
    pretty_print: bool = Field(default=True, description="Indent JSON and SARIF output")
    include_git_status: bool = Field(default=False, description="Render git status in markdown markers")
    char_limit_applied: bool = Field(default=False, description="A character budget was enforced")
    base_path: str = Field(default=".", description="Directory the snapshot was taken from")
    profile_name: str = Field(default="default", description="Profile reported in metadata")
    instructions: str | None = Field(default=None, description="Instructions text")
    instructions_name: str | None = Field(default=None, description="Instructions name")
    git_metadata: GitMetadata | None = Field(default=None, description="Repository facts")
    generated: str | None = Field(default=None, description="Timestamp written in metadata; now when None")
    tool_name: str = Field(default="snaptree", description="Tool name written in metadata")


def now_iso() -> str:
    """Current UTC time, ISO 8601 with millisecond precision and a ``Z`` suffix."""
    return iso_utc(datetime.now(UTC))


def iso_utc(moment: datetime | None) -> str | None:
    if moment is None:
        return None
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_bytes(size: int) -> str:
    """Human-readable size with 1024-based units, e.g. ``1.5 KB``.

    Args:
        size (int): number of bytes.

    Returns:
        str: the size with at most two decimals, trailing zeros dropped.
    """
    if size <= 0:
        return "0 B"
    units = ("B", "KB", "MB", "GB", "TB")
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:  # noqa: PLR2004
        value /= 1024
        index += 1
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {units[index]}"


def total_size(files: Iterable[FileDescriptor]) -> int:
    return sum(f.size for f in files)


def add_line_numbers(content: str) -> str:
    """Prefix every line with its 1-based number formatted as ``%4d: ``."""
    return "\n".join(f"{i:4d}: {line}" for i, line in enumerate(content.split("\n"), start=1))


def strip_control_chars(text: str) -> str:
    """Drop control characters XML 1.0 cannot carry (tab, newline and CR are kept)."""
    return _CONTROL_CHARS.sub("", text)


def escape_cdata(text: str) -> str:
    """Split every ``]]>`` so the sequence survives inside a CDATA section."""
    return strip_control_chars(text).replace("]]>", "]]]]><![CDATA[>")


def xml_text(value: Any) -> str:  # noqa: ANN401
    return escape(strip_control_chars(str(value)))


def xml_attr(value: Any) -> str:  # noqa: ANN401
    """Escaped, double-quoted attribute value."""
    return '"' + escape(strip_control_chars(str(value)), {'"': "&quot;"}) + '"'


def sanitize_for_comment(text: str) -> str:
    """Make ``text`` safe inside an XML/HTML comment (no ``--``, no trailing ``-``)."""
    text = strip_control_chars(text)
    while "--" in text:
        text = text.replace("--", "- -")
    return text.rstrip("-")


def exclusion_comment(file: FileDescriptor) -> str:
    """``<!-- {TYPE} File Excluded: @{PATH} ({SIZE}) -->`` for an excluded file."""
    kind = sanitize_for_comment((file.binary_category or "binary").upper())
    path = sanitize_for_comment(f"@{file.path}")
    return f"<!-- {kind} File Excluded: {path} ({format_bytes(file.size)}) -->"


def fence_language(path: str) -> str:
    """Code fence language for ``path``, or an empty string."""
    pure = PurePosixPath(path)
    name = pure.name.lower()
    if name == "dockerfile":
        return "dockerfile"
    if name == "makefile":
        return "makefile"
    return FENCE_LANGUAGE.get(pure.suffix.lower(), "")


def choose_fence(content: str) -> str:
    """Backtick fence longer than any backtick run of ``content`` (at least three)."""
    longest = max((len(m.group(0)) for m in _BACKTICK_RUN.finditer(content)), default=0)
    return "`" * max(3, longest + 1)


def yaml_scalar(value: Any) -> str:  # noqa: ANN401
    """Double-quoted YAML scalar, or ``null``."""
    if value is None:
        return "null"
    text = str(value).replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{text}"'


def marker_value(value: Any) -> str:  # noqa: ANN401
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    return yaml_scalar(sanitize_for_comment(str(value)))


def begin_marker(attrs: dict[str, Any]) -> str:
    """``<!-- snaptree:file-begin k=v ... -->``; None and empty values are omitted."""
    parts = [f"{k}={marker_value(v)}" for k, v in attrs.items() if v is not None and v != ""]
    return f"<!-- snaptree:file-begin {' '.join(parts)} -->"


def end_marker(path: str) -> str:
    return f"<!-- snaptree:file-end path={marker_value(path)} -->"


def sha256_file(path: Path) -> str:
    """Compute and return the SHA-256 hex digest of a file.

    Reads the file in 1 MiB chunks to handle large files without excessive memory use.

    Args:
        path (Path): the file path to hash

    Returns:
        str: the SHA-256 hex digest of the file contents
    """
    h = hashlib.sha256()
    with path.open("rb") as f:
        for blk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(blk)
    return h.hexdigest()


def file_digest(file: FileDescriptor) -> str | None:
    """Digest of the file on disk, else of its content, else None."""
    try:
        return sha256_file(file.absolute_path)
    except OSError:
        if file.content is not None:
            return hashlib.sha256(file.content.encode("utf-8")).hexdigest()
        return None


def build_tree_lines(root_name: str, entries: Sequence[tuple[str, int | None]]) -> list[str]:
    """Build a visual tree representation of file paths.

    Directories come before files at every level, each group sorted
    alphabetically (case-insensitive, then exact).

    Args:
        root_name (str): the name to use for the root of the tree
        entries (Sequence[tuple[str, int | None]]): POSIX relative paths with an
            optional size rendered after the file name

    Returns:
        list[str]: a list of strings representing the tree structure, suitable for printing
    """
    tree: dict[str, Any] = {}
    for rel, size in entries:
        parts = [p for p in rel.strip("/").split("/") if p]
        if not parts:
            continue
        cur = tree
        for part in parts[:-1]:
            cur = cur.setdefault(part, {})
        cur.setdefault("__files__", {})[parts[-1]] = size

    def order(name: str) -> tuple[str, str]:
        return (name.lower(), name)

    lines: list[str] = [root_name]

    def walk(node: dict[str, Any], prefix: str) -> None:
        dirs = sorted((k for k in node if k != "__files__"), key=order)
        files = node.get("__files__", {})
        items: list[tuple[str, str, Any]] = [("dir", d, node[d]) for d in dirs]
        items.extend(("file", f, files[f]) for f in sorted(files, key=order))
        for idx, (kind, name, child) in enumerate(items):
            last = idx == len(items) - 1
            branch = "└── " if last else "├── "
            if kind == "dir":
                lines.append(f"{prefix}{branch}{name}/")
                walk(child, prefix + ("    " if last else "│   "))
            elif child is None:
                lines.append(f"{prefix}{branch}{name}")
            else:
                lines.append(f"{prefix}{branch}{name} ({format_bytes(child)})")

    walk(tree, "")
    return lines


def directory_structure(files: Sequence[FileDescriptor]) -> str:
    """Box-drawing tree of ``files`` without the root line."""
    return "\n".join(build_tree_lines("", [(f.path, None) for f in files])[1:])
