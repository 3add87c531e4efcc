from __future__ import annotations

import fnmatch
import hashlib
import re
from dataclasses import dataclass
from functools import partial, wraps
from typing import TYPE_CHECKING, Any

import yaml

from snaptree.concurrency import BoundedWorkerQueue
from snaptree.exceptions import TransformError, ValidationError
from snaptree.logging import logger
from snaptree.pipeline import BaseStage

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from snaptree.models import FileDescriptor, PipelineContext

    TransformFn = Callable[[str, FileDescriptor], str]


@dataclass(frozen=True)
class Transformer:
    """A named content transformer and the file globs it applies to."""

    name: str
    patterns: tuple[str, ...]
    fn: TransformFn

    def applies_to(self, file: FileDescriptor) -> bool:
        name = file.name.lower()
        path = file.path.lower()
        return any(fnmatch.fnmatchcase(name, p) or fnmatch.fnmatchcase(path, p) for p in self.patterns)


TRANSFORMERS: dict[str, Transformer] = {}


def register_transformer(
    name: str,
    patterns: str | list[str],
    registry: dict[str, Transformer] | None = None,
) -> Callable[[TransformFn], TransformFn]:
    """Decorator to register a content transformer under ``name``.

    Args:
        name (str): identifier recorded on transformed files (``transformed_by``).
        patterns (str | list[str]): lower-case globs matched against the file
            name or relative path (e.g. ``".env*"`` or ``"docs/*.md"``).
        registry (dict[str, Transformer] | None): target registry; the module
            registry when None.

    Returns:
        Callable[[TransformFn], TransformFn]: A decorator that registers the
        given function and returns it.
    """
    target = TRANSFORMERS if registry is None else registry

    def decorator(func: TransformFn) -> TransformFn:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:  # noqa: ANN401
            return func(*args, **kwargs)

        globs = [patterns] if isinstance(patterns, str) else list(patterns)
        target[name] = Transformer(name=name, patterns=tuple(g.lower() for g in globs), fn=wrapper)
        return wrapper

    return decorator


@register_transformer("env-keys", [".env", ".env.*", "*.env"])
def env_keys(content: str, file: FileDescriptor) -> str:  # noqa: ARG001
    """Reduce an environment file to its sorted variable names.

    Lines that are empty, start with ``#`` or have no ``=`` are ignored; an
    ``export`` prefix is dropped.
    """
    keys: set[str] = set()
    for line in content.splitlines():
        s = line.strip()
        if not s or s.startswith("#") or "=" not in s:
            continue
        key = s.split("=", 1)[0].strip().removeprefix("export ").strip()
        if key:
            keys.add(key)
    return "\n".join(sorted(keys, key=str.lower))


@register_transformer("pem-stub", ["*.pem", "*.crt", "*.cer"])
def pem_stub(content: str, file: FileDescriptor) -> str:  # noqa: ARG001
    """Replace a PEM document by its SHA-256 digest and its armor lines."""
    lines = content.splitlines()
    first = lines[0] if lines else ""
    last = lines[-1] if len(lines) > 1 else ""
    parts = [f"sha256={hashlib.sha256(content.encode('utf-8')).hexdigest()}"]
    if first:
        parts.append(first)
    if last and last != first:
        parts.append(last)
    return "\n".join(parts)


@register_transformer("precommit-summary", [".pre-commit-config.yaml", ".pre-commit-config.yml"])
def precommit_summary(content: str, file: FileDescriptor) -> str:  # noqa: ARG001
    """List the hooks of a pre-commit configuration as ``id (repo@rev)`` lines."""
    data = yaml.safe_load(content) or {}
    repos = data.get("repos", []) if isinstance(data, dict) else []
    hooks: set[str] = set()
    for repo in repos if isinstance(repos, list) else []:
        if not isinstance(repo, dict):
            continue
        source = str(repo.get("repo", "unknown"))
        rev = str(repo.get("rev", "unknown"))
        for hook in repo.get("hooks", []) or []:
            if isinstance(hook, dict):
                hooks.add(f"{hook.get('id', 'unknown')} ({source}@{rev})")
    return "\n".join(sorted(hooks, key=str.lower))


@register_transformer("license-head", ["license", "license.md", "license.txt", "copying"])
def license_head(content: str, file: FileDescriptor, lines: int = 1) -> str:  # noqa: ARG001
    """Keep the first ``lines`` lines of a license file."""
    return "\n".join(content.splitlines()[: max(0, lines)])


@register_transformer("first-lines", ["*.log", "*.txt"])
def first_lines(content: str, file: FileDescriptor, count: int = 20) -> str:
    """Keep the first ``count`` lines, with a header and a truncation notice."""
    lines = content.split("\n")
    shown = lines[:count]
    text = f"[First {len(shown)} of {len(lines)} lines from: {file.name}]\n\n" + "\n".join(shown)
    if len(lines) > len(shown):
        text += f"\n\n... ({len(lines) - len(shown)} more lines truncated)"
    return text


_INLINE_LINK = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_REFERENCE_LINK = re.compile(r"\[([^\]]+)\]\[[^\]]*\]")
_LINK_DEFINITION = re.compile(r"^\[[^\]]+\]:\s+.+$", re.MULTILINE)
_IMAGE = re.compile(r"!\[([^\]]*)\]\([^)]+\)")


@register_transformer("markdown-strip-links", ["*.md", "*.markdown", "*.mdx"])
def markdown_strip_links(content: str, file: FileDescriptor) -> str:  # noqa: ARG001
    """Replace markdown links by their text and images by ``[Image: alt]``."""
    content = _IMAGE.sub(lambda m: f"[Image: {m.group(1)}]" if m.group(1) else "[Image]", content)
    content = _INLINE_LINK.sub(r"\1", content)
    content = _REFERENCE_LINK.sub(r"\1", content)
    content = _LINK_DEFINITION.sub("", content)
    return re.sub(r"\n{3,}", "\n\n", content).strip()


def select_transformers(names: Sequence[str] | bool | None, registry: Mapping[str, Transformer]) -> list[Transformer]:
    """Resolve transformer names against ``registry``.

    ``True`` selects every registered transformer; None or an empty list selects none.

    Raises:
        ValidationError: If a name is not registered.
    """
    if names is True:
        return list(registry.values())
    if not names:
        return []
    unknown = [n for n in names if n not in registry]
    if unknown:
        raise ValidationError(field="transforms", value=unknown, message=f"Unknown transformer(s): {', '.join(unknown)}")
    return [registry[n] for n in names]


def transform_one(file: FileDescriptor, transformers: Sequence[Transformer]) -> TransformError | None:
    """Apply the first transformer matching ``file``, in place.

    Returns:
        TransformError | None: the failure, in which case the file keeps its
            original content.
    """
    if file.content is None or file.is_binary or file.excluded:
        return None
    for transformer in transformers:
        if not transformer.applies_to(file):
            continue
        try:
            file.content = transformer.fn(file.content, file)
        except Exception as exc:  # noqa: BLE001
            logger.warning("transform_failed", path=file.path, transformer=transformer.name, error=str(exc))
            return TransformError(transformer=transformer.name, path=file.path, message=str(exc))
        file.transformed_by = transformer.name
        return None
    return None


class TransformStage(BaseStage):
    """Run content transformers over loaded files on a bounded worker pool.

    Transformers are chosen by name through the constructor or the
    ``transforms`` option (``True`` for all registered ones).
    """

    name = "transform"

    def __init__(
        self,
        transformers: Sequence[str] | bool | None = None,
        *,
        registry: Mapping[str, Transformer] | None = None,
    ) -> None:
        self.transformers = transformers
        self.registry = TRANSFORMERS if registry is None else registry

    def selected(self, context: PipelineContext) -> list[Transformer]:
        names = self.transformers if self.transformers is not None else context.options.get("transforms")
        return select_transformers(names, self.registry)

    def validate(self, context: PipelineContext) -> bool:
        self.selected(context)
        return True

    def process(self, context: PipelineContext) -> PipelineContext:
        transformers = self.selected(context)
        if not transformers:
            return context
        queue = BoundedWorkerQueue(context.settings.loading.transform_concurrency, context.token)
        errors = [e for e in queue.map(partial(transform_one, transformers=transformers), context.files) if e is not None]
        context.stats["transformed"] = sum(1 for f in context.files if f.transformed_by)
        context.stats["transform_errors"] = [e.to_dict() for e in errors]
        return context


class InstructionsStage(BaseStage):
    """Attach instructions text to the context for the serializers."""

    name = "instructions"

    def __init__(self, text: str | None = None, name: str | None = None) -> None:
        self.text = text
        self.instructions_name = name

    def process(self, context: PipelineContext) -> PipelineContext:
        text = self.text if self.text is not None else context.options.get("instructions")
        if text:
            context.instructions = text
            context.instructions_name = self.instructions_name or context.options.get("instructions_name") or "default"
        return context
