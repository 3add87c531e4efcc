from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values, find_dotenv
from pydantic import BaseModel, ConfigDict, Field

from snaptree.exceptions import ConfigurationError

ENV_PREFIX = "SNAPTREE_"

GLOBAL_EXCLUDED_DIRS = [
    ".git",
    ".svn",
    ".hg",
    ".bzr",
    "node_modules",
    "bower_components",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    ".venv",
    ".idea",
    ".vscode",
]

GLOBAL_EXCLUDED_FILES = [
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
    "*.pyc",
    "*.pyo",
    "*.swp",
    "*.swo",
    "*~",
]

STRUCTURE_ONLY_PATTERNS = [
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "composer.lock",
    "Gemfile.lock",
    "Pipfile.lock",
    "poetry.lock",
    "uv.lock",
    "pdm.lock",
    "Cargo.lock",
    "go.sum",
    "flake.lock",
    "*.svg",
]


class DiscoverySettings(BaseModel):
    """Defaults applied while walking the filesystem."""

    model_config = ConfigDict(validate_assignment=True)

    excluded_dirs: list[str] = Field(
        default_factory=lambda: list(GLOBAL_EXCLUDED_DIRS),
        description="Directory names never descended into.",
    )
    excluded_files: list[str] = Field(
        default_factory=lambda: list(GLOBAL_EXCLUDED_FILES),
        description="File name globs never emitted.",
    )
    ignore_file: str = Field(default=".snaptreeignore", description="Per-directory ignore file name.")
    include_file: str = Field(default=".snaptreeinclude", description="Force-include file name.")
    respect_gitignore: bool = Field(default=True, description="Honor .gitignore files.")
    include_hidden: bool = Field(default=False, description="Emit dot files and enter dot directories.")
    follow_symlinks: bool = Field(default=False, description="Follow symbolic links.")
    max_file_size: int | None = Field(default=10 * 1024 * 1024, description="Largest file emitted, in bytes.")
    max_total_size: int | None = Field(default=100 * 1024 * 1024, description="Total byte budget.")
    max_file_count: int | None = Field(default=10_000, description="Maximum number of files.")
    parallel: bool = Field(default=False, description="Use the bounded-concurrency walker.")
    max_concurrency: int = Field(default=8, ge=1, description="Workers for the concurrent walker.")


class LoadingSettings(BaseModel):
    """Defaults applied while reading file content."""

    model_config = ConfigDict(validate_assignment=True)

    max_file_size: int | None = Field(
        default=None,
        description="Characters kept per file before truncation; None disables truncation.",
    )
    sample_bytes: int = Field(default=8192, ge=1, description="Bytes sampled for binary detection.")
    non_printable_threshold: float = Field(default=0.3, ge=0, le=1, description="Binary ratio threshold.")
    binary_policy: dict[str, str] = Field(
        default_factory=lambda: {
            "image": "comment",
            "media": "comment",
            "archive": "comment",
            "exec": "comment",
            "font": "comment",
            "database": "comment",
            "cert": "comment",
            "document": "placeholder",
            "other": "placeholder",
        },
        description="Action per binary category: placeholder, base64, comment or skip.",
    )
    binary_placeholder: str = Field(default="[Binary file not included]", description="Placeholder text.")
    structure_only_patterns: list[str] = Field(
        default_factory=lambda: list(STRUCTURE_ONLY_PATTERNS),
        description="Globs whose content is replaced by a placeholder.",
    )
    structure_only_placeholder: str = Field(
        default="[Content omitted: structure-only file]",
        description="Placeholder for structure-only files.",
    )
    transform_concurrency: int = Field(default=5, ge=1, description="Workers for the transform stage.")


class SecretsSettings(BaseModel):
    """Defaults for the secrets guard."""

    model_config = ConfigDict(validate_assignment=True)

    enabled: bool = Field(default=True, description="Run the secrets guard.")
    redact_inline: bool = Field(default=True, description="Redact spans; otherwise drop the file.")
    redaction_mode: str = Field(default="typed", description="typed, generic or hash.")
    fail_on_secrets: bool = Field(default=False, description="Abort when any secret is found.")
    max_file_size: int = Field(default=1_000_000, description="Files above this size are not scanned.")
    exclude_patterns: list[str] = Field(default_factory=list, description="Extra secret-bearing globs.")
    allowlist: list[str] = Field(default_factory=list, description="Globs never scanned nor excluded.")
    engine: str = Field(default="pattern", description="pattern or gitleaks.")
    gitleaks_binary: str = Field(default="gitleaks", description="Path to the gitleaks executable.")
    parallelism: int = Field(default=4, ge=1, description="Files scanned concurrently.")


class RetrySettings(BaseModel):
    """Exponential backoff for transient filesystem and git failures."""

    model_config = ConfigDict(validate_assignment=True)

    attempts: int = Field(default=3, ge=1, description="Maximum attempts.")
    initial_delay: float = Field(default=0.1, ge=0, description="First delay in seconds.")
    max_delay: float = Field(default=2.0, ge=0, description="Delay cap in seconds.")


class Settings(BaseModel):
    """Configuration instance owned by a single snaptree operation.

    A fresh instance is built for every top-level call unless the caller passes
    one explicitly. Nothing in the package keeps a module-level instance.
    """

    model_config = ConfigDict(validate_assignment=True)

    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    loading: LoadingSettings = Field(default_factory=LoadingSettings)
    secrets: SecretsSettings = Field(default_factory=SecretsSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    profile_name: str = Field(default="default", description="Name reported when no profile file is used.")
    pretty_print: bool = Field(default=True, description="Indent JSON and SARIF output.")
    tool_name: str = Field(default="snaptree", description="Tool name written in output metadata.")

    @classmethod
    def load(cls, env: dict[str, str | None] | None = None, **overrides: Any) -> Settings:  # noqa: ANN401
        """Build a new instance from defaults, the .env file and the environment.

        Variables are named ``SNAPTREE_<SECTION>__<KEY>`` (e.g.
        ``SNAPTREE_DISCOVERY__MAX_CONCURRENCY=4``) or ``SNAPTREE_<KEY>`` for
        top-level fields. The .env file is read but never exported to ``os.environ``.

        Args:
            env: Explicit variables; when None the .env file and ``os.environ`` are used.
            **overrides: Top-level field values applied last.

        Returns:
            A new Settings instance.
        """
        if env is None:
            env_file = find_dotenv(usecwd=True)
            env = {**(dotenv_values(env_file) if env_file else {}), **os.environ}
        data: dict[str, Any] = {}
        for raw_key, value in env.items():
            if not raw_key.startswith(ENV_PREFIX) or value is None:
                continue
            parts = raw_key.removeprefix(ENV_PREFIX).lower().split("__")
            cursor = data
            for part in parts[:-1]:
                cursor = cursor.setdefault(part, {})
            cursor[parts[-1]] = value
        data.update(overrides)
        return cls.model_validate(data)

    def get(self, key: str, default: Any = None) -> Any:  # noqa: ANN401
        """Read a dotted key such as ``discovery.max_concurrency``.

        Args:
            key: Dotted attribute path.
            default: Returned when the path does not exist.

        Returns:
            The value found, or ``default``.
        """
        node: Any = self
        for part in key.split("."):
            if isinstance(node, BaseModel) and part in type(node).model_fields:
                node = getattr(node, part)
            elif isinstance(node, dict) and part in node:
                node = node[part]
            else:
                return default
        return node

    def set(self, key: str, value: Any) -> None:  # noqa: ANN401
        """Assign a dotted key; the value is validated against the field type.

        Raises:
            ConfigurationError: If the key does not name an existing setting.
        """
        *parents, leaf = key.split(".")
        node: Any = self
        for part in parents:
            if not isinstance(node, BaseModel) or part not in type(node).model_fields:
                raise ConfigurationError(key=key, message=f"Unknown setting: {key}")
            node = getattr(node, part)
        if isinstance(node, dict):
            node[leaf] = value
            return
        if not isinstance(node, BaseModel) or leaf not in type(node).model_fields:
            raise ConfigurationError(key=key, message=f"Unknown setting: {key}")
        setattr(node, leaf, value)

    def copy_for_operation(self) -> Settings:
        """Deep copy, so a batch template can seed independent operations."""
        return self.model_copy(deep=True)
