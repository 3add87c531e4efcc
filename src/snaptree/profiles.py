from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from snaptree.exceptions import ConfigurationError, ProfileNotFoundError
from snaptree.logging import logger
from snaptree.models import ExternalSource, Profile, ProfileOptions
from snaptree.settings import Settings

PROFILE_STEM = ".snaptree"
PROFILE_EXTENSIONS = (".yml", ".yaml", ".json", "")
_NAMED_PROFILE = re.compile(rf"^{re.escape(PROFILE_STEM)}-([^.]+)(\.(yml|yaml|json))?$")


class FolderProfile(BaseModel):
    """Declarative profile file found in a directory."""

    model_config = ConfigDict(extra="ignore")

    name: str = "default"
    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    always: list[str] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)
    external: list[ExternalSource] = Field(default_factory=list)

    @field_validator("include", "exclude", "always", mode="before")
    @classmethod
    def _as_pattern_list(cls, value: Any) -> list[str]:  # noqa: ANN401
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return [p.strip() for p in value if isinstance(p, str) and p.strip()]


def parse_ini(content: str) -> dict[str, Any]:
    """Parse the INI-like profile syntax.

    ``[include]``, ``[exclude]`` and ``[always]`` sections hold one pattern
    per line; ``[profile]`` holds ``name = value``; ``[options]`` holds
    ``key = value`` pairs.
    """
    data: dict[str, Any] = {"include": [], "exclude": [], "always": [], "options": {}}
    section: str | None = None
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith(("#", ";")):
            continue
        if line.startswith("[") and line.endswith("]"):
            section = line[1:-1].strip().lower()
            continue
        if section in {"include", "exclude", "always"}:
            data[section].append(line)
        elif section in {"profile", "options"} and "=" in line:
            key, value = (s.strip() for s in line.split("=", 1))
            if section == "profile" and key == "name":
                data["name"] = value
            elif section == "options":
                data["options"][key] = yaml.safe_load(value)
    return data


class FolderProfileLoader:
    """Find and parse ``.snaptree`` profile files in one directory."""

    def __init__(self, cwd: Path) -> None:
        self.cwd = cwd

    def _candidates(self, stem: str) -> list[Path]:
        return [self.cwd / f"{stem}{ext}" for ext in PROFILE_EXTENSIONS]

    def discover(self) -> FolderProfile | None:
        """Return the first ``.snaptree{.yml,.yaml,.json,}`` found, or None."""
        for candidate in self._candidates(PROFILE_STEM):
            if candidate.is_file():
                return self.load(candidate)
        return None

    def load_named(self, name: str) -> FolderProfile:
        """Load ``.snaptree-<name>.*``.

        Raises:
            ProfileNotFoundError: If no file exists for ``name``.
        """
        for candidate in self._candidates(f"{PROFILE_STEM}-{name}"):
            if candidate.is_file():
                return self.load(candidate)
        raise ProfileNotFoundError(name=name, search_path=self.cwd, message=f"Profile not found: {name}")

    def load(self, path: Path) -> FolderProfile:
        """Parse a profile file by extension.

        Raises:
            ConfigurationError: If the file cannot be parsed or is not a mapping.
        """
        try:
            content = path.read_text(encoding="utf-8")
            if path.suffix == ".json":
                data = json.loads(content)
            elif path.suffix in {".yml", ".yaml"}:
                data = yaml.safe_load(content) or {}
            else:
                data = parse_ini(content)
            if not isinstance(data, dict):
                raise ConfigurationError(key=str(path), message="Invalid profile data: must be a mapping")
            data.setdefault("name", path.name.removeprefix(f"{PROFILE_STEM}-").split(".")[0] or "default")
            return FolderProfile.model_validate(data)
        except (OSError, json.JSONDecodeError, yaml.YAMLError, PydanticValidationError) as exc:
            raise ConfigurationError(key=str(path), message=f"Failed to load profile from {path}: {exc}") from exc

    def list_profiles(self) -> list[str]:
        names = {m.group(1) for p in self.cwd.iterdir() if (m := _NAMED_PROFILE.match(p.name))}
        return sorted(names)


def _as_list(value: Any) -> list[str]:  # noqa: ANN401
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _external_items(value: Any) -> list[Any]:  # noqa: ANN401
    if value is None:
        return []
    if isinstance(value, (dict, ExternalSource)):
        return [value]
    return list(value)


_SETTINGS_BACKED_OPTIONS = (
    "respect_gitignore",
    "include_hidden",
    "follow_symlinks",
    "max_file_size",
    "max_total_size",
    "max_file_count",
)


def build_profile(
    options: dict[str, Any],
    settings: Settings,
    folder: FolderProfile | None = None,
) -> Profile:
    """Merge caller options, the folder profile and settings into a Profile.

    Precedence is options > folder profile > settings. Exclude lists from all
    layers are concatenated; force-include and external source lists from
    options and folder too.

    Args:
        options: Caller options (``filter``, ``exclude``, ``always``, walk options...).
        settings: The operation's settings.
        folder: The folder profile, if one was found.

    Returns:
        Profile: the immutable merged profile.
    """
    folder_options = folder.options if folder else {}
    merged: dict[str, Any] = {}
    for key in _SETTINGS_BACKED_OPTIONS:
        if options.get(key) is not None:
            merged[key] = options[key]
        elif folder_options.get(key) is not None:
            merged[key] = folder_options[key]
        else:
            merged[key] = getattr(settings.discovery, key)
    for key in ("max_depth", "min_file_size"):
        value = options.get(key, folder_options.get(key))
        if value is not None:
            merged[key] = value

    filters = _as_list(options.get("filter"))
    include = filters or (folder.include if folder and folder.include else ["**/*"])
    return Profile(
        name=options.get("profile") or (folder.name if folder else settings.profile_name),
        include=tuple(include),
        exclude=tuple([*_as_list(options.get("exclude")), *(folder.exclude if folder else [])]),
        filter=tuple(filters),
        always=tuple([*_as_list(options.get("always")), *(folder.always if folder else [])]),
        options=ProfileOptions.model_validate(merged),
        external=tuple([*_external_items(options.get("external")), *(folder.external if folder else [])]),
    )


def resolve_profile(base: Path, options: dict[str, Any], settings: Settings) -> Profile:
    """Load the named or auto-discovered folder profile of ``base`` and merge it.

    An explicitly named profile that cannot be loaded is an error; a broken
    auto-discovered one is logged and ignored.
    """
    loader = FolderProfileLoader(base)
    name = options.get("profile")
    if name:
        return build_profile(options, settings, loader.load_named(name))
    try:
        folder = loader.discover()
    except ConfigurationError as exc:
        logger.warning("profile_ignored", error=str(exc))
        folder = None
    return build_profile(options, settings, folder)
