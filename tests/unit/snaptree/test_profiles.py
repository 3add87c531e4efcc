import json
from pathlib import Path

import pytest

from snaptree.exceptions import ConfigurationError, ProfileNotFoundError
from snaptree.profiles import FolderProfile, FolderProfileLoader, build_profile, parse_ini, resolve_profile
from snaptree.settings import Settings


@pytest.mark.unit
def test_parse_ini_sections() -> None:
    content = """
# leading comment
[profile]
name = api

[include]
src/**
; another comment

[exclude]
**/*.test.js

[always]
.claude

[options]
max_depth = 3
include_hidden = true
"""

    data = parse_ini(content)

    assert data["name"] == "api"
    assert data["include"] == ["src/**"]
    assert data["exclude"] == ["**/*.test.js"]
    assert data["always"] == [".claude"]
    assert data["options"] == {"max_depth": 3, "include_hidden": True}


@pytest.mark.unit
def test_discover_prefers_yaml_and_defaults_the_name(tmp_path: Path) -> None:
    (tmp_path / ".snaptree.yml").write_text("include: 'src/**'\nexclude: ['*.log']\n", encoding="utf-8")
    (tmp_path / ".snaptree.json").write_text(json.dumps({"name": "ignored"}), encoding="utf-8")

    profile = FolderProfileLoader(tmp_path).discover()

    assert profile is not None
    assert profile.name == "default"
    assert profile.include == ["src/**"]
    assert profile.exclude == ["*.log"]


@pytest.mark.unit
def test_discover_returns_none_without_profile(tmp_path: Path) -> None:
    assert FolderProfileLoader(tmp_path).discover() is None


@pytest.mark.unit
def test_load_named_profiles(tmp_path: Path) -> None:
    (tmp_path / ".snaptree-api.json").write_text(json.dumps({"include": ["api/**"]}), encoding="utf-8")
    (tmp_path / ".snaptree-web").write_text("[include]\nweb/**\n", encoding="utf-8")
    loader = FolderProfileLoader(tmp_path)

    assert loader.load_named("api").name == "api"
    assert loader.load_named("web").include == ["web/**"]
    assert loader.list_profiles() == ["api", "web"]
    with pytest.raises(ProfileNotFoundError) as excinfo:
        loader.load_named("missing")
    assert excinfo.value.search_path == tmp_path


@pytest.mark.unit
def test_load_rejects_malformed_files(tmp_path: Path) -> None:
    broken = tmp_path / ".snaptree.json"
    broken.write_text("{not json", encoding="utf-8")
    listing = tmp_path / ".snaptree-list.yml"
    listing.write_text("- a\n- b\n", encoding="utf-8")
    loader = FolderProfileLoader(tmp_path)

    with pytest.raises(ConfigurationError, match="Failed to load profile"):
        loader.load(broken)
    with pytest.raises(ConfigurationError, match="must be a mapping"):
        loader.load(listing)


@pytest.mark.unit
def test_build_profile_precedence() -> None:
    settings = Settings()
    settings.discovery.include_hidden = True
    folder = FolderProfile(
        name="folder",
        include=["src/**"],
        exclude=["*.log"],
        always=["docs"],
        options={"max_depth": 2, "respect_gitignore": False},
    )

    profile = build_profile({"exclude": "tmp/**", "max_depth": 1, "always": [".claude"]}, settings, folder)

    assert profile.name == "folder"
    assert profile.include == ("src/**",)
    assert profile.exclude == ("tmp/**", "*.log")
    assert profile.always == (".claude", "docs")
    assert profile.options.max_depth == 1
    assert profile.options.respect_gitignore is False
    assert profile.options.include_hidden is True


@pytest.mark.unit
def test_build_profile_filter_overrides_include() -> None:
    folder = FolderProfile(include=["src/**"])

    profile = build_profile({"filter": ["*.py"], "profile": "custom"}, Settings(), folder)

    assert profile.include == ("*.py",)
    assert profile.filter == ("*.py",)
    assert profile.name == "custom"


@pytest.mark.unit
def test_build_profile_defaults_without_folder() -> None:
    profile = build_profile({}, Settings())

    assert profile.include == ("**/*",)
    assert profile.exclude == ()
    assert profile.options.max_file_count == Settings().discovery.max_file_count


@pytest.mark.unit
def test_resolve_profile_ignores_broken_auto_discovered_file(tmp_path: Path) -> None:
    (tmp_path / ".snaptree.json").write_text("[1, 2", encoding="utf-8")

    profile = resolve_profile(tmp_path, {}, Settings())

    assert profile.name == "default"


@pytest.mark.unit
def test_resolve_profile_requires_named_profile(tmp_path: Path) -> None:
    with pytest.raises(ProfileNotFoundError):
        resolve_profile(tmp_path, {"profile": "nope"}, Settings())


@pytest.mark.unit
def test_external_sources_from_options_and_folder_profile(tmp_path: Path) -> None:
    (tmp_path / ".snaptree.yml").write_text(
        "external:\n  - source: ../shared\n    destination: shared\n    rules: ['*.md']\n    optional: true\n",
        encoding="utf-8",
    )

    profile = resolve_profile(tmp_path, {"external": {"source": "/opt/lib"}}, Settings())

    assert [(e.source, e.destination, e.rules, e.optional) for e in profile.external] == [
        ("/opt/lib", "", (), False),
        ("../shared", "shared", ("*.md",), True),
    ]
