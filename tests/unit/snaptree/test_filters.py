from datetime import UTC, datetime
from pathlib import Path

import pytest
from pytest_mock import MockerFixture

from snaptree.exceptions import ValidationError
from snaptree.filters import (
    AlwaysIncludeStage,
    DedupeStage,
    GitFilterStage,
    LimitStage,
    ProfileFilterStage,
    SortStage,
    natural_key,
)
from snaptree.git import GitClient
from snaptree.models import FileDescriptor, GitMetadata, PipelineContext, Profile


def _file(path: str, size: int = 1, content: str | None = None, **kwargs: object) -> FileDescriptor:
    return FileDescriptor(path=path, absolute_path=Path("/repo") / path, size=size, content=content, **kwargs)


def _context(files: list[FileDescriptor], profile: Profile | None = None) -> PipelineContext:
    return PipelineContext(base_path=Path("/repo"), profile=profile or Profile(), files=files)


@pytest.mark.unit
def test_natural_key_orders_numbers_by_value() -> None:
    names = ["file10.txt", "file2.txt", "File1.txt", "file1b.txt"]

    assert sorted(names, key=natural_key) == ["File1.txt", "file1b.txt", "file2.txt", "file10.txt"]


@pytest.mark.unit
def test_sort_by_path_is_natural() -> None:
    context = _context([_file("src/file10.py"), _file("src/file2.py"), _file("README.md")])

    result = SortStage().process(context)

    assert [f.path for f in result.files] == ["README.md", "src/file2.py", "src/file10.py"]


@pytest.mark.unit
def test_sort_by_size_descending_breaks_ties_by_path() -> None:
    context = _context([_file("a.txt", 10), _file("b.txt", 30), _file("c.txt", 10)])

    result = SortStage(sort_by="size", order="desc").process(context)

    assert [f.path for f in result.files] == ["b.txt", "c.txt", "a.txt"]


@pytest.mark.unit
def test_sort_by_depth_and_modified() -> None:
    early = datetime(2024, 1, 1, tzinfo=UTC)
    late = datetime(2024, 6, 1, tzinfo=UTC)
    files = [_file("a/b/c.txt", modified=early), _file("z.txt", modified=late), _file("a/y.txt")]

    by_depth = SortStage(sort_by="depth").process(_context(list(files)))
    by_modified = SortStage(sort_by="modified").process(_context(list(files)))

    assert [f.path for f in by_depth.files] == ["z.txt", "a/y.txt", "a/b/c.txt"]
    assert [f.path for f in by_modified.files] == ["a/y.txt", "a/b/c.txt", "z.txt"]


@pytest.mark.unit
def test_sort_rejects_unknown_criteria() -> None:
    with pytest.raises(ValidationError, match="Invalid sort field"):
        SortStage(sort_by="color").validate(_context([]))
    with pytest.raises(ValidationError, match="Invalid sort order"):
        SortStage(order="sideways").validate(_context([]))


@pytest.mark.unit
def test_always_include_marks_literal_and_glob_matches() -> None:
    files = [_file("README.md"), _file("docs/README.md"), _file("docs/api/index.md"), _file("src/app.py")]
    stage = AlwaysIncludeStage(["README.md", "docs/**/*.md"], case_insensitive=False)

    context = stage.process(_context(files))

    assert [f.path for f in context.files if f.always_include] == ["README.md", "docs/README.md", "docs/api/index.md"]
    assert context.stats["always_included"] == 3


@pytest.mark.unit
def test_always_include_case_sensitivity() -> None:
    files = [_file("Makefile")]

    AlwaysIncludeStage(["makefile"], case_insensitive=False).process(_context(files))
    assert not files[0].always_include

    AlwaysIncludeStage(["makefile"], case_insensitive=True).process(_context(files))
    assert files[0].always_include


@pytest.mark.unit
def test_always_include_reads_profile_patterns() -> None:
    files = [_file("notes/todo.txt"), _file("src/app.py")]

    context = AlwaysIncludeStage(case_insensitive=False).process(_context(files, Profile(always=("notes/*",))))

    assert [f.path for f in context.files if f.always_include] == ["notes/todo.txt"]


@pytest.mark.unit
def test_profile_filter_applies_filter_and_exclude_but_keeps_forced_files() -> None:
    forced = _file("scripts/deploy.sh", always_include=True)
    files = [_file("src/app.py"), _file("src/app.test.py"), _file("README.md"), forced]
    profile = Profile(filter=("src/**",), exclude=("**/*.test.py",))

    context = ProfileFilterStage().process(_context(files, profile))

    assert [f.path for f in context.files] == ["src/app.py", "scripts/deploy.sh"]
    assert context.stats["excluded_by_profile"] == 2


@pytest.mark.unit
def test_dedupe_keeps_first_text_copy_only() -> None:
    files = [
        _file("a.txt", content="same"),
        _file("b.txt", content="same"),
        _file("c.txt", content="other"),
        _file("d.png", content="[Binary file not included]", is_binary=True),
        _file("e.png", content="[Binary file not included]", is_binary=True),
        _file("f.txt"),
    ]

    context = DedupeStage().process(_context(files))

    assert [f.path for f in context.files] == ["a.txt", "c.txt", "d.png", "e.png", "f.txt"]
    assert context.stats["duplicates_removed"] == 1


@pytest.mark.unit
def test_limit_truncates_and_records_the_count() -> None:
    context = LimitStage(2).process(_context([_file("a"), _file("b"), _file("c")]))

    assert [f.path for f in context.files] == ["a", "b"]
    assert context.stats["truncated_count"] == 1

    untouched = LimitStage(5).process(_context([_file("a")]))
    assert "truncated_count" not in untouched.stats


@pytest.mark.unit
def test_git_status_of_unreported_files_is_unknown(mocker: MockerFixture) -> None:
    mocker.patch.object(GitClient, "is_repository", return_value=True)
    mocker.patch.object(GitClient, "_status", return_value={"changed.py": "modified"})
    mocker.patch.object(GitClient, "metadata", return_value=GitMetadata(branch="main"))
    context = _context([_file("changed.py"), _file("clean.py")])
    context.options = {"with_git_status": True}

    result = GitFilterStage().process(context)

    assert {f.path: f.git_status for f in result.files} == {"changed.py": "modified", "clean.py": "unknown"}
