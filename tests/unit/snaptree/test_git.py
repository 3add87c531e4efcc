import subprocess
from pathlib import Path

import pytest
from pytest_mock import MockerFixture

from snaptree.exceptions import GitCommandError, NotAGitRepositoryError
from snaptree.git import GitClient, is_transient_git_error, parse_porcelain
from snaptree.settings import RetrySettings


def _completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=["git"], returncode=returncode, stdout=stdout, stderr=stderr)


def _fake_git(responses: dict[tuple[str, ...], subprocess.CompletedProcess[str]]):  # noqa: ANN202
    def run(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        return responses.get(tuple(command[1:]), _completed(returncode=1, stderr="unexpected"))

    return run


@pytest.mark.unit
def test_parse_porcelain_maps_status_codes() -> None:
    output = "\n".join([
        " M src/app.py",
        "?? notes.txt",
        "A  added.py",
        "R  old.py -> new.py",
        "UU conflict.py",
        " D gone.py",
        'M  "with space.py"',
    ])

    assert parse_porcelain(output) == {
        "src/app.py": "modified",
        "notes.txt": "untracked",
        "added.py": "added",
        "new.py": "renamed",
        "conflict.py": "conflicted",
        "gone.py": "deleted",
        "with space.py": "modified",
    }


@pytest.mark.unit
def test_transient_errors_are_detected_from_stderr() -> None:
    locked = GitCommandError(command="git status", returncode=128, stdout="", stderr="fatal: Unable to create 'index.lock'")
    fatal = GitCommandError(command="git status", returncode=128, stdout="", stderr="fatal: bad revision")

    assert is_transient_git_error(locked)
    assert not is_transient_git_error(fatal)
    assert not is_transient_git_error(RuntimeError("index.lock"))


@pytest.mark.unit
def test_client_queries_relative_to_the_working_directory(tmp_path: Path, mocker: MockerFixture) -> None:
    responses = {
        ("rev-parse", "--git-dir"): _completed("../.git\n"),
        ("rev-parse", "--show-prefix"): _completed("pkg/\n"),
        ("status", "--porcelain", "--untracked-files=all"): _completed(
            " M pkg/a.py\n?? pkg/new.txt\n D pkg/gone.py\n M other/b.py\n",
        ),
        ("diff", "--name-only", "main"): _completed("pkg/a.py\nother/b.py\n"),
        ("rev-parse", "--abbrev-ref", "HEAD"): _completed("feature\n"),
        ("log", "-1", "--format=%H%x00%s"): _completed("abc123\x00Add feature\n"),
    }
    mocker.patch("snaptree.git.subprocess.run", side_effect=_fake_git(responses))
    client = GitClient(tmp_path)

    assert client.is_repository()
    assert client.get_modified_files() == ["a.py", "new.txt"]
    assert client.get_changed_files("main") == ["a.py"]
    assert client.get_file_statuses(["a.py", "c.py"]) == {"a.py": "modified"}

    meta = client.metadata("modified")
    assert meta.branch == "feature"
    assert meta.last_commit is not None
    assert meta.last_commit.hash == "abc123"
    assert meta.last_commit.message == "Add feature"
    assert meta.has_uncommitted_changes
    assert meta.filter_type == "modified"


@pytest.mark.unit
def test_client_outside_a_repository(tmp_path: Path, mocker: MockerFixture) -> None:
    mocker.patch("snaptree.git.subprocess.run", return_value=_completed(returncode=128, stderr="not a git repository"))
    client = GitClient(tmp_path)

    assert not client.is_repository()
    assert client.get_file_statuses(["a.py"]) == {}
    with pytest.raises(NotAGitRepositoryError):
        client.get_modified_files()


@pytest.mark.unit
def test_client_retries_lock_contention(tmp_path: Path, mocker: MockerFixture) -> None:
    run = mocker.patch(
        "snaptree.git.subprocess.run",
        side_effect=[
            _completed(returncode=128, stderr="fatal: Unable to create '.git/index.lock': File exists."),
            _completed("main\n"),
        ],
    )
    client = GitClient(tmp_path, RetrySettings(attempts=3, initial_delay=0, max_delay=0))

    assert client.get_current_branch() == "main"
    assert run.call_count == 2


@pytest.mark.unit
def test_branch_lookup_failure_returns_none(tmp_path: Path, mocker: MockerFixture) -> None:
    mocker.patch("snaptree.git.subprocess.run", return_value=_completed(returncode=128, stderr="fatal: bad HEAD"))

    assert GitClient(tmp_path).get_current_branch() is None
    assert GitClient(tmp_path).get_last_commit() is None
