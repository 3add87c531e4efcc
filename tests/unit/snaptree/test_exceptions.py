from pathlib import Path

import pytest

from snaptree.exceptions import (
    CancelledError,
    GitCommandError,
    NotAGitRepositoryError,
    SecretFindingSummary,
    SecretsDetectedError,
    ValidationError,
)


@pytest.mark.unit
def test_errors_render_their_message() -> None:
    assert str(ValidationError(field="format", value="yaml", message="Unknown format")) == "Unknown format"
    assert str(CancelledError()) == "Operation cancelled."


@pytest.mark.unit
def test_to_dict_is_serializable() -> None:
    error = NotAGitRepositoryError(folder=Path("/tmp/repo"))

    assert error.to_dict() == {
        "folder": "/tmp/repo",
        "message": "The specified directory is not a Git repository.",
        "error": "NotAGitRepositoryError",
    }


@pytest.mark.unit
def test_git_command_error_fields() -> None:
    error = GitCommandError(command="git status", returncode=128, stdout="", stderr="fatal")

    assert error.to_dict()["returncode"] == 128
    assert error.to_dict()["error"] == "GitCommandError"


@pytest.mark.unit
def test_secrets_error_lists_locations_only() -> None:
    error = SecretsDetectedError(count=1, findings=(SecretFindingSummary(file="a.py", line=3, rule_id="aws-access-key"),))

    assert error.to_dict()["findings"] == [{"file": "a.py", "line": 3, "rule_id": "aws-access-key"}]
    with pytest.raises(SecretsDetectedError):
        raise error
