from __future__ import annotations

import subprocess  # noqa: S404
from typing import TYPE_CHECKING

from snaptree.concurrency import call_with_retry
from snaptree.exceptions import GitCommandError, NotAGitRepositoryError
from snaptree.logging import logger
from snaptree.models import GitMetadata, LastCommit
from snaptree.settings import RetrySettings

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

TRANSIENT_GIT_MARKERS = ("index.lock", "Resource temporarily unavailable", "Connection timed out", "Could not resolve host")

_PORCELAIN_STATUS = {
    "M": "modified",
    "A": "added",
    "D": "deleted",
    "R": "renamed",
    "C": "added",
    "U": "conflicted",
    "?": "untracked",
}


def is_transient_git_error(error: BaseException) -> bool:
    """Lock contention and network hiccups are worth another attempt."""
    return isinstance(error, GitCommandError) and any(m in error.stderr for m in TRANSIENT_GIT_MARKERS)


def parse_porcelain(output: str) -> dict[str, str]:
    """Map paths of ``git status --porcelain`` output to a status word.

    Args:
        output (str): porcelain v1 output.

    Returns:
        dict[str, str]: POSIX path to one of modified, added, deleted, renamed,
            untracked or conflicted.
    """
    statuses: dict[str, str] = {}
    for line in output.splitlines():
        if len(line) < 4:  # noqa: PLR2004
            continue
        code, path = line[:2], line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip().strip('"')
        if "U" in code or code in {"AA", "DD"}:
            statuses[path] = "conflicted"
            continue
        letter = code[0] if code[0] not in {" ", "?"} else code[1]
        if code == "??":
            letter = "?"
        statuses[path] = _PORCELAIN_STATUS.get(letter, "modified")
    return statuses


class GitClient:
    """Thin wrapper over the ``git`` executable for one working tree."""

    def __init__(self, repo: Path, retry: RetrySettings | None = None) -> None:
        self.repo = repo
        self.retry = retry or RetrySettings()
        self._is_repo: bool | None = None
        self._prefix: str | None = None

    def _run(self, *args: str) -> str:
        command = ["git", *args]

        def once() -> str:
            proc = subprocess.run(  # noqa: S603
                command,
                cwd=str(self.repo),
                text=True,
                capture_output=True,
                check=False,
            )
            if proc.returncode != 0:
                raise GitCommandError(
                    command=" ".join(command),
                    returncode=proc.returncode,
                    stdout=proc.stdout,
                    stderr=proc.stderr,
                )
            return proc.stdout

        return call_with_retry(once, settings=self.retry, retryable=is_transient_git_error, operation="git")

    def is_repository(self) -> bool:
        if self._is_repo is None:
            try:
                self._run("rev-parse", "--git-dir")
                self._is_repo = True
            except (GitCommandError, FileNotFoundError):
                self._is_repo = False
        return self._is_repo

    def _require_repo(self) -> None:
        if not self.is_repository():
            raise NotAGitRepositoryError(folder=self.repo)

    def _relative(self, repo_path: str) -> str | None:
        """Convert a repository-relative path to one relative to ``self.repo``."""
        if self._prefix is None:
            self._prefix = self._run("rev-parse", "--show-prefix").strip()
        if not repo_path.startswith(self._prefix):
            return None
        return repo_path[len(self._prefix) :]

    def _status(self) -> dict[str, str]:
        raw = parse_porcelain(self._run("status", "--porcelain", "--untracked-files=all"))
        return {rel: s for p, s in raw.items() if (rel := self._relative(p))}

    def get_modified_files(self) -> list[str]:
        """Staged, unstaged and untracked paths; deletions excluded."""
        self._require_repo()
        return sorted(p for p, s in self._status().items() if s != "deleted")

    def get_changed_files(self, from_ref: str = "HEAD", to_ref: str | None = None) -> list[str]:
        """Paths changed between ``from_ref`` and ``to_ref`` (or the working tree)."""
        self._require_repo()
        refs = [from_ref, to_ref] if to_ref else [from_ref]
        output = self._run("diff", "--name-only", *refs)
        paths = (self._relative(line.strip()) for line in output.splitlines() if line.strip())
        return sorted(p for p in paths if p)

    def get_file_statuses(self, paths: Iterable[str]) -> dict[str, str]:
        """Status word for each requested path git reports; clean paths are left out."""
        wanted = list(paths)
        if not wanted or not self.is_repository():
            return {}
        statuses = self._status()
        return {p: statuses[p] for p in wanted if p in statuses}

    def get_current_branch(self) -> str | None:
        try:
            return self._run("rev-parse", "--abbrev-ref", "HEAD").strip() or None
        except GitCommandError as exc:
            logger.warning("git_branch_unavailable", error=exc.stderr.strip())
            return None

    def get_last_commit(self) -> LastCommit | None:
        try:
            output = self._run("log", "-1", "--format=%H%x00%s")
        except GitCommandError as exc:
            logger.warning("git_log_unavailable", error=exc.stderr.strip())
            return None
        if "\x00" not in output:
            return None
        sha, message = output.strip().split("\x00", 1)
        return LastCommit(hash=sha, message=message)

    def has_uncommitted_changes(self) -> bool:
        try:
            return bool(self._status())
        except GitCommandError:
            return False

    def metadata(self, filter_type: str | None = None) -> GitMetadata:
        return GitMetadata(
            branch=self.get_current_branch(),
            last_commit=self.get_last_commit(),
            has_uncommitted_changes=self.has_uncommitted_changes(),
            filter_type=filter_type,
        )
