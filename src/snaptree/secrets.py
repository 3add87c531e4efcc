from __future__ import annotations

import bisect
import fnmatch
import hashlib
import json
import re
import subprocess  # noqa: S404
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from pydantic import BaseModel, ConfigDict, Field

from snaptree.concurrency import BoundedWorkerQueue
from snaptree.exceptions import ConfigurationError, SecretFindingSummary, SecretsDetectedError
from snaptree.logging import logger
from snaptree.pipeline import BaseStage

if TYPE_CHECKING:
    from collections.abc import Sequence

    from snaptree.models import FileDescriptor, PipelineContext
    from snaptree.settings import SecretsSettings

SECRET_FILE_PATTERNS = [
    # environment files
    ".env",
    ".env.*",
    # private keys
    "*.pem",
    "*.key",
    "*.p12",
    "*.pfx",
    "*.p8",
    "*.asc",
    "id_rsa",
    "id_dsa",
    "id_ecdsa",
    "id_ed25519",
    # credentials
    "credentials.json",
    "credentials.yml",
    "credentials.yaml",
    "secrets.json",
    "secrets.yml",
    "secrets.yaml",
    "secrets.*.json",
    "secrets.*.yml",
    "secrets.*.yaml",
    "auth.json",
    "*-credentials.json",
    "*-secrets.json",
    # service accounts
    "service-account-*.json",
    "firebase-adminsdk-*.json",
    "google-credentials.json",
    "gcloud-service-key.json",
    # keystores and signing
    "*.jks",
    "*.keystore",
    "*.keystore.properties",
    "*.mobileprovision",
    "gradle.properties",
    # registries and cloud tooling
    ".npmrc",
    ".pypirc",
    ".gem/credentials",
    ".aws/credentials",
    ".kube/config",
    ".config/gcloud/**",
    ".docker/config.json",
    # misc
    "*.tfstate",
    "*.tfstate.backup",
    "*.ovpn",
    "*.htpasswd",
]

REDACTION_MODES = ("typed", "generic", "hash")


class Finding(BaseModel):
    """A secret located by an engine. Lines and columns are 1-based.

    ``end_column`` points one past the last character of the match.
    """

    model_config = ConfigDict(frozen=True)

    rule_id: str = Field(..., description="Detection rule identifier")
    start_line: int = Field(..., ge=1)
    end_line: int = Field(..., ge=1)
    start_column: int = Field(..., ge=1)
    end_column: int = Field(..., ge=1)


class SecretEngine(Protocol):
    """Secret-detection collaborator."""

    name: str

    def is_available(self) -> bool: ...

    def scan(self, text: str, path: str) -> list[Finding]: ...


def _line_offsets(text: str) -> list[int]:
    offsets = [0]
    offsets.extend(i + 1 for i, ch in enumerate(text) if ch == "\n")
    return offsets


def _position(offsets: list[int], index: int) -> tuple[int, int]:
    line = bisect.bisect_right(offsets, index) - 1
    return line + 1, index - offsets[line] + 1


@dataclass(frozen=True)
class SecretRule:
    """A regular expression for one kind of secret; ``group`` selects the span."""

    rule_id: str
    regex: re.Pattern[str]
    group: int = 0


DEFAULT_RULES: tuple[SecretRule, ...] = (
    SecretRule("aws-access-key", re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")),
    SecretRule("github-pat", re.compile(r"\bgh[pousr]_[A-Za-z0-9]{36,255}\b")),
    SecretRule("github-fine-grained-pat", re.compile(r"\bgithub_pat_[A-Za-z0-9_]{22,255}\b")),
    SecretRule("slack-token", re.compile(r"\bxox[baprs]-[A-Za-z0-9-]{10,}\b")),
    SecretRule(
        "private-key",
        re.compile(r"-----BEGIN[ A-Z0-9_-]{0,100}PRIVATE KEY-----[\s\S]*?-----END[ A-Z0-9_-]{0,100}PRIVATE KEY-----"),
    ),
    SecretRule(
        "generic-api-key",
        re.compile(r"(?i)\b(?:api[_-]?key|secret|token|passw(?:or)?d)\b\s*[:=]\s*[\"']([A-Za-z0-9_\-./+=]{16,})[\"']"),
        group=1,
    ),
)


class PatternSecretEngine:
    """Built-in engine matching a fixed set of regular expressions."""

    name = "pattern"

    def __init__(self, rules: Sequence[SecretRule] = DEFAULT_RULES) -> None:
        self.rules = tuple(rules)

    def is_available(self) -> bool:
        return True

    def scan(self, text: str, path: str) -> list[Finding]:  # noqa: ARG002
        offsets = _line_offsets(text)
        findings: list[Finding] = []
        for rule in self.rules:
            for match in rule.regex.finditer(text):
                start, end = match.span(rule.group)
                start_line, start_column = _position(offsets, start)
                end_line, end_column = _position(offsets, end)
                findings.append(
                    Finding(
                        rule_id=rule.rule_id,
                        start_line=start_line,
                        end_line=end_line,
                        start_column=start_column,
                        end_column=end_column,
                    ),
                )
        return sorted(findings, key=lambda f: (f.start_line, f.start_column))


class GitleaksEngine:
    """Adapter for the ``gitleaks`` executable, scanning text through stdin."""

    name = "gitleaks"

    def __init__(self, binary: str = "gitleaks", config_path: str | None = None) -> None:
        self.binary = binary
        self.config_path = config_path
        self._available: bool | None = None

    def is_available(self) -> bool:
        if self._available is None:
            try:
                subprocess.run([self.binary, "version"], capture_output=True, check=True, timeout=5)  # noqa: S603
            except (OSError, subprocess.SubprocessError):
                self._available = False
            else:
                self._available = True
        return self._available

    def scan(self, text: str, path: str) -> list[Finding]:
        """Scan ``text``; ``--redact=100`` keeps secrets out of gitleaks' own output.

        Raises:
            RuntimeError: If gitleaks exits with a code other than 0 or 1.
        """
        args = [
            self.binary,
            "stdin",
            "--report-format",
            "json",
            "--report-path",
            "-",
            "--no-banner",
            "--no-color",
            "--log-level",
            "fatal",
            "--redact=100",
        ]
        if self.config_path:
            args += ["-c", self.config_path]
        proc = subprocess.run(args, input=text, capture_output=True, text=True, check=False)  # noqa: S603
        if proc.returncode not in {0, 1}:
            msg = f"gitleaks exited with code {proc.returncode} while scanning {path}"
            raise RuntimeError(msg)
        try:
            raw = json.loads(proc.stdout) if proc.stdout.strip() else []
        except json.JSONDecodeError:
            return []
        return [
            Finding(
                rule_id=item.get("RuleID", "unknown"),
                start_line=item.get("StartLine", 1),
                end_line=item.get("EndLine", item.get("StartLine", 1)),
                start_column=item.get("StartColumn", 1),
                end_column=item.get("EndColumn", 1),
            )
            for item in raw if isinstance(raw, list) and isinstance(item, dict)
        ]


def build_engine(settings: SecretsSettings) -> SecretEngine:
    """Engine named by ``settings.engine``.

    Raises:
        ConfigurationError: If the engine name is unknown.
    """
    if settings.engine == "pattern":
        return PatternSecretEngine()
    if settings.engine == "gitleaks":
        return GitleaksEngine(settings.gitleaks_binary)
    raise ConfigurationError(key="secrets.engine", message=f"Unknown secrets engine: {settings.engine}")


def redaction_marker(finding: Finding, mode: str, path: str = "") -> str:
    rule = finding.rule_id.upper()
    if mode == "typed":
        return f"***REDACTED:{rule}***"
    if mode == "hash":
        digest = hashlib.sha256(f"{path}:{finding.start_line}:{finding.start_column}".encode()).hexdigest()[:8]
        return f"***REDACTED:{rule}:{digest}***"
    return "***REDACTED***"


def redact(content: str, findings: Sequence[Finding], mode: str = "typed", path: str = "") -> tuple[str, int]:
    """Replace every finding's span with a marker, keeping the rest of the text intact.

    Spans are applied bottom-up so earlier offsets stay valid. Findings that do
    not map onto the content are skipped, as are spans overlapping one that
    starts earlier.

    Returns:
        tuple[str, int]: the redacted content and the number of spans replaced.
    """
    line_count = content.count("\n") + 1
    offsets = _line_offsets(content)
    spans: list[tuple[int, int, Finding]] = []
    for finding in findings:
        if not (1 <= finding.start_line <= line_count and 1 <= finding.end_line <= line_count):
            continue
        start = offsets[finding.start_line - 1] + finding.start_column - 1
        end = min(offsets[finding.end_line - 1] + finding.end_column - 1, len(content))
        if end > start:
            spans.append((start, end, finding))

    kept: list[tuple[int, int, Finding]] = []
    for span in sorted(spans, key=lambda s: (s[0], -s[1])):
        if kept and span[0] < kept[-1][1]:
            continue
        kept.append(span)
    for start, end, finding in reversed(kept):
        content = content[:start] + redaction_marker(finding, mode, path) + content[end:]
    return content, len(kept)


def _matches(path: str, patterns: Sequence[str], *, basename: bool) -> bool:
    name = path.rsplit("/", 1)[-1]
    return any(fnmatch.fnmatchcase(path, p) or (basename and fnmatch.fnmatchcase(name, p)) for p in patterns)


@dataclass
class GuardOutcome:
    """Result of guarding one file. ``file`` is None when the file is dropped."""

    file: FileDescriptor | None
    findings: list[SecretFindingSummary] = field(default_factory=list)
    redacted: int = 0
    excluded: bool = False
    scanned: bool = False


class SecretsGuard:
    """Per-file secret handling shared by the guard stage and streaming copies."""

    def __init__(self, settings: SecretsSettings, engine: SecretEngine | None = None) -> None:
        if settings.redaction_mode not in REDACTION_MODES:
            raise ConfigurationError(
                key="secrets.redaction_mode",
                message=f"Unknown redaction mode: {settings.redaction_mode}",
            )
        self.settings = settings
        self.engine = engine if engine is not None else build_engine(settings)
        self.exclude_patterns = [*SECRET_FILE_PATTERNS, *settings.exclude_patterns]

    def is_secret_file(self, path: str) -> bool:
        return _matches(path, self.exclude_patterns, basename=True)

    def is_allowlisted(self, path: str) -> bool:
        return _matches(path, self.settings.allowlist, basename=False)

    def check(self, file: FileDescriptor) -> GuardOutcome:
        """Exclude, skip, or scan and redact ``file``.

        Checks run in order: secret-bearing file name, allowlist, binary,
        size ceiling, empty content.
        """
        if self.is_secret_file(file.path):
            logger.info("secret_file_excluded", path=file.path)
            return GuardOutcome(file=None, excluded=True)
        if self.is_allowlisted(file.path) or file.is_binary or file.excluded:
            return GuardOutcome(file=file)
        if file.size > self.settings.max_file_size or not file.content:
            return GuardOutcome(file=file)
        try:
            findings = self.engine.scan(file.content, file.path)
        except Exception as exc:  # noqa: BLE001
            logger.warning("secrets_scan_failed", path=file.path, error=str(exc))
            return GuardOutcome(file=file)
        summaries = [SecretFindingSummary(file=file.path, line=f.start_line, rule_id=f.rule_id) for f in findings]
        if not findings:
            return GuardOutcome(file=file, scanned=True)
        logger.warning("secrets_found", path=file.path, count=len(findings))
        if not self.settings.redact_inline:
            return GuardOutcome(file=None, findings=summaries, excluded=True, scanned=True)
        file.content, count = redact(file.content, findings, self.settings.redaction_mode, file.path)
        file.secrets_redacted = count
        return GuardOutcome(file=file, findings=summaries, redacted=count, scanned=True)


def guard_one(file: FileDescriptor, guard: SecretsGuard) -> FileDescriptor | None:
    """Guard a single file, raising at once in fail-on-secrets mode.

    Raises:
        SecretsDetectedError: If the file holds secrets and ``fail_on_secrets`` is set.
    """
    outcome = guard.check(file)
    if guard.settings.fail_on_secrets and outcome.findings:
        raise SecretsDetectedError(count=len(outcome.findings), findings=tuple(outcome.findings))
    return outcome.file


class SecretsGuardStage(BaseStage):
    """Detect secrets in loaded content, then redact them or drop the file."""

    name = "secrets_guard"

    def __init__(self, engine: SecretEngine | None = None) -> None:
        self.engine = engine
        self.enabled: bool | None = None

    def on_init(self, context: PipelineContext) -> None:
        settings = context.settings.secrets
        if not settings.enabled:
            self.enabled = False
            return
        if self.engine is None:
            self.engine = build_engine(settings)
        self.enabled = self.engine.is_available()
        if not self.enabled:
            logger.warning("secrets_guard_disabled", engine=self.engine.name, reason="engine unavailable")

    def process(self, context: PipelineContext) -> PipelineContext:
        if self.enabled is None:
            self.on_init(context)
        if not self.enabled:
            return context
        guard = SecretsGuard(context.settings.secrets, self.engine)
        queue = BoundedWorkerQueue(context.settings.secrets.parallelism, context.token)
        outcomes = list(queue.map(guard.check, context.files))

        findings = [s for o in outcomes for s in o.findings]
        report = {
            "files_scanned": sum(1 for o in outcomes if o.scanned),
            "files_with_secrets": sum(1 for o in outcomes if o.findings),
            "secrets_found": len(findings),
            "secrets_redacted": sum(o.redacted for o in outcomes),
            "files_excluded": sum(1 for o in outcomes if o.excluded),
            "findings": [{"file": s.file, "line": s.line, "rule_id": s.rule_id} for s in findings],
        }
        context.stats["secrets_guard"] = report
        logger.info(
            "secrets_guard_complete",
            files_excluded=report["files_excluded"],
            secrets_redacted=report["secrets_redacted"],
        )
        if context.settings.secrets.fail_on_secrets and findings:
            raise SecretsDetectedError(count=len(findings), findings=tuple(findings))
        context.files = [o.file for o in outcomes if o.file is not None]
        return context
