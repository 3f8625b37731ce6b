"""Pre-execution content moderation.

`ModerationHandler` runs the optional check-then-branch step of an attempt.
`RuleBasedModerator` is a default text moderation collaborator built on a
regex rule table.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal, TypeVar

from aigen.services.generation.exceptions import ErrorKind, create_generation_error
from aigen.services.generation.interfaces import ModerationConfig
from aigen.services.generation.models import (
    ModerationResult,
    NeedsConfirmation,
    Resolved,
)


logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")


class ModerationHandler:
    """Check input against the configured moderation collaborator.

    When content is disallowed with warnings and a warning presenter is
    configured, the attempt is suspended: the presenter receives single-use
    `on_cancel`/`on_proceed` continuations and the same pair is returned to
    the caller as `NeedsConfirmation`. `on_proceed` runs `execute`, which must
    be the orchestrator's normal completion path; `execute` returns None when
    the attempt was abandoned in the meantime.
    """

    def __init__(self, moderation: ModerationConfig | None) -> None:
        self.moderation = moderation

    @property
    def enabled(self) -> bool:
        return self.moderation is not None

    async def handle(
        self,
        input: Any,
        *,
        execute: Callable[[], Awaitable[Resolved[ResultT] | None]],
        cancel: Callable[[], None],
        on_moderating: Callable[[], None] | None = None,
    ) -> Resolved[ResultT] | NeedsConfirmation[ResultT] | None:
        if self.moderation is None:
            return await execute()

        if on_moderating is not None:
            on_moderating()
        result = await self.moderation.check_content(input)

        if not result.allowed and result.warnings:
            presenter = self.moderation.on_show_warning
            if presenter is None:
                raise create_generation_error(
                    ErrorKind.POLICY, "Content policy violation"
                )

            on_cancel, on_proceed = _single_use_continuations(cancel, execute)
            logger.info(
                f"Moderation flagged input with {len(result.warnings)} warning(s); "
                "awaiting confirmation"
            )
            presenter(list(result.warnings), on_cancel, on_proceed)
            return NeedsConfirmation(
                warnings=list(result.warnings), proceed=on_proceed, cancel=on_cancel
            )

        return await execute()


def _single_use_continuations(
    cancel: Callable[[], None],
    execute: Callable[[], Awaitable[Resolved[ResultT] | None]],
) -> tuple[Callable[[], None], Callable[[], Awaitable[Resolved[ResultT] | None]]]:
    """Build a cancel/proceed pair where only the first call of either runs."""
    used = False

    def on_cancel() -> None:
        nonlocal used
        if used:
            return
        used = True
        cancel()

    async def on_proceed() -> Resolved[ResultT] | None:
        nonlocal used
        if used:
            return None
        used = True
        return await execute()

    return on_cancel, on_proceed


# -- rule-based text moderator ---------------------------------------------


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_WEIGHTS = {
    Severity.CRITICAL: 1.0,
    Severity.HIGH: 0.75,
    Severity.MEDIUM: 0.5,
    Severity.LOW: 0.25,
}

DEFAULT_MAX_LENGTH = 10000

MALICIOUS_MARKUP_PATTERNS = [
    re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
]

PROMPT_INJECTION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"ignore\s+(all\s+)?(previous|prior|above)\s+(instructions?|prompts?|rules?)",
        r"disregard\s+(all\s+)?(previous|prior|above)\s+(instructions?|prompts?)",
        r"forget\s+(all\s+)?(previous|prior|your)\s+(instructions?|prompts?|rules?)",
        r"you\s+are\s+now\s+(a|an)\s+",
        r"act\s+as\s+(if|though)\s+you",
        r"pretend\s+(you\s+are|to\s+be)",
        r"bypass\s+(your\s+)?(safety|content|moderation)",
        r"override\s+(your\s+)?(restrictions?|limitations?|rules?)",
        r"jailbreak",
        r"DAN\s*mode",
        r"developer\s+mode\s+(enabled|on|activated)",
        r"system\s*:\s*",
        r"\[system\]",
        r"<<\s*sys\s*>>",
    )
]

DEFAULT_SUGGESTIONS = {
    "explicit_content": "Please remove explicit or adult content from your prompt.",
    "violence": "Please describe the scene without graphic violence.",
    "hate_speech": "Please remove discriminatory language.",
    "illegal_activity": "Please avoid references to illegal activity.",
    "personal_info": "Please remove personal information such as emails or numbers.",
    "dangerous_content": "Your prompt contains content that cannot be processed.",
    "validation": "Please check your prompt and try again.",
}


@dataclass(frozen=True, slots=True)
class ModerationRule:
    id: str
    name: str
    severity: Severity
    violation_type: str
    patterns: tuple[str, ...]
    enabled: bool = True
    _compiled: tuple[re.Pattern[str], ...] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        compiled = tuple(re.compile(p, re.IGNORECASE) for p in self.patterns)
        object.__setattr__(self, "_compiled", compiled)

    def first_match(self, content: str) -> str | None:
        for pattern in self._compiled:
            match = pattern.search(content)
            if match:
                return match.group(0)
        return None


@dataclass(frozen=True, slots=True)
class Violation:
    rule_id: str
    rule_name: str
    violation_type: str
    severity: Severity
    matched_text: str = ""
    suggestion: str = ""


@dataclass(frozen=True, slots=True)
class ModerationReport:
    is_allowed: bool
    violations: list[Violation]
    confidence: float
    suggested_action: Literal["allow", "warn", "block"]


DEFAULT_RULES: tuple[ModerationRule, ...] = (
    ModerationRule(
        id="explicit-001",
        name="Sexual Content",
        severity=Severity.CRITICAL,
        violation_type="explicit_content",
        patterns=(
            r"\bnude\b",
            r"\bnaked\b",
            r"\bnsfw\b",
            r"\bsexual\b",
            r"\berotic\b",
            r"\bporn\b",
            r"\bxxx\b",
            r"\badult content\b",
            r"\bexplicit\b",
        ),
    ),
    ModerationRule(
        id="explicit-002",
        name="Body Parts Focus",
        severity=Severity.HIGH,
        violation_type="explicit_content",
        patterns=(
            r"\bbreasts?\b",
            r"\bbutt\b",
            r"\bass\b",
            r"\bchest\b.*\b(exposed|revealing|bare)\b",
            r"\bcleavage\b",
        ),
    ),
    ModerationRule(
        id="violence-001",
        name="Graphic Violence",
        severity=Severity.CRITICAL,
        violation_type="violence",
        patterns=(
            r"\bgore\b",
            r"\bblood\b.*\b(splatter|dripping|pool)\b",
            r"\bmurder\b",
            r"\bkilling\b",
            r"\btorture\b",
            r"\bdismember\b",
            r"\bbeheading\b",
        ),
    ),
    ModerationRule(
        id="violence-002",
        name="Weapons Focus",
        severity=Severity.MEDIUM,
        violation_type="violence",
        patterns=(
            r"\bgun\b.*\b(pointing|aimed|shooting)\b",
            r"\bweapon\b.*\b(attack|assault|harm)\b",
            r"\bknife\b.*\b(stabbing|cutting|slashing)\b",
        ),
    ),
    ModerationRule(
        id="hate-001",
        name="Discriminatory Language",
        severity=Severity.CRITICAL,
        violation_type="hate_speech",
        patterns=(
            r"\bhate\b.*\b(speech|crime|group)\b",
            r"\bracist\b",
            r"\bsexist\b",
            r"\bbigot\b",
            r"\bxenophobia\b",
        ),
    ),
    ModerationRule(
        id="illegal-001",
        name="Drug Content",
        severity=Severity.HIGH,
        violation_type="illegal_activity",
        patterns=(
            r"\bdrug\b.*\b(dealing|trafficking|manufacturing)\b",
            r"\bcocaine\b",
            r"\bheroin\b",
            r"\bmethamphetamine\b",
            r"\billegal\b.*\b(substance|drug)\b",
        ),
    ),
    ModerationRule(
        id="pii-001",
        name="Personal Information",
        severity=Severity.MEDIUM,
        violation_type="personal_info",
        patterns=(
            r"\b\d{3}-\d{2}-\d{4}\b",
            r"\b\d{16}\b",
            r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b",
            r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b",
        ),
    ),
)


def _default_text(input: Any) -> str:
    if isinstance(input, str):
        return input
    if isinstance(input, Mapping):
        return str(input.get("prompt") or "")
    return str(getattr(input, "prompt", "") or "")


class RuleBasedModerator:
    """Text moderator usable as `ModerationConfig.check_content`.

    Validation (empty, too long, malicious markup, prompt injection) runs
    first and short-circuits; otherwise every enabled rule is evaluated.
    """

    def __init__(
        self,
        rules: Iterable[ModerationRule] | None = None,
        *,
        max_length: int = DEFAULT_MAX_LENGTH,
        suggestions: Mapping[str, str] | None = None,
        text_of: Callable[[Any], str] = _default_text,
    ) -> None:
        self.rules = list(DEFAULT_RULES if rules is None else rules)
        self.max_length = max_length
        self.suggestions = {**DEFAULT_SUGGESTIONS, **(suggestions or {})}
        self.text_of = text_of

    def add_rules(self, rules: Iterable[ModerationRule]) -> None:
        self.rules.extend(rules)

    def _violation(
        self,
        rule_id: str,
        rule_name: str,
        violation_type: str,
        severity: Severity = Severity.HIGH,
        matched_text: str = "",
    ) -> Violation:
        return Violation(
            rule_id=rule_id,
            rule_name=rule_name,
            violation_type=violation_type,
            severity=severity,
            matched_text=matched_text,
            suggestion=self.suggestions.get(
                violation_type, self.suggestions["validation"]
            ),
        )

    def _validate(self, content: str) -> Violation | None:
        if not content:
            return self._violation("empty-content", "Validation", "validation")
        if len(content) > self.max_length:
            return self._violation("too-long", "Validation", "validation")
        if any(p.search(content) for p in MALICIOUS_MARKUP_PATTERNS):
            return self._violation(
                "malicious", "Security", "dangerous_content", Severity.CRITICAL
            )
        if any(p.search(content) for p in PROMPT_INJECTION_PATTERNS):
            return self._violation(
                "prompt-injection", "Security", "dangerous_content", Severity.CRITICAL
            )
        return None

    def moderate(self, content: str) -> ModerationReport:
        validation_error = self._validate(content)
        if validation_error is not None:
            violations = [validation_error]
        else:
            violations = []
            for rule in self.rules:
                if not rule.enabled:
                    continue
                matched = rule.first_match(content)
                if matched is not None:
                    violations.append(
                        self._violation(
                            rule.id,
                            rule.name,
                            rule.violation_type,
                            rule.severity,
                            matched,
                        )
                    )

        if violations:
            logger.debug(
                f"Moderation found {len(violations)} violation(s): "
                f"{[v.rule_id for v in violations]}"
            )
        return ModerationReport(
            is_allowed=not violations,
            violations=violations,
            confidence=_confidence(violations),
            suggested_action=_suggested_action(violations),
        )

    async def check_content(self, input: Any) -> ModerationResult:
        report = self.moderate(self.text_of(input))
        warnings = list(dict.fromkeys(v.suggestion for v in report.violations))
        return ModerationResult(allowed=report.is_allowed, warnings=warnings)


def _confidence(violations: list[Violation]) -> float:
    if not violations:
        return 1.0
    score = sum(SEVERITY_WEIGHTS.get(v.severity, 0.25) for v in violations)
    return min(1.0, score / 2)


def _suggested_action(violations: list[Violation]) -> Literal["allow", "warn", "block"]:
    if not violations:
        return "allow"
    if any(v.severity in (Severity.CRITICAL, Severity.HIGH) for v in violations):
        return "block"
    return "warn"
