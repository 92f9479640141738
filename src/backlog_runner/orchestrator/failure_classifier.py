"""Deterministic classification of failed agent executions."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class FailureClass(str, Enum):
    """Normalized failure classes driving halt and ledger policy."""

    QUOTA_OR_LIMIT = "quota_or_limit"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"
    TIMEOUT = "timeout"
    ABORTED = "aborted"


_QUOTA_OR_LIMIT_PATTERNS: tuple[str, ...] = (
    "you've hit your limit",
    "hit your limit",
    "usage limit",
    "quota",
    "resource_exhausted",
    "credit balance is too low",
    "rate limit reached",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "please run /login",
    "oauth token",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "overloaded",
    "429",
    "529",
    "try again later",
    "temporarily unavailable",
    "connection reset",
    "network error",
    "could not resolve host",
)

_RESET_HINT_RE = re.compile(r"resets?[^)\n]*\)?", re.IGNORECASE)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_pattern: str | None
    reset_hint: str = ""

    @property
    def halts_orchestrator(self) -> bool:
        return self.failure_class == FailureClass.QUOTA_OR_LIMIT


def classify_failure(
    *,
    stdout: str,
    stderr: str,
    timed_out: bool = False,
    aborted: bool = False,
) -> FailureClassification:
    """Classify a failed execution. Limit signatures win over timeout and abort."""

    haystack = f"{stderr}\n{stdout}".lower()

    pattern = _first_match(haystack, _QUOTA_OR_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.QUOTA_OR_LIMIT,
            matched_pattern=pattern,
            reset_hint=extract_reset_hint(f"{stderr}\n{stdout}"),
        )
    if aborted:
        return FailureClassification(failure_class=FailureClass.ABORTED, matched_pattern=None)
    if timed_out:
        return FailureClassification(failure_class=FailureClass.TIMEOUT, matched_pattern=None)

    for failure_class, patterns in (
        (FailureClass.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.MODEL_NOT_AVAILABLE, _MODEL_NOT_AVAILABLE_PATTERNS),
        (FailureClass.TRANSIENT, _TRANSIENT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(failure_class=failure_class, matched_pattern=pattern)

    return FailureClassification(failure_class=FailureClass.NON_RETRYABLE, matched_pattern=None)


def is_quota_error_text(text: str) -> bool:
    return _first_match((text or "").lower(), _QUOTA_OR_LIMIT_PATTERNS) is not None


def extract_reset_hint(text: str) -> str:
    """``resets 3pm (Europe/Berlin)`` style fragment from a limit message, or empty."""

    match = _RESET_HINT_RE.search(text or "")
    if match is None:
        return ""
    return match.group(0).strip()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
