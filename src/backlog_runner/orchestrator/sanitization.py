"""Redaction helpers for agent output written to notes, logs and run history."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable

_MAX_PREVIEW_CHARS = 2_000

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b(claude_code_oauth|anthropic|openai|github|gh)[a-z0-9_]*_?(api_)?(key|token)\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
)


def sanitize_preview(
    text: str,
    *,
    max_chars: int = _MAX_PREVIEW_CHARS,
    secrets: Iterable[str] = (),
) -> str:
    """Redact obvious secrets plus any literal ``secrets`` and clamp payload size."""

    compact = (text or "").strip()
    if not compact:
        return ""

    redacted = compact
    for secret in secrets:
        if secret:
            redacted = redacted.replace(secret, "[redacted-secret]")
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)

    if len(redacted) <= max_chars:
        return redacted
    return redacted[:max_chars]


def summarize_output(
    stderr: str,
    stdout: str,
    *,
    max_chars: int = 320,
    secrets: Iterable[str] = (),
) -> str:
    """First non-empty line of stderr (or stdout), redacted and bounded."""

    raw = stderr if (stderr or "").strip() else stdout
    for line in (raw or "").splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        clean = sanitize_preview(stripped, max_chars=max_chars, secrets=secrets)
        return clean if len(stripped) <= max_chars else f"{clean}..."
    return "no output"
