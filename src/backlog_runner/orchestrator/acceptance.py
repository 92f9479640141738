"""Acceptance criteria tracking over checkbox lines in task bodies.

Indices are positional: the n-th checkbox in document order is ``AC-n``.
They are never cached. Every mutation re-parses the body it is handed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from backlog_runner.orchestrator.models import AcceptanceCriterion

_CHECKBOX_RE = re.compile(r"^([ \t]*[-*+][ \t]+)\[([ xX])\]([ \t]+.+)$", re.MULTILINE)
_PREFIXED_REF_RE = re.compile(r"^(?:AC[-\s#]*|#)(\d+)\b", re.IGNORECASE)
_EMPHASIS_RE = re.compile(r"(\*\*|__|\*|_|`|~~)")
_WS_RE = re.compile(r"\s+")


@dataclass(slots=True, frozen=True)
class AcRef:
    """Reference to one acceptance criterion, either by position or by text."""

    index: int | None = None
    text: str = ""

    @classmethod
    def by_index(cls, index: int) -> AcRef:
        return cls(index=index)

    @classmethod
    def by_text(cls, text: str) -> AcRef:
        return cls(text=text)

    @property
    def is_index(self) -> bool:
        return self.index is not None

    def __str__(self) -> str:
        return f"AC-{self.index}" if self.index is not None else self.text


def parse_acs(body: str | None) -> list[AcceptanceCriterion]:
    """Parse checkbox criteria in document order."""

    if not body:
        return []
    return [
        AcceptanceCriterion(
            index=position,
            text=match.group(3).strip(),
            checked=match.group(2).lower() == "x",
        )
        for position, match in enumerate(_CHECKBOX_RE.finditer(body), start=1)
    ]


def count_unchecked(body: str | None) -> int:
    return sum(1 for criterion in parse_acs(body) if not criterion.checked)


def format_acs_for_prompt(acs: list[AcceptanceCriterion]) -> str:
    """Numbered reference table the agent uses to report progress."""

    if not acs:
        return ""
    rule = "=" * 80
    lines = [
        rule,
        f"ACCEPTANCE CRITERIA REFERENCE TABLE ({len(acs)} ACs)",
        rule,
        "",
        "Use these AC numbers for tracking. Do NOT paraphrase, reference by number only.",
        "",
    ]
    for criterion in acs:
        suffix = " [DONE]" if criterion.checked else ""
        lines.append(f"  AC-{criterion.index}: {criterion.text}{suffix}")
    lines.append("")
    return "\n".join(lines)


def resolve_ac_ref(raw: str | int | None) -> AcRef:
    """Turn ``AC-3``, ``AC-3: text``, ``#3``, ``3`` or free text into an ``AcRef``."""

    if isinstance(raw, int) and not isinstance(raw, bool):
        return AcRef.by_index(raw)
    trimmed = str(raw or "").strip()
    if trimmed.isdigit():
        return AcRef.by_index(int(trimmed))
    match = _PREFIXED_REF_RE.match(trimmed)
    if match:
        return AcRef.by_index(int(match.group(1)))
    return AcRef.by_text(trimmed)


def normalize_ac_text(text: str) -> str:
    collapsed = _WS_RE.sub(" ", _EMPHASIS_RE.sub("", text))
    return collapsed.strip().rstrip(".").lower()


def find_index_by_text(acs: list[AcceptanceCriterion], text: str) -> int | None:
    """Exact normalized match first, then a unique containment match."""

    needle = normalize_ac_text(text)
    if not needle:
        return None
    for criterion in acs:
        if normalize_ac_text(criterion.text) == needle:
            return criterion.index
    contained = [
        criterion.index
        for criterion in acs
        if needle in normalize_ac_text(criterion.text)
        or normalize_ac_text(criterion.text) in needle
    ]
    if len(contained) == 1:
        return contained[0]
    return None


def check_indices(body: str, indices: list[int] | set[int]) -> tuple[str, list[int]]:
    """Check the given 1-based positions. Returns new body and the indices newly checked."""

    wanted = {index for index in indices if index > 0}
    if not wanted:
        return body, []
    newly_checked: list[int] = []
    position = 0

    def _replace(match: re.Match[str]) -> str:
        nonlocal position
        position += 1
        if position in wanted and match.group(2) == " ":
            newly_checked.append(position)
            return f"{match.group(1)}[x]{match.group(3)}"
        return match.group(0)

    updated = _CHECKBOX_RE.sub(_replace, body)
    return updated, newly_checked


def check_texts(body: str, texts: list[str]) -> tuple[str, list[int]]:
    """Resolve each text against the live body, then check matching positions."""

    acs = parse_acs(body)
    indices: set[int] = set()
    for text in texts:
        index = find_index_by_text(acs, text)
        if index is not None:
            indices.add(index)
    return check_indices(body, indices)
