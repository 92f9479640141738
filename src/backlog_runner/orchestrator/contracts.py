"""Agent output contract: inline progress markers and the terminal result object."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from backlog_runner.orchestrator.errors import ContractError
from backlog_runner.orchestrator.models import ExecutionResult, ResultStatus

logger = logging.getLogger(__name__)

AC_COMPLETE_MARKER = "[AC_COMPLETE]"
PROGRESS_MARKER = "[PROGRESS]"

RESULT_SCHEMA_EXAMPLE = (
    '{"status":"done|blocked","summary":"...","notes":"...","files":["..."],'
    '"tests":"...","completed_acs":["AC-1","AC-2"]}'
)

_AC_MARKER_RE = re.compile(r"\[AC_COMPLETE\]\s*(.+?)\s*$")
_PROGRESS_MARKER_RE = re.compile(r"\[PROGRESS\]\s*(.*?)\s*$")
_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)


def extract_ac_marker(line: str) -> str | None:
    """Reference carried by an ``[AC_COMPLETE] <ref>`` line, if any."""

    match = _AC_MARKER_RE.search(line or "")
    if match is None:
        return None
    return match.group(1) or None


def extract_progress_marker(line: str) -> dict[str, Any] | str | None:
    """Payload of a ``[PROGRESS]`` line: a JSON object when it parses, else text."""

    match = _PROGRESS_MARKER_RE.search(line or "")
    if match is None:
        return None
    payload = match.group(1)
    if payload.startswith("{"):
        parsed = _try_load_dict(payload)
        if parsed is not None:
            return parsed
    return payload


def parse_execution_result(stdout: str, stderr: str = "") -> ExecutionResult:
    """Parse the last well-formed JSON object in ``stdout``.

    Missing or malformed output degrades to a permissive ``done`` result with
    ``contract_found=False``; the hallucination check decides what it is worth.
    """

    payload = find_last_json_object(stdout)
    if payload is None:
        logger.info("Agent output carried no result object, using permissive default")
        return ExecutionResult(stdout=stdout, stderr=stderr)
    try:
        result = _normalize_payload(payload)
    except ContractError as error:
        logger.warning("Agent result object rejected: %s", error)
        return ExecutionResult(stdout=stdout, stderr=stderr)
    result.stdout = stdout
    result.stderr = stderr
    return result


def find_last_json_object(text: str) -> dict[str, Any] | None:
    """Scan lines from the end for a ``{...}`` object, then fall back to the whole text."""

    trimmed = (text or "").strip()
    if not trimmed:
        return None
    for line in reversed(trimmed.splitlines()):
        candidate = line.strip()
        if not (candidate.startswith("{") and candidate.endswith("}")):
            continue
        payload = _try_load_dict(candidate)
        if payload is not None:
            return payload

    fenced = _FENCED_JSON.findall(trimmed)
    for block in reversed(fenced):
        payload = _try_load_dict(block)
        if payload is not None:
            return payload
    return _try_load_dict(trimmed)


def normalize_completed_acs(raw: Any) -> list[str]:
    """Strings are kept verbatim, integers become ``AC-n``."""

    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ContractError("completed_acs must be a list")
    refs: list[str] = []
    for item in raw:
        if isinstance(item, bool):
            continue
        if isinstance(item, int):
            refs.append(f"AC-{item}")
        elif isinstance(item, str) and item.strip():
            refs.append(item.strip())
    return refs


def _normalize_payload(payload: dict[str, Any]) -> ExecutionResult:
    raw_status = str(payload.get("status") or ResultStatus.DONE.value).strip().lower()
    status = ResultStatus.DONE if raw_status == ResultStatus.DONE.value else ResultStatus.BLOCKED

    files_raw = payload.get("files") or []
    if not isinstance(files_raw, list):
        raise ContractError("files must be a list")
    files = [str(item).strip() for item in files_raw if isinstance(item, str) and item.strip()]

    tests = payload.get("tests") or ""
    if isinstance(tests, list):
        tests = "\n".join(str(item) for item in tests)

    return ExecutionResult(
        status=status,
        summary=str(payload.get("summary") or ""),
        notes=str(payload.get("notes") or ""),
        files=files,
        tests=str(tests),
        completed_acs=normalize_completed_acs(payload.get("completed_acs")),
        contract_found=True,
    )


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
