from __future__ import annotations

import allure

from backlog_runner.orchestrator.failure_classifier import (
    FailureClass,
    classify_failure,
    extract_reset_hint,
    is_quota_error_text,
)
from backlog_runner.orchestrator.sanitization import sanitize_preview, summarize_output

pytestmark = [
    allure.epic("Agent Execution"),
    allure.feature("Failure Classification"),
]


def test_limit_message_halts_and_carries_reset_hint() -> None:
    classified = classify_failure(
        stdout="",
        stderr="You've hit your limit · resets 3pm (Europe/Berlin)",
    )

    assert classified.failure_class == FailureClass.QUOTA_OR_LIMIT
    assert classified.halts_orchestrator
    assert classified.reset_hint == "resets 3pm (Europe/Berlin)"


def test_limit_wins_over_timeout_and_abort() -> None:
    classified = classify_failure(
        stdout="usage limit reached",
        stderr="",
        timed_out=True,
        aborted=True,
    )

    assert classified.failure_class == FailureClass.QUOTA_OR_LIMIT


def test_abort_and_timeout_classes() -> None:
    assert classify_failure(stdout="", stderr="", aborted=True).failure_class == (
        FailureClass.ABORTED
    )
    assert classify_failure(stdout="", stderr="", timed_out=True).failure_class == (
        FailureClass.TIMEOUT
    )


def test_pattern_groups() -> None:
    auth = classify_failure(stdout="", stderr="Invalid API key. Please run /login")
    model = classify_failure(stdout="", stderr="Error: unknown model claude-x")
    transient = classify_failure(stdout="", stderr="HTTP 529 overloaded")

    assert auth.failure_class == FailureClass.ACCESS_OR_AUTH
    assert model.failure_class == FailureClass.MODEL_NOT_AVAILABLE
    assert transient.failure_class == FailureClass.TRANSIENT
    assert not transient.halts_orchestrator


def test_unknown_failure_is_non_retryable() -> None:
    classified = classify_failure(stdout="", stderr="segmentation fault")

    assert classified.failure_class == FailureClass.NON_RETRYABLE
    assert classified.matched_pattern is None


def test_quota_helpers() -> None:
    assert is_quota_error_text("Claude usage limit reached")
    assert not is_quota_error_text("syntax error")
    assert extract_reset_hint("no hint here") == ""


def test_sanitize_preview_redacts_tokens_and_clamps() -> None:
    text = "Authorization: Bearer abcdefgh12345678 and key sk-ant-abcdef123456"

    redacted = sanitize_preview(text)

    assert "abcdefgh12345678" not in redacted
    assert "sk-ant-abcdef123456" not in redacted
    assert "[redacted-token]" in redacted
    assert sanitize_preview("x" * 50, max_chars=10) == "x" * 10
    assert sanitize_preview("   ") == ""


def test_sanitize_preview_redacts_secret_assignments_and_query_tokens() -> None:
    redacted = sanitize_preview(
        "CLAUDE_CODE_OAUTH_TOKEN=secret-value https://x.test/a?token=abc&x=1",
    )

    assert "secret-value" not in redacted
    assert "token=[redacted]" in redacted


def test_summarize_output_prefers_first_stderr_line() -> None:
    assert summarize_output("\n\nfatal: boom\nmore", "stdout line") == "fatal: boom"
    assert summarize_output("", "only stdout") == "only stdout"
    assert summarize_output("", "") == "no output"
    assert summarize_output("y" * 400, "", max_chars=20) == "y" * 20 + "..."


def test_literal_secrets_are_redacted() -> None:
    summary = summarize_output(
        "login failed for opaque-oauth-value",
        "",
        secrets=("opaque-oauth-value", ""),
    )

    assert summary == "login failed for [redacted-secret]"
