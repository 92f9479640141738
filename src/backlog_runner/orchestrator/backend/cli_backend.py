"""Subprocess-based executor for CLI coding agents."""

from __future__ import annotations

import logging
import os
import queue
import re
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from backlog_runner.config import AgentSettings
from backlog_runner.orchestrator import contracts
from backlog_runner.orchestrator.backend.base import ExecutionRequest
from backlog_runner.orchestrator.errors import ExecutionError, QuotaError
from backlog_runner.orchestrator.failure_classifier import FailureClass, classify_failure
from backlog_runner.orchestrator.models import ExecutionResult
from backlog_runner.orchestrator.sanitization import summarize_output
from backlog_runner.storage.database import utc_now

logger = logging.getLogger(__name__)

FULL_ACCESS_FLAG = "--dangerously-skip-permissions"
_POLL_SECONDS = 0.1
_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(slots=True)
class ExecutionLogPaths:
    """Per-execution files the prompt and both output streams are teed into."""

    directory: Path
    prompt_path: Path
    stdout_path: Path
    stderr_path: Path


class CliAgentBackend:
    """Spawn the configured agent command, stream its output and parse its result."""

    def __init__(self, settings: AgentSettings, *, logs_dir: Path) -> None:
        self.settings = settings
        self.logs_dir = logs_dir

    def run(self, request: ExecutionRequest) -> ExecutionResult:
        paths = self._prepare_log_paths(request)
        paths.prompt_path.write_text(request.prompt, "utf-8")
        model = request.model_override or request.task.model
        run_args = build_run_args(
            command_template=self.settings.command_template,
            model=model,
            prompt_file=paths.prompt_path,
            workdir=self.settings.workdir,
            full_access=self.settings.full_access,
        )
        logger.info(
            "Running agent for %s (%s)%s",
            request.task.id,
            request.label,
            f" with model {model}" if model else "",
        )

        try:
            with (
                paths.stdout_path.open("w", encoding="utf-8") as stdout_log,
                paths.stderr_path.open("w", encoding="utf-8") as stderr_log,
            ):
                outcome = _stream_subprocess(
                    run_args=run_args,
                    cwd=self.settings.workdir,
                    env=self._build_env(request),
                    prompt=request.prompt,
                    request=request,
                    stdout_log=stdout_log,
                    stderr_log=stderr_log,
                )
        except FileNotFoundError as error:
            raise ExecutionError(
                f"Agent command not found: {run_args[0]}",
                failure_class=FailureClass.NON_RETRYABLE.value,
            ) from error
        except OSError as error:
            raise ExecutionError(
                f"Agent command failed to start: {error}",
                failure_class=FailureClass.TRANSIENT.value,
            ) from error

        if outcome.failed:
            raise _build_failure(
                outcome,
                timeout_seconds=request.timeout_seconds,
                secrets=(self.settings.oauth_token,),
            )
        return contracts.parse_execution_result(outcome.stdout, outcome.stderr)

    def _build_env(self, request: ExecutionRequest) -> dict[str, str]:
        env = os.environ.copy()
        if self.settings.oauth_token:
            env["CLAUDE_CODE_OAUTH_TOKEN"] = self.settings.oauth_token
        env["BACKLOG_RUNNER_TASK_ID"] = request.task.id
        env["BACKLOG_RUNNER_TASK_NAME"] = request.task.name
        env["BACKLOG_RUNNER_TASK_TYPE"] = request.task.type
        env["BACKLOG_RUNNER_TASK_PRIORITY"] = request.task.priority
        env["BACKLOG_RUNNER_RUN_LABEL"] = request.label
        return env

    def _prepare_log_paths(self, request: ExecutionRequest) -> ExecutionLogPaths:
        stamp = utc_now().strftime("%Y%m%dT%H%M%S%fZ")
        safe_id = _UNSAFE_PATH_CHARS.sub("_", request.task.id).strip("_") or "task"
        directory = self.logs_dir / f"{stamp}-{safe_id}-{request.label}"
        directory.mkdir(parents=True, exist_ok=True)
        return ExecutionLogPaths(
            directory=directory,
            prompt_path=directory / "prompt.txt",
            stdout_path=directory / "stdout.log",
            stderr_path=directory / "stderr.log",
        )


def build_run_args(
    *,
    command_template: str,
    model: str | None,
    prompt_file: Path,
    workdir: Path,
    full_access: bool = False,
) -> list[str]:
    """Render the command template into argv.

    Supported placeholders are ``{model}``, ``{prompt_file}`` and ``{workdir}``.
    ``--model`` is appended when the template has no ``{model}`` and a model is set.
    """

    stripped = command_template.strip()
    if not stripped:
        raise ExecutionError(
            "Agent command template is empty.",
            failure_class=FailureClass.NON_RETRYABLE.value,
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model or ""),
            prompt_file=shlex.quote(str(prompt_file)),
            workdir=shlex.quote(str(workdir)),
        )
    except (KeyError, IndexError) as error:
        raise ExecutionError(
            f"Unsupported command template placeholder: {error}",
            failure_class=FailureClass.NON_RETRYABLE.value,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ExecutionError(
            "Agent command template rendered empty command.",
            failure_class=FailureClass.NON_RETRYABLE.value,
        )
    if model and "{model}" not in stripped:
        argv.extend(["--model", model])
    if full_access and FULL_ACCESS_FLAG not in argv:
        argv.append(FULL_ACCESS_FLAG)
    return argv


@dataclass(slots=True)
class _StreamOutcome:
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    aborted: bool = False

    @property
    def failed(self) -> bool:
        return self.timed_out or self.aborted or self.exit_code != 0


def _stream_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    cwd: Path,
    env: dict[str, str],
    prompt: str,
    request: ExecutionRequest,
    stdout_log: IO[str],
    stderr_log: IO[str],
) -> _StreamOutcome:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=cwd,
        env=env,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
    )
    lines: queue.Queue[str | None] = queue.Queue()
    stderr_chunks: list[str] = []
    threads = [
        threading.Thread(target=_feed_stdin, args=(process.stdin, prompt), daemon=True),
        threading.Thread(target=_pump_lines, args=(process.stdout, lines), daemon=True),
        threading.Thread(
            target=_collect_stderr,
            args=(process.stderr, stderr_chunks, stderr_log),
            daemon=True,
        ),
    ]
    for thread in threads:
        thread.start()

    stdout_lines: list[str] = []
    deadline = time.monotonic() + request.timeout_seconds
    timed_out = False
    aborted = False
    stdout_closed = False

    while not stdout_closed:
        try:
            line = lines.get(timeout=_POLL_SECONDS)
        except queue.Empty:
            line = ""
        if line is None:
            stdout_closed = True
        elif line:
            stdout_log.write(line)
            stdout_log.flush()
            stdout_lines.append(line)
            _dispatch_markers(line, request)

        if stdout_closed:
            break
        if request.abort_event.is_set():
            aborted = True
            _terminate_process(process)
            break
        if time.monotonic() >= deadline:
            timed_out = True
            _terminate_process(process)
            break

    exit_code = process.wait() if not (timed_out or aborted) else process.poll()
    for thread in threads:
        thread.join(timeout=2)
    while True:
        try:
            line = lines.get_nowait()
        except queue.Empty:
            break
        if line:
            stdout_log.write(line)
            stdout_lines.append(line)
    return _StreamOutcome(
        exit_code=exit_code,
        stdout="".join(stdout_lines),
        stderr="".join(stderr_chunks),
        timed_out=timed_out,
        aborted=aborted,
    )


def _dispatch_markers(line: str, request: ExecutionRequest) -> None:
    ref = contracts.extract_ac_marker(line)
    if ref is not None and request.on_ac_complete is not None:
        try:
            request.on_ac_complete(ref)
        except Exception:  # noqa: BLE001
            logger.exception("AC completion callback failed for %s", ref)
        return
    progress = contracts.extract_progress_marker(line)
    if progress is not None and request.on_progress is not None:
        try:
            request.on_progress(progress)
        except Exception:  # noqa: BLE001
            logger.exception("Progress callback failed")


def _feed_stdin(stream: IO[str] | None, prompt: str) -> None:
    if stream is None:
        return
    try:
        stream.write(prompt)
    except (BrokenPipeError, OSError, ValueError):
        logger.debug("Agent closed stdin before the prompt was fully written")
    finally:
        try:
            stream.close()
        except (BrokenPipeError, OSError):
            pass


def _pump_lines(stream: IO[str] | None, lines: queue.Queue[str | None]) -> None:
    try:
        if stream is not None:
            for line in stream:
                lines.put(line)
    except ValueError:
        # Stream closed under us during terminate.
        pass
    finally:
        lines.put(None)


def _collect_stderr(stream: IO[str] | None, chunks: list[str], log: IO[str]) -> None:
    if stream is None:
        return
    try:
        for line in stream:
            chunks.append(line)
            log.write(line)
            log.flush()
    except ValueError:
        pass


def _build_failure(
    outcome: _StreamOutcome,
    *,
    timeout_seconds: int,
    secrets: tuple[str, ...] = (),
) -> ExecutionError:
    classification = classify_failure(
        stdout=outcome.stdout,
        stderr=outcome.stderr,
        timed_out=outcome.timed_out,
        aborted=outcome.aborted,
    )
    summary = summarize_output(outcome.stderr, outcome.stdout, secrets=secrets)
    signal_name = _signal_name(outcome.exit_code)
    if outcome.aborted:
        message = f"Agent execution aborted: {summary}"
    elif outcome.timed_out:
        message = f"Agent execution timed out after {timeout_seconds}s: {summary}"
    else:
        message = (
            f"Agent command failed (exit={outcome.exit_code}, "
            f"signal={signal_name or 'none'}): {summary}"
        )

    details = {
        "exit_code": outcome.exit_code,
        "signal_name": signal_name,
        "timed_out": outcome.timed_out,
        "aborted": outcome.aborted,
        "failure_class": classification.failure_class.value,
        "stdout": outcome.stdout,
        "stderr": outcome.stderr,
    }
    if classification.halts_orchestrator:
        return QuotaError(message, reset_hint=classification.reset_hint, **details)
    return ExecutionError(message, **details)


def _signal_name(exit_code: int | None) -> str | None:
    if exit_code is None or exit_code >= 0:
        return None
    try:
        return signal.Signals(-exit_code).name
    except ValueError:
        return f"SIG{-exit_code}"


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
