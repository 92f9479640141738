"""Exception taxonomy for orchestrator failures."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for orchestrator failures."""


class ExecutionError(OrchestratorError):
    """Agent subprocess exited non-zero, was signalled, timed out or was aborted."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        signal_name: str | None = None,
        timed_out: bool = False,
        aborted: bool = False,
        failure_class: str | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.signal_name = signal_name
        self.timed_out = timed_out
        self.aborted = aborted
        self.failure_class = failure_class
        self.stdout = stdout
        self.stderr = stderr


class QuotaError(ExecutionError):
    """Agent hit a usage or rate limit. Retrying is pointless until reset."""

    def __init__(self, message: str, *, reset_hint: str = "", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reset_hint = reset_hint


class ContractError(OrchestratorError):
    """Agent output carried no usable result object."""


class ValidationError(OrchestratorError):
    """Self-reported completion is not backed by any observable artifact."""

    def __init__(self, message: str, *, reason: str = "") -> None:
        super().__init__(message)
        self.reason = reason


class ReviewError(OrchestratorError):
    """Secondary review did not approve the work."""

    def __init__(self, message: str, *, summary: str = "") -> None:
        super().__init__(message)
        self.summary = summary


class StoreError(OrchestratorError):
    """Task store could not be read or written."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id
