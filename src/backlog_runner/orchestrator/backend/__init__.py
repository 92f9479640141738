"""Agent executor implementations."""

from backlog_runner.orchestrator.backend.base import AgentExecutor, ExecutionRequest
from backlog_runner.orchestrator.backend.cli_backend import CliAgentBackend

__all__ = [
    "AgentExecutor",
    "CliAgentBackend",
    "ExecutionRequest",
]
