"""Task store implementations."""

from backlog_runner.board.base import TaskStore
from backlog_runner.board.local import LocalBoardStore

__all__ = [
    "LocalBoardStore",
    "TaskStore",
]
