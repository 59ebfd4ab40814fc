"""Coding-agent executors consumed by the iteration controller."""

from .executor import (
    AgentError,
    AgentExecutor,
    AgentHandle,
    AgentLaunchError,
    AgentNotFoundError,
    AgentRecord,
    AgentStatus,
    SubprocessAgentExecutor,
)

__all__ = [
    "AgentError",
    "AgentExecutor",
    "AgentHandle",
    "AgentLaunchError",
    "AgentNotFoundError",
    "AgentRecord",
    "AgentStatus",
    "SubprocessAgentExecutor",
]
