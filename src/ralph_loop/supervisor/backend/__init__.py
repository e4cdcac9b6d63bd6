"""Agent backend implementations."""

from ralph_loop.supervisor.backend.base import AgentRunner, AgentRunRequest, AgentRunResult
from ralph_loop.supervisor.backend.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "AgentRunRequest",
    "AgentRunResult",
    "AgentRunner",
    "BackendRunError",
    "CliAgentBackend",
]
