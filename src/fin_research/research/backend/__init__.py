"""CLI agent backends used for answer synthesis."""

from fin_research.research.backend.base import AgentBackend, BackendRunRequest, BackendRunResult
from fin_research.research.backend.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "BackendRunError",
    "BackendRunRequest",
    "BackendRunResult",
    "CliAgentBackend",
]
