"""Backend interface for agent-driven synthesis."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class BackendRunRequest:
    """Inputs required to run one agent invocation."""

    prompt: str
    workdir: Path
    timeout_seconds: int
    agent: str
    model: str
    command_template: str
    shutdown_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class BackendRunResult:
    """Execution outcome from backend runner."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path

    def stdout_text(self) -> str:
        try:
            return self.stdout_path.read_text("utf-8")
        except OSError:
            return ""


class AgentBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        """Run the agent and return execution metadata."""
