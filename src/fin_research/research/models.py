"""Domain models for research sessions, plans, and loop outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from fin_research.canonical import task_digest
from fin_research.providers.base import Capability

_COST_EPSILON = 1e-9


class SessionStatus(str, Enum):
    """Durable session lifecycle states."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TaskStatus(str, Enum):
    """Per-plan task states."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    SATISFIED = "satisfied"
    INSUFFICIENT = "insufficient"
    FAILED = "failed"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    PROVIDER_TRANSIENT = "provider_transient"
    PROVIDER_NON_RETRYABLE = "provider_non_retryable"
    ACCESS_OR_AUTH = "access_or_auth"
    BILLING_OR_QUOTA = "billing_or_quota"
    UNSUPPORTED_CAPABILITY = "unsupported_capability"
    INVALID_ARGUMENTS = "invalid_arguments"


TRANSIENT_FAILURE_CLASSES = frozenset(
    {
        FailureClass.TIMEOUT,
        FailureClass.RATE_LIMITED,
        FailureClass.PROVIDER_TRANSIENT,
    },
)


class VerdictKind(str, Enum):
    SATISFIED = "satisfied"
    INSUFFICIENT = "insufficient"
    ERROR = "error"


class StopReason(str, Enum):
    """Why the loop stopped gathering data."""

    COMPLETED = "completed"
    BUDGET_EXHAUSTED = "budget_exhausted"
    LOOP_DETECTED = "loop_detected"
    CANCELLED = "cancelled"
    PLANNER_EXHAUSTED = "planner_exhausted"
    PLANNING_FAILED = "planning_failed"


@dataclass(slots=True)
class SessionView:
    """Readable session row for CLI and loop logic."""

    session_id: str
    query: str
    status: SessionStatus
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class MessageView:
    message_id: str
    session_id: str
    role: MessageRole
    content: str
    timestamp: datetime


@dataclass(slots=True)
class ArtifactView:
    """One successful task dispatch: provider payload plus task identity."""

    artifact_id: str
    session_id: str
    payload: dict[str, Any]
    source: str
    timestamp: datetime

    @property
    def task_digest(self) -> str | None:
        task = self.payload.get("task")
        if isinstance(task, dict):
            digest = task.get("digest")
            return str(digest) if digest else None
        return None


HistoryItem = MessageView | ArtifactView


@dataclass(slots=True)
class ResearchTask:
    """One data-gathering unit bound to a capability and its arguments."""

    task_id: str
    capability: Capability
    arguments: dict[str, Any]
    depends_on: tuple[str, ...] = ()
    status: TaskStatus = TaskStatus.PENDING
    note: str | None = None

    @property
    def digest(self) -> str:
        return task_digest(self.capability, self.arguments)

    def describe(self) -> str:
        ticker = self.arguments.get("ticker")
        period = self.arguments.get("period")
        parts = [self.capability.value]
        if ticker:
            parts.append(str(ticker))
        if period:
            parts.append(str(period))
        return " ".join(parts)


@dataclass(slots=True)
class Plan:
    """Tasks in dependency order, then declaration order."""

    version: int
    tasks: list[ResearchTask]
    omitted: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.tasks = _dependency_order(self.tasks)

    def get(self, task_id: str) -> ResearchTask | None:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None

    def ready_tasks(self) -> list[ResearchTask]:
        """Pending tasks whose dependencies are all satisfied."""

        satisfied = {task.task_id for task in self.tasks if task.status == TaskStatus.SATISFIED}
        return [
            task
            for task in self.tasks
            if task.status == TaskStatus.PENDING
            and all(dependency in satisfied for dependency in task.depends_on)
        ]

    def fail_blocked_tasks(self) -> list[ResearchTask]:
        """Mark pending tasks whose dependency can no longer succeed in this plan."""

        blocked: list[ResearchTask] = []
        changed = True
        while changed:
            changed = False
            dead = {
                task.task_id
                for task in self.tasks
                if task.status in {TaskStatus.FAILED, TaskStatus.INSUFFICIENT}
            }
            for task in self.tasks:
                if task.status != TaskStatus.PENDING:
                    continue
                failed_dependency = next((dep for dep in task.depends_on if dep in dead), None)
                if failed_dependency is None:
                    continue
                task.status = TaskStatus.FAILED
                task.note = f"dependency {failed_dependency} did not succeed"
                blocked.append(task)
                changed = True
        return blocked

    def has_pending(self) -> bool:
        return any(task.status == TaskStatus.PENDING for task in self.tasks)

    def all_satisfied(self) -> bool:
        return all(task.status == TaskStatus.SATISFIED for task in self.tasks)


@dataclass(slots=True)
class Budget:
    """Monotonic work and spend counters for one session."""

    max_steps: int
    max_cost_usd: float
    steps_used: int = 0
    cost_used_usd: float = 0.0

    def can_dispatch(
        self,
        estimated_cost_usd: float,
        *,
        pending_steps: int = 0,
        pending_cost_usd: float = 0.0,
    ) -> bool:
        """Whether one more dispatch fits next to ``pending_*`` already planned."""

        if self.steps_used + pending_steps >= self.max_steps:
            return False
        projected = self.cost_used_usd + pending_cost_usd + estimated_cost_usd
        return projected <= self.max_cost_usd + _COST_EPSILON

    def exhausted(self) -> bool:
        if self.steps_used >= self.max_steps:
            return True
        return self.max_cost_usd > 0 and self.cost_used_usd >= self.max_cost_usd - _COST_EPSILON

    def record_dispatch(self) -> None:
        self.steps_used += 1

    def charge(self, cost_usd: float) -> None:
        self.cost_used_usd += max(0.0, cost_usd)


@dataclass(slots=True, frozen=True)
class ExecutionFailure:
    """Classified provider failure after retries were exhausted or skipped."""

    failure_class: FailureClass
    message: str
    reason_code: str
    status_code: int | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one Executor dispatch (retries included)."""

    task: ResearchTask
    artifact: ArtifactView | None = None
    failure: ExecutionFailure | None = None
    attempts: int = 0
    cached: bool = False
    cost_usd: float = 0.0

    @property
    def ok(self) -> bool:
        return self.artifact is not None


@dataclass(slots=True, frozen=True)
class Verdict:
    """Structural judgement of one execution result."""

    kind: VerdictKind
    reason: str | None = None
    failure_class: FailureClass | None = None

    @classmethod
    def satisfied(cls) -> Verdict:
        return cls(kind=VerdictKind.SATISFIED)

    @classmethod
    def insufficient(cls, reason: str) -> Verdict:
        return cls(kind=VerdictKind.INSUFFICIENT, reason=reason)

    @classmethod
    def error(cls, reason: str, failure_class: FailureClass | None = None) -> Verdict:
        return cls(kind=VerdictKind.ERROR, reason=reason, failure_class=failure_class)


@dataclass(slots=True, frozen=True)
class FailureReport:
    """Most recent unsatisfied verdict handed to the planner on re-plan."""

    task_id: str
    capability: Capability
    digest: str
    verdict: VerdictKind
    reason: str | None
    failure_class: FailureClass | None = None


@dataclass(slots=True)
class FinalAnswer:
    """Synthesized answer text plus citation and completeness markers."""

    session_id: str
    text: str
    citations: list[str]
    stop_reason: StopReason
    partial: bool = False
    stalled: bool = False
    interrupted: bool = False
    limitations: list[str] = field(default_factory=list)


@dataclass(slots=True)
class LoopOutcome:
    """Terminal result of one loop run."""

    session_id: str
    completed: bool
    stop_reason: StopReason
    steps_used: int
    cost_used_usd: float
    answer: FinalAnswer | None = None
    error: str | None = None


def _dependency_order(tasks: list[ResearchTask]) -> list[ResearchTask]:
    known = {task.task_id for task in tasks}
    placed: set[str] = set()
    ordered: list[ResearchTask] = []
    remaining = list(tasks)
    while remaining:
        progressed = False
        for task in list(remaining):
            if all(dep in placed or dep not in known for dep in task.depends_on):
                ordered.append(task)
                placed.add(task.task_id)
                remaining.remove(task)
                progressed = True
                break
        if not progressed:
            cycle = ", ".join(task.task_id for task in remaining)
            raise ValueError(f"Plan has a dependency cycle between tasks: {cycle}")
    return ordered
