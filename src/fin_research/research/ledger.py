"""Loop events persisted as system messages, and their replay.

Every plan, dispatch, verdict and outcome is appended to the session as a
``system`` message whose content is ``EVENT_PREFIX`` followed by one JSON
object. Replaying those messages in order rebuilds the budget counters,
per-digest attempt history and the outstanding plan, which is all a resumed
loop needs.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from fin_research.providers.base import Capability
from fin_research.research.models import (
    ArtifactView,
    FailureClass,
    HistoryItem,
    MessageRole,
    MessageView,
    Plan,
    ResearchTask,
    StopReason,
    TaskStatus,
    Verdict,
    VerdictKind,
)

logger = logging.getLogger(__name__)

EVENT_PREFIX = "fin-research:event "
EVENT_SCHEMA_VERSION = 1

_VERDICT_TO_STATUS = {
    VerdictKind.SATISFIED: TaskStatus.SATISFIED,
    VerdictKind.INSUFFICIENT: TaskStatus.INSUFFICIENT,
    VerdictKind.ERROR: TaskStatus.FAILED,
}


def encode_event(event_type: str, **fields: Any) -> str:
    body = {"event": event_type, "v": EVENT_SCHEMA_VERSION, **fields}
    return EVENT_PREFIX + json.dumps(body, ensure_ascii=False, sort_keys=True, default=str)


def decode_event(content: str) -> dict[str, Any] | None:
    """Return the event body of a system message, or None for plain text."""

    if not content.startswith(EVENT_PREFIX):
        return None
    try:
        body = json.loads(content[len(EVENT_PREFIX) :])
    except ValueError:
        logger.warning("Skipping unreadable loop event: %.80s", content)
        return None
    if not isinstance(body, dict) or "event" not in body:
        return None
    return body


def plan_event(plan: Plan) -> str:
    return encode_event(
        "plan",
        version=plan.version,
        tasks=[
            {
                "task_id": task.task_id,
                "capability": task.capability.value,
                "arguments": task.arguments,
                "depends_on": list(task.depends_on),
            }
            for task in plan.tasks
        ],
        omitted=list(plan.omitted),
    )


def dispatch_event(task: ResearchTask, *, plan_version: int, estimated_cost_usd: float) -> str:
    return encode_event(
        "dispatch",
        task_id=task.task_id,
        capability=task.capability.value,
        arguments=task.arguments,
        digest=task.digest,
        plan_version=plan_version,
        estimated_cost_usd=estimated_cost_usd,
    )


def verdict_event(  # noqa: PLR0913
    task: ResearchTask,
    verdict: Verdict,
    *,
    cost_usd: float,
    cached: bool,
    attempts: int,
    artifact_id: str | None,
    failure_details: dict[str, Any] | None = None,
) -> str:
    return encode_event(
        "verdict",
        task_id=task.task_id,
        capability=task.capability.value,
        digest=task.digest,
        verdict=verdict.kind.value,
        reason=verdict.reason,
        failure_class=verdict.failure_class.value if verdict.failure_class else None,
        cost_usd=cost_usd,
        cached=cached,
        attempts=attempts,
        artifact_id=artifact_id,
        failure_details=failure_details,
    )


def outcome_event(*, stop_reason: StopReason, completed: bool, steps_used: int, cost_used_usd: float) -> str:
    return encode_event(
        "outcome",
        stop_reason=stop_reason.value,
        completed=completed,
        steps_used=steps_used,
        cost_used_usd=cost_used_usd,
    )


@dataclass(slots=True)
class DispatchRecord:
    task_id: str
    capability: Capability
    arguments: dict[str, Any]
    digest: str
    plan_version: int
    estimated_cost_usd: float


@dataclass(slots=True)
class VerdictRecord:
    task_id: str
    capability: Capability
    digest: str
    verdict: VerdictKind
    reason: str | None
    failure_class: FailureClass | None
    cost_usd: float
    cached: bool


@dataclass(slots=True)
class DigestRecord:
    """Attempt history of one (capability, arguments) digest."""

    capability: Capability
    arguments: dict[str, Any]
    attempts: int = 0
    satisfied: bool = False
    last_verdict: VerdictKind | None = None
    last_reason: str | None = None
    failure_class: FailureClass | None = None


@dataclass(slots=True)
class ResearchLedger:
    """Replayed view of one session's loop events."""

    query: str = ""
    steps_used: int = 0
    cost_used_usd: float = 0.0
    plan_version: int = 0
    plan_tasks: list[dict[str, Any]] = field(default_factory=list)
    omitted: list[str] = field(default_factory=list)
    verdicts: list[VerdictRecord] = field(default_factory=list)
    digests: dict[str, DigestRecord] = field(default_factory=dict)
    pending: dict[str, DispatchRecord] = field(default_factory=dict)
    artifacts: list[ArtifactView] = field(default_factory=list)
    unsupported: set[Capability] = field(default_factory=set)
    last_outcome: dict[str, Any] | None = None

    @classmethod
    def from_history(cls, history: Iterable[HistoryItem]) -> ResearchLedger:
        ledger = cls()
        for item in history:
            if isinstance(item, ArtifactView):
                ledger.artifacts.append(item)
                continue
            ledger._apply_message(item)
        return ledger

    def record_for(self, digest: str) -> DigestRecord | None:
        return self.digests.get(digest)

    def is_satisfied(self, digest: str) -> bool:
        record = self.digests.get(digest)
        return record is not None and record.satisfied

    def has_usable_artifacts(self) -> bool:
        return any(record.satisfied for record in self.digests.values())

    def current_plan(self) -> Plan | None:
        """Rebuild the latest plan with task states taken from verdicts."""

        if not self.plan_tasks:
            return None
        statuses = {record.task_id: _VERDICT_TO_STATUS[record.verdict] for record in self.verdicts}
        tasks = []
        for raw in self.plan_tasks:
            task_id = str(raw["task_id"])
            status = statuses.get(task_id, TaskStatus.PENDING)
            if task_id in self.pending:
                status = TaskStatus.IN_PROGRESS
            tasks.append(
                ResearchTask(
                    task_id=task_id,
                    capability=Capability(raw["capability"]),
                    arguments=dict(raw.get("arguments") or {}),
                    depends_on=tuple(raw.get("depends_on") or ()),
                    status=status,
                ),
            )
        return Plan(version=self.plan_version, tasks=tasks, omitted=list(self.omitted))

    def _apply_message(self, message: MessageView) -> None:
        if message.role == MessageRole.USER and not self.query:
            self.query = message.content
            return
        if message.role != MessageRole.SYSTEM:
            return
        event = decode_event(message.content)
        if event is None:
            return
        kind = event["event"]
        if kind == "plan":
            self._apply_plan(event)
        elif kind == "dispatch":
            self._apply_dispatch(event)
        elif kind == "verdict":
            self._apply_verdict(event)
        elif kind == "outcome":
            self.last_outcome = event

    def _apply_plan(self, event: dict[str, Any]) -> None:
        self.plan_version = max(self.plan_version, int(event.get("version", 0)))
        self.plan_tasks = list(event.get("tasks") or [])
        for note in event.get("omitted") or []:
            if note not in self.omitted:
                self.omitted.append(note)

    def _apply_dispatch(self, event: dict[str, Any]) -> None:
        record = DispatchRecord(
            task_id=str(event["task_id"]),
            capability=Capability(event["capability"]),
            arguments=dict(event.get("arguments") or {}),
            digest=str(event["digest"]),
            plan_version=int(event.get("plan_version", 0)),
            estimated_cost_usd=float(event.get("estimated_cost_usd") or 0.0),
        )
        self.pending[record.task_id] = record
        self.steps_used += 1
        self.cost_used_usd += record.estimated_cost_usd
        digest = self.digests.setdefault(
            record.digest,
            DigestRecord(capability=record.capability, arguments=record.arguments),
        )
        digest.attempts += 1

    def _apply_verdict(self, event: dict[str, Any]) -> None:
        failure_class = event.get("failure_class")
        record = VerdictRecord(
            task_id=str(event["task_id"]),
            capability=Capability(event["capability"]),
            digest=str(event["digest"]),
            verdict=VerdictKind(event["verdict"]),
            reason=event.get("reason"),
            failure_class=FailureClass(failure_class) if failure_class else None,
            cost_usd=float(event.get("cost_usd") or 0.0),
            cached=bool(event.get("cached")),
        )
        self.verdicts.append(record)
        dispatched = self.pending.pop(record.task_id, None)
        if dispatched is not None:
            # The dispatch was provisionally charged its estimate.
            self.cost_used_usd += record.cost_usd - dispatched.estimated_cost_usd
        else:
            self.cost_used_usd += record.cost_usd
        digest = self.digests.setdefault(
            record.digest,
            DigestRecord(capability=record.capability, arguments={}),
        )
        digest.last_verdict = record.verdict
        digest.last_reason = record.reason
        digest.failure_class = record.failure_class
        if record.verdict == VerdictKind.SATISFIED:
            digest.satisfied = True
        if record.failure_class == FailureClass.UNSUPPORTED_CAPABILITY:
            self.unsupported.add(record.capability)
