"""Pure transition function of the research loop, plus the loop detector."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from fin_research.research.models import StopReason


class LoopState(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    VALIDATING = "validating"
    REFLECTING = "reflecting"
    SYNTHESIZING = "synthesizing"
    DONE = "done"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({LoopState.DONE, LoopState.ABORTED})


@dataclass(slots=True, frozen=True)
class PlanningResult:
    """Planner finished; ``dispatchable`` counts tasks that fit the budget."""

    dispatchable: int
    planner_failed: bool = False
    planner_exhausted: bool = False
    budget_exhausted: bool = False


@dataclass(slots=True, frozen=True)
class WaveSettled:
    """Every dispatch of the current wave returned."""


@dataclass(slots=True, frozen=True)
class VerdictsReady:
    """Verdicts of the settled wave were recorded."""


@dataclass(slots=True, frozen=True)
class Reflection:
    """Facts the reflecting state decides on."""

    cancelled: bool = False
    loop_tripped: bool = False
    budget_exhausted: bool = False
    planner_failed: bool = False
    planner_exhausted: bool = False
    work_remaining: bool = False
    usable_artifacts: bool = False


@dataclass(slots=True, frozen=True)
class SynthesisDone:
    """Final answer was written."""


LoopEvent = PlanningResult | WaveSettled | VerdictsReady | Reflection | SynthesisDone


@dataclass(slots=True, frozen=True)
class Transition:
    state: LoopState
    stop_reason: StopReason | None = None
    planner_failed: bool = False


class InvalidTransitionError(RuntimeError):
    def __init__(self, state: LoopState, event: object) -> None:
        super().__init__(f"No transition from {state.value} on {type(event).__name__}")
        self.state = state
        self.event = event


def transition(state: LoopState, event: LoopEvent) -> Transition:  # noqa: PLR0911
    """Next state for ``(state, event)``; raises on an impossible pairing."""

    if state == LoopState.PLANNING and isinstance(event, PlanningResult):
        if event.dispatchable > 0 and not event.planner_failed:
            return Transition(LoopState.EXECUTING)
        return Transition(LoopState.REFLECTING, planner_failed=event.planner_failed)
    if state == LoopState.EXECUTING and isinstance(event, WaveSettled):
        return Transition(LoopState.VALIDATING)
    if state == LoopState.VALIDATING and isinstance(event, VerdictsReady):
        return Transition(LoopState.REFLECTING)
    if state == LoopState.REFLECTING and isinstance(event, Reflection):
        return _reflect(event)
    if state == LoopState.SYNTHESIZING and isinstance(event, SynthesisDone):
        return Transition(LoopState.DONE)
    raise InvalidTransitionError(state, event)


def _reflect(event: Reflection) -> Transition:  # noqa: PLR0911
    if event.cancelled:
        return Transition(LoopState.SYNTHESIZING, StopReason.CANCELLED)
    if event.loop_tripped:
        return Transition(LoopState.SYNTHESIZING, StopReason.LOOP_DETECTED)
    if event.budget_exhausted:
        return Transition(LoopState.SYNTHESIZING, StopReason.BUDGET_EXHAUSTED)
    if event.planner_failed or event.planner_exhausted:
        reason = StopReason.PLANNING_FAILED if event.planner_failed else StopReason.PLANNER_EXHAUSTED
        if event.usable_artifacts:
            return Transition(LoopState.SYNTHESIZING, reason)
        return Transition(LoopState.ABORTED, reason)
    if event.work_remaining:
        return Transition(LoopState.PLANNING)
    return Transition(LoopState.SYNTHESIZING, StopReason.COMPLETED)


@dataclass(slots=True)
class LoopDetector:
    """Counts dispatches of each digest since the session last made progress.

    Progress means a digest became satisfied for the first time. Re-fetching
    data that is already satisfied does not reset the counter.
    """

    threshold: int
    counts: dict[str, int] = field(default_factory=dict)
    satisfied: set[str] = field(default_factory=set)

    def record(self, digest: str, *, satisfied: bool) -> None:
        if satisfied and digest not in self.satisfied:
            self.satisfied.add(digest)
            self.counts[digest] = 0
            return
        self.counts[digest] = self.counts.get(digest, 0) + 1

    def tripped(self) -> bool:
        return any(count > self.threshold for count in self.counts.values())

    def tripped_digests(self) -> list[str]:
        return sorted(digest for digest, count in self.counts.items() if count > self.threshold)
