from __future__ import annotations

import allure
import pytest

from fin_research.research.models import StopReason
from fin_research.research.state_machine import (
    InvalidTransitionError,
    LoopDetector,
    LoopState,
    PlanningResult,
    Reflection,
    SynthesisDone,
    VerdictsReady,
    WaveSettled,
    transition,
)

pytestmark = [
    allure.epic("Research Loop"),
    allure.feature("State Machine"),
]


def test_happy_path_walks_every_state() -> None:
    assert transition(LoopState.PLANNING, PlanningResult(dispatchable=2)).state == LoopState.EXECUTING
    assert transition(LoopState.EXECUTING, WaveSettled()).state == LoopState.VALIDATING
    assert transition(LoopState.VALIDATING, VerdictsReady()).state == LoopState.REFLECTING
    done = transition(LoopState.REFLECTING, Reflection(usable_artifacts=True))
    assert done.state == LoopState.SYNTHESIZING
    assert done.stop_reason == StopReason.COMPLETED
    assert transition(LoopState.SYNTHESIZING, SynthesisDone()).state == LoopState.DONE


def test_nothing_dispatchable_goes_straight_to_reflection() -> None:
    step = transition(LoopState.PLANNING, PlanningResult(dispatchable=0, planner_failed=True))
    assert step.state == LoopState.REFLECTING
    assert step.planner_failed is True


def test_remaining_work_loops_back_to_planning() -> None:
    step = transition(LoopState.REFLECTING, Reflection(work_remaining=True))
    assert step.state == LoopState.PLANNING
    assert step.stop_reason is None


@pytest.mark.parametrize(
    ("reflection", "reason"),
    [
        (
            Reflection(cancelled=True, loop_tripped=True, budget_exhausted=True, work_remaining=True),
            StopReason.CANCELLED,
        ),
        (Reflection(loop_tripped=True, budget_exhausted=True), StopReason.LOOP_DETECTED),
        (Reflection(budget_exhausted=True, work_remaining=True), StopReason.BUDGET_EXHAUSTED),
        (Reflection(planner_exhausted=True, usable_artifacts=True), StopReason.PLANNER_EXHAUSTED),
        (Reflection(planner_failed=True, usable_artifacts=True), StopReason.PLANNING_FAILED),
    ],
)
def test_stop_conditions_are_checked_in_priority_order(
    reflection: Reflection,
    reason: StopReason,
) -> None:
    step = transition(LoopState.REFLECTING, reflection)
    assert step.state == LoopState.SYNTHESIZING
    assert step.stop_reason == reason


def test_planner_failure_without_data_aborts() -> None:
    step = transition(LoopState.REFLECTING, Reflection(planner_failed=True))
    assert step.state == LoopState.ABORTED
    assert step.stop_reason == StopReason.PLANNING_FAILED


def test_impossible_pairing_raises() -> None:
    with pytest.raises(InvalidTransitionError, match="No transition from executing on Reflection"):
        transition(LoopState.EXECUTING, Reflection())
    with pytest.raises(InvalidTransitionError):
        transition(LoopState.DONE, SynthesisDone())


def test_loop_detector_trips_after_threshold_without_progress() -> None:
    detector = LoopDetector(threshold=3)
    for _ in range(3):
        detector.record("digest-a", satisfied=False)
    assert not detector.tripped()

    detector.record("digest-a", satisfied=False)

    assert detector.tripped()
    assert detector.tripped_digests() == ["digest-a"]


def test_first_satisfaction_resets_counter_but_refetching_does_not() -> None:
    detector = LoopDetector(threshold=1)
    detector.record("digest-a", satisfied=False)
    detector.record("digest-a", satisfied=True)
    assert detector.counts["digest-a"] == 0

    detector.record("digest-a", satisfied=True)
    detector.record("digest-a", satisfied=True)

    assert detector.tripped()
    assert detector.satisfied == {"digest-a"}
