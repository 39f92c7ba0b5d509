"""Reflector loop: plan, execute a wave, validate, reflect, repeat.

Control flow is driven by ``state_machine.transition``; this module performs
the I/O of each state. Every dispatch and verdict is persisted before the
loop moves on, so an interrupted session can be resumed from its history.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from uuid import uuid4

from fin_research.research.errors import (
    PersistenceError,
    PlanningError,
    SessionNotResumableError,
)
from fin_research.research.executor import TaskExecutor
from fin_research.research.ledger import (
    ResearchLedger,
    dispatch_event,
    outcome_event,
    plan_event,
    verdict_event,
)
from fin_research.research.models import (
    Budget,
    ExecutionResult,
    FailureClass,
    FailureReport,
    HistoryItem,
    LoopOutcome,
    MessageRole,
    Plan,
    ResearchTask,
    SessionStatus,
    SessionView,
    StopReason,
    TaskStatus,
    Verdict,
    VerdictKind,
)
from fin_research.research.planner import Planner
from fin_research.research.state_machine import (
    TERMINAL_STATES,
    LoopDetector,
    LoopState,
    PlanningResult,
    Reflection,
    SynthesisDone,
    VerdictsReady,
    WaveSettled,
    transition,
)
from fin_research.research.store import SessionStore
from fin_research.research.synthesizer import ReportSynthesizer
from fin_research.research.validator import ArtifactValidator

logger = logging.getLogger(__name__)

_VERDICT_TO_STATUS = {
    VerdictKind.SATISFIED: TaskStatus.SATISFIED,
    VerdictKind.INSUFFICIENT: TaskStatus.INSUFFICIENT,
    VerdictKind.ERROR: TaskStatus.FAILED,
}


@dataclass(slots=True)
class _RunState:
    """Mutable working set of one loop run."""

    session: SessionView
    history: list[HistoryItem]
    budget: Budget
    detector: LoopDetector
    plan: Plan | None = None
    wave: list[ResearchTask] = field(default_factory=list)
    wave_costs: dict[str, float] = field(default_factory=dict)
    results: list[ExecutionResult] = field(default_factory=list)
    prior_failure: FailureReport | None = None
    planner_failed: bool = False
    planner_exhausted: bool = False
    budget_blocked: bool = False
    failure_reason: str | None = None


class ReflectorLoop:
    """Drives one research session to an answer within its budget."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: SessionStore,
        planner: Planner,
        executor: TaskExecutor,
        synthesizer: ReportSynthesizer,
        validator: ArtifactValidator | None = None,
        max_steps: int = 20,
        max_cost_usd: float = 1.0,
        loop_threshold: int = 3,
        cancel_event: threading.Event | None = None,
        owner: str | None = None,
    ) -> None:
        self.store = store
        self.planner = planner
        self.executor = executor
        self.synthesizer = synthesizer
        self.validator = validator or ArtifactValidator()
        self.max_steps = max_steps
        self.max_cost_usd = max_cost_usd
        self.loop_threshold = loop_threshold
        self.cancel_event = cancel_event or executor.cancel_event
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"

    def start(self, query: str) -> LoopOutcome:
        """Create a session for ``query`` and research it."""

        session = self.store.create_session(query)
        self.store.append_message(session.session_id, MessageRole.USER, query)
        logger.info("Started research session %s", session.session_id)
        return self._drive(session.session_id)

    def resume(self, session_id: str) -> LoopOutcome:
        """Continue an interrupted session from its persisted history."""

        session = self.store.get_session(session_id)
        if session.status != SessionStatus.ACTIVE:
            raise SessionNotResumableError(session_id, session.status.value)
        logger.info("Resuming research session %s", session_id)
        return self._drive(session_id)

    def _drive(self, session_id: str) -> LoopOutcome:
        self.store.acquire_loop_lease(session_id, self.owner)
        try:
            return self._run(session_id)
        except PersistenceError:
            self._mark_error(session_id)
            raise
        finally:
            self._release_lease(session_id)

    def _run(self, session_id: str) -> LoopOutcome:
        run = self._restore(session_id)
        state = LoopState.PLANNING
        stop_reason: StopReason | None = None
        while state not in TERMINAL_STATES:
            if state == LoopState.PLANNING:
                step = transition(state, self._plan(run))
            elif state == LoopState.EXECUTING:
                self._execute(run)
                step = transition(state, WaveSettled())
            elif state == LoopState.VALIDATING:
                self._validate(run)
                step = transition(state, VerdictsReady())
            elif state == LoopState.REFLECTING:
                step = transition(state, self._reflect(run))
                stop_reason = step.stop_reason
            else:
                assert stop_reason is not None
                outcome = self._synthesize(run, stop_reason)
                transition(state, SynthesisDone())
                return outcome
            logger.info("Session %s: %s -> %s", session_id, state.value, step.state.value)
            state = step.state

        assert stop_reason is not None
        return self._abort(run, stop_reason)

    def _restore(self, session_id: str) -> _RunState:
        session = self.store.get_session(session_id)
        history = self.store.load_history(session_id)
        ledger = ResearchLedger.from_history(history)
        budget = Budget(
            max_steps=self.max_steps,
            max_cost_usd=self.max_cost_usd,
            steps_used=ledger.steps_used,
            cost_used_usd=ledger.cost_used_usd,
        )
        detector = LoopDetector(threshold=self.loop_threshold)
        for record in ledger.verdicts:
            detector.record(record.digest, satisfied=record.verdict == VerdictKind.SATISFIED)
        run = _RunState(
            session=session,
            history=history,
            budget=budget,
            detector=detector,
            plan=ledger.current_plan(),
        )
        if ledger.pending:
            self._settle_interrupted(run, ledger)
        return run

    def _settle_interrupted(self, run: _RunState, ledger: ResearchLedger) -> None:
        """Give every dispatch left without a verdict by a crash its verdict."""

        for record in list(ledger.pending.values()):
            task = run.plan.get(record.task_id) if run.plan is not None else None
            if task is None:
                task = ResearchTask(
                    task_id=record.task_id,
                    capability=record.capability,
                    arguments=record.arguments,
                )
            artifact = next(
                (
                    item
                    for item in ledger.artifacts
                    if (item.payload.get("task") or {}).get("task_id") == record.task_id
                ),
                None,
            )
            if artifact is not None:
                result = ExecutionResult(task=task, artifact=artifact, attempts=1)
                verdict = self.validator.evaluate(task, result)
            else:
                verdict = Verdict.error(
                    "interrupted before the provider call finished",
                    FailureClass.PROVIDER_TRANSIENT,
                )
            task.status = _VERDICT_TO_STATUS[verdict.kind]
            run.detector.record(record.digest, satisfied=verdict.kind == VerdictKind.SATISFIED)
            # The estimate was charged when the dispatch was replayed.
            self._append_system(
                run,
                verdict_event(
                    task,
                    verdict,
                    cost_usd=record.estimated_cost_usd,
                    cached=False,
                    attempts=1,
                    artifact_id=artifact.artifact_id if artifact is not None else None,
                ),
            )
            logger.info(
                "Settled interrupted dispatch %s as %s",
                record.task_id,
                verdict.kind.value,
            )

    def _plan(self, run: _RunState) -> PlanningResult:
        run.planner_failed = False
        run.planner_exhausted = False
        run.budget_blocked = False
        run.wave = []
        run.wave_costs = {}
        if self.cancel_event.is_set():
            return PlanningResult(dispatchable=0)
        if run.plan is not None and run.plan.tasks and run.plan.all_satisfied():
            return PlanningResult(dispatchable=0)

        if run.plan is None or not run.plan.has_pending():
            try:
                run.plan = self.planner.plan(run.session.query, run.history, run.prior_failure)
            except PlanningError as error:
                logger.warning("Planning failed for session %s: %s", run.session.session_id, error)
                run.planner_failed = True
                run.failure_reason = str(error)
                return PlanningResult(dispatchable=0, planner_failed=True)
            self._append_system(run, plan_event(run.plan))
            run.prior_failure = None
            if not run.plan.tasks:
                run.planner_exhausted = True
                run.failure_reason = "no further data requests could be formed"
                return PlanningResult(dispatchable=0, planner_exhausted=True)

        for task in run.plan.fail_blocked_tasks():
            logger.info("Task %s blocked: %s", task.task_id, task.note)

        pending_cost = 0.0
        for task in run.plan.ready_tasks():
            estimate = self.executor.estimate_cost(task)
            if not run.budget.can_dispatch(
                estimate,
                pending_steps=len(run.wave),
                pending_cost_usd=pending_cost,
            ):
                run.budget_blocked = True
                break
            run.wave.append(task)
            run.wave_costs[task.task_id] = estimate
            pending_cost += estimate
        if not run.wave and not run.budget_blocked:
            for task in run.plan.tasks:
                if task.status == TaskStatus.PENDING:
                    task.status = TaskStatus.FAILED
                    task.note = "dependencies cannot be met by this plan"
        return PlanningResult(
            dispatchable=len(run.wave),
            budget_exhausted=run.budget_blocked and not run.wave,
        )

    def _execute(self, run: _RunState) -> None:
        assert run.plan is not None
        session_id = run.session.session_id
        self.store.touch_loop_lease(session_id, self.owner)
        for task in run.wave:
            self._append_system(
                run,
                dispatch_event(
                    task,
                    plan_version=run.plan.version,
                    estimated_cost_usd=run.wave_costs[task.task_id],
                ),
            )
            run.budget.record_dispatch()

        run.results = []
        first_error: Exception | None = None
        with ThreadPoolExecutor(
            max_workers=len(run.wave),
            thread_name_prefix="fin-research-wave",
        ) as pool:
            futures = [
                pool.submit(self.executor.run, task, session_id=session_id) for task in run.wave
            ]
            for future in futures:
                try:
                    run.results.append(future.result())
                except Exception as error:  # noqa: BLE001
                    # Re-raised once the whole wave has settled.
                    first_error = first_error or error
        if first_error is not None:
            raise first_error
        for result in run.results:
            if result.artifact is not None:
                run.history.append(result.artifact)

    def _validate(self, run: _RunState) -> None:
        satisfied = 0
        for result in run.results:
            task = result.task
            verdict = self.validator.evaluate(task, result)
            task.status = _VERDICT_TO_STATUS[verdict.kind]
            run.budget.charge(result.cost_usd)
            run.detector.record(task.digest, satisfied=verdict.kind == VerdictKind.SATISFIED)
            self._append_system(
                run,
                verdict_event(
                    task,
                    verdict,
                    cost_usd=result.cost_usd,
                    cached=result.cached,
                    attempts=result.attempts,
                    artifact_id=result.artifact.artifact_id if result.artifact else None,
                    failure_details=result.failure.details if result.failure else None,
                ),
            )
            if verdict.kind == VerdictKind.SATISFIED:
                satisfied += 1
            elif run.prior_failure is None:
                run.prior_failure = FailureReport(
                    task_id=task.task_id,
                    capability=task.capability,
                    digest=task.digest,
                    verdict=verdict.kind,
                    reason=verdict.reason,
                    failure_class=verdict.failure_class,
                )
        logger.info(
            "Session %s wave: %d/%d satisfied; steps %d/%d, cost $%.4f/$%.4f",
            run.session.session_id,
            satisfied,
            len(run.results),
            run.budget.steps_used,
            run.budget.max_steps,
            run.budget.cost_used_usd,
            run.budget.max_cost_usd,
        )

    def _reflect(self, run: _RunState) -> Reflection:
        work_remaining = False
        if run.plan is not None:
            run.plan.fail_blocked_tasks()
            work_remaining = run.plan.has_pending() or any(
                task.status in {TaskStatus.INSUFFICIENT, TaskStatus.FAILED}
                for task in run.plan.tasks
            )
        return Reflection(
            cancelled=self.cancel_event.is_set(),
            loop_tripped=run.detector.tripped(),
            budget_exhausted=self._budget_exhausted(run, work_remaining=work_remaining),
            planner_failed=run.planner_failed,
            planner_exhausted=run.planner_exhausted,
            work_remaining=work_remaining,
            usable_artifacts=ResearchLedger.from_history(run.history).has_usable_artifacts(),
        )

    def _budget_exhausted(self, run: _RunState, *, work_remaining: bool) -> bool:
        if not work_remaining:
            return False
        if run.budget_blocked and not run.wave:
            return True
        if run.budget.exhausted():
            return True
        ready = run.plan.ready_tasks() if run.plan is not None else []
        return bool(ready) and not run.budget.can_dispatch(self.executor.estimate_cost(ready[0]))

    def _synthesize(self, run: _RunState, stop_reason: StopReason) -> LoopOutcome:
        session_id = run.session.session_id
        if stop_reason == StopReason.LOOP_DETECTED:
            logger.warning(
                "Session %s stalled on %s",
                session_id,
                ", ".join(digest[:12] for digest in run.detector.tripped_digests()),
            )
        interrupted = stop_reason == StopReason.CANCELLED
        self._append_system(
            run,
            outcome_event(
                stop_reason=stop_reason,
                completed=not interrupted,
                steps_used=run.budget.steps_used,
                cost_used_usd=run.budget.cost_used_usd,
            ),
        )
        history = self.store.load_history(session_id)
        answer = self.synthesizer.synthesize(
            run.session,
            history,
            stop_reason,
            interrupted=interrupted,
        )
        return LoopOutcome(
            session_id=session_id,
            completed=not interrupted,
            stop_reason=stop_reason,
            steps_used=run.budget.steps_used,
            cost_used_usd=run.budget.cost_used_usd,
            answer=answer,
        )

    def _abort(self, run: _RunState, stop_reason: StopReason) -> LoopOutcome:
        session_id = run.session.session_id
        reason = run.failure_reason or "no usable data could be gathered"
        self._append_system(
            run,
            outcome_event(
                stop_reason=stop_reason,
                completed=False,
                steps_used=run.budget.steps_used,
                cost_used_usd=run.budget.cost_used_usd,
            ),
        )
        self.synthesizer.abort(run.session, self.store.load_history(session_id), reason)
        logger.warning("Session %s aborted: %s", session_id, reason)
        return LoopOutcome(
            session_id=session_id,
            completed=False,
            stop_reason=stop_reason,
            steps_used=run.budget.steps_used,
            cost_used_usd=run.budget.cost_used_usd,
            error=reason,
        )

    def _append_system(self, run: _RunState, content: str) -> None:
        run.history.append(
            self.store.append_message(run.session.session_id, MessageRole.SYSTEM, content),
        )

    def _mark_error(self, session_id: str) -> None:
        try:
            self.store.update_status(session_id, SessionStatus.ERROR)
        except PersistenceError as error:
            logger.error("Could not mark session %s as failed: %s", session_id, error)

    def _release_lease(self, session_id: str) -> None:
        try:
            self.store.release_loop_lease(session_id, self.owner)
        except PersistenceError as error:
            logger.error("Could not release loop lease on session %s: %s", session_id, error)
