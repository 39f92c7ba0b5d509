from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from fin_research.providers.base import Capability
from fin_research.research.ledger import (
    EVENT_PREFIX,
    ResearchLedger,
    decode_event,
    dispatch_event,
    encode_event,
    outcome_event,
    plan_event,
    verdict_event,
)
from fin_research.research.models import (
    ArtifactView,
    FailureClass,
    MessageRole,
    MessageView,
    Plan,
    ResearchTask,
    StopReason,
    TaskStatus,
    Verdict,
)

pytestmark = [
    allure.epic("Research Loop"),
    allure.feature("Event Ledger"),
]

_STAMP = datetime(2026, 10, 1, tzinfo=UTC)


def _message(content: str, role: MessageRole = MessageRole.SYSTEM) -> MessageView:
    return MessageView(
        message_id=f"m{abs(hash(content))}",
        session_id="s",
        role=role,
        content=content,
        timestamp=_STAMP,
    )


def _income() -> ResearchTask:
    return ResearchTask(
        task_id="p1-t1",
        capability=Capability.INCOME_STATEMENTS,
        arguments={"ticker": "AAPL", "period": "quarterly", "limit": 4},
    )


def _metrics() -> ResearchTask:
    return ResearchTask(
        task_id="p1-t2",
        capability=Capability.FINANCIAL_METRICS,
        arguments={"ticker": "AAPL"},
    )


def test_event_encoding_is_prefixed_json() -> None:
    content = encode_event("outcome", completed=True)

    assert content.startswith(EVENT_PREFIX)
    assert decode_event(content) == {"event": "outcome", "v": 1, "completed": True}


def test_plain_and_broken_messages_are_not_events() -> None:
    assert decode_event("just a note") is None
    assert decode_event(EVENT_PREFIX + "{not json") is None
    assert decode_event(EVENT_PREFIX + '["no", "event"]') is None


def test_replay_rebuilds_counters_and_plan_state() -> None:
    income, metrics = _income(), _metrics()
    history = [
        _message("What was Apple's Q4 revenue?", MessageRole.USER),
        _message(plan_event(Plan(1, [income, metrics]))),
        _message(dispatch_event(income, plan_version=1, estimated_cost_usd=0.1)),
        _message(dispatch_event(metrics, plan_version=1, estimated_cost_usd=0.1)),
        _message(
            verdict_event(income, Verdict.satisfied(), cost_usd=0.1, cached=False, attempts=1, artifact_id="a1"),
        ),
    ]

    ledger = ResearchLedger.from_history(history)

    assert ledger.query == "What was Apple's Q4 revenue?"
    assert ledger.steps_used == 2
    assert ledger.cost_used_usd == pytest.approx(0.2)
    assert ledger.plan_version == 1
    assert ledger.is_satisfied(income.digest)
    assert not ledger.is_satisfied(metrics.digest)
    assert list(ledger.pending) == ["p1-t2"]
    plan = ledger.current_plan()
    assert plan is not None
    assert [task.status for task in plan.tasks] == [TaskStatus.SATISFIED, TaskStatus.IN_PROGRESS]


def test_verdict_replaces_estimate_with_actual_cost() -> None:
    income = _income()
    history = [
        _message(dispatch_event(income, plan_version=1, estimated_cost_usd=0.25)),
        _message(
            verdict_event(income, Verdict.satisfied(), cost_usd=0.0, cached=True, attempts=0, artifact_id="a1"),
        ),
    ]

    ledger = ResearchLedger.from_history(history)

    assert ledger.cost_used_usd == pytest.approx(0.0)
    assert ledger.steps_used == 1
    assert ledger.verdicts[0].cached is True


def test_attempts_accumulate_per_digest_and_unsupported_is_remembered() -> None:
    trades = ResearchTask(
        task_id="p1-t1",
        capability=Capability.INSIDER_TRADES,
        arguments={"ticker": "TSLA"},
    )
    retry = ResearchTask(task_id="p2-t1", capability=trades.capability, arguments=dict(trades.arguments))
    error = Verdict.error("unsupported_capability: not served", FailureClass.UNSUPPORTED_CAPABILITY)
    history = [
        _message(dispatch_event(trades, plan_version=1, estimated_cost_usd=0.0)),
        _message(verdict_event(trades, error, cost_usd=0.0, cached=False, attempts=1, artifact_id=None)),
        _message(dispatch_event(retry, plan_version=2, estimated_cost_usd=0.0)),
    ]

    ledger = ResearchLedger.from_history(history)

    assert ledger.unsupported == {Capability.INSIDER_TRADES}
    record = ledger.record_for(trades.digest)
    assert record is not None
    assert record.attempts == 2
    assert record.failure_class == FailureClass.UNSUPPORTED_CAPABILITY
    assert not ledger.has_usable_artifacts()


def test_artifacts_replay_but_only_satisfied_digests_count_as_usable() -> None:
    income = _income()
    artifact = ArtifactView(
        artifact_id="a1",
        session_id="s",
        payload={"task": {"digest": income.digest}, "data": []},
        source="fake://x",
        timestamp=_STAMP,
    )
    insufficient = Verdict.insufficient("no rows returned")

    ledger = ResearchLedger.from_history(
        [
            _message(dispatch_event(income, plan_version=1, estimated_cost_usd=0.0)),
            artifact,
            _message(
                verdict_event(income, insufficient, cost_usd=0.0, cached=False, attempts=1, artifact_id="a1"),
            ),
        ],
    )

    assert ledger.artifacts == [artifact]
    assert not ledger.has_usable_artifacts()


def test_verdict_event_carries_failure_classification_details() -> None:
    income = _income()
    error = Verdict.error("invalid_arguments: Unknown ticker", FailureClass.INVALID_ARGUMENTS)

    body = decode_event(
        verdict_event(
            income,
            error,
            cost_usd=0.0,
            cached=False,
            attempts=1,
            artifact_id=None,
            failure_details={"classifier_version": 1, "matched_rule": "invalid_arguments"},
        ),
    )

    assert body is not None
    assert body["failure_class"] == "invalid_arguments"
    assert body["failure_details"] == {"classifier_version": 1, "matched_rule": "invalid_arguments"}


def test_outcome_and_omitted_notes_survive_replay() -> None:
    plan = Plan(1, [_income()], omitted=["insider-trades is not available; using filings"])
    history = [
        _message(plan_event(plan)),
        _message(plan_event(Plan(2, [], omitted=list(plan.omitted)))),
        _message(
            outcome_event(
                stop_reason=StopReason.BUDGET_EXHAUSTED,
                completed=True,
                steps_used=3,
                cost_used_usd=0.0,
            ),
        ),
    ]

    ledger = ResearchLedger.from_history(history)

    assert ledger.plan_version == 2
    assert ledger.omitted == ["insider-trades is not available; using filings"]
    assert ledger.last_outcome is not None
    assert ledger.last_outcome["stop_reason"] == "budget_exhausted"
    assert ledger.current_plan() is None
