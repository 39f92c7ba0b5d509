from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from fin_research.providers.base import Capability
from fin_research.research.models import (
    ArtifactView,
    ExecutionFailure,
    ExecutionResult,
    FailureClass,
    ResearchTask,
    VerdictKind,
)
from fin_research.research.validator import ArtifactValidator, evaluate_payload

pytestmark = [
    allure.epic("Research Loop"),
    allure.feature("Validator"),
]


def _task(capability: Capability, **arguments) -> ResearchTask:
    return ResearchTask(task_id="p1-t1", capability=capability, arguments={"ticker": "AAPL", **arguments})


def _result(task: ResearchTask, data) -> ExecutionResult:
    artifact = ArtifactView(
        artifact_id="a1",
        session_id="s",
        payload={"task": {"digest": task.digest}, "data": data},
        source="fake://x",
        timestamp=datetime(2026, 10, 1, tzinfo=UTC),
    )
    return ExecutionResult(task=task, artifact=artifact, attempts=1)


def test_statement_rows_with_report_period_are_satisfied() -> None:
    task = _task(Capability.INCOME_STATEMENTS, period="quarterly")
    verdict = ArtifactValidator().evaluate(
        task,
        _result(task, [{"report_period": "2025-09-27", "revenue": 1}]),
    )
    assert verdict.kind == VerdictKind.SATISFIED


def test_empty_rows_are_insufficient_with_period_scope() -> None:
    task = _task(Capability.INCOME_STATEMENTS, period="quarterly")
    verdict = ArtifactValidator().evaluate(task, _result(task, []))

    assert verdict.kind == VerdictKind.INSUFFICIENT
    assert verdict.reason == "no rows for requested period (quarterly)"


def test_rows_missing_required_fields_are_insufficient() -> None:
    task = _task(Capability.PRICE_HISTORY)
    verdict = evaluate_payload(task, [{"date": "2026-01-02"}])

    assert verdict.kind == VerdictKind.INSUFFICIENT
    assert verdict.reason == "rows missing required fields (date/time, close)"


def test_price_rows_accept_time_in_place_of_date() -> None:
    task = _task(Capability.PRICE_HISTORY)
    assert evaluate_payload(task, [{"time": "2026-01-02", "close": 10}]).kind == VerdictKind.SATISFIED


@pytest.mark.parametrize(
    ("data", "kind"),
    [
        ({"pe_ratio": 31.2}, VerdictKind.SATISFIED),
        ({}, VerdictKind.INSUFFICIENT),
        ([{"pe_ratio": 31.2}], VerdictKind.SATISFIED),
    ],
)
def test_snapshot_payloads(data, kind: VerdictKind) -> None:
    assert evaluate_payload(_task(Capability.FINANCIAL_METRICS), data).kind == kind


def test_all_statements_need_one_non_empty_group() -> None:
    task = _task(Capability.ALL_FINANCIAL_STATEMENTS)

    assert evaluate_payload(task, {"income_statements": [], "balance_sheets": [{"a": 1}]}).kind == (
        VerdictKind.SATISFIED
    )
    assert evaluate_payload(task, {"income_statements": []}).kind == VerdictKind.INSUFFICIENT
    assert evaluate_payload(task, [{"a": 1}]).reason == (
        "unexpected payload shape: expected statement groups"
    )


def test_unexpected_shapes_are_insufficient() -> None:
    task = _task(Capability.FILINGS)

    assert evaluate_payload(task, "text").reason == "unexpected payload shape: expected row list"
    assert evaluate_payload(task, [1, 2]).reason == "unexpected payload shape: rows are not objects"
    assert evaluate_payload(task, None).kind == VerdictKind.INSUFFICIENT


def test_execution_failure_becomes_error_verdict() -> None:
    task = _task(Capability.INSIDER_TRADES)
    result = ExecutionResult(
        task=task,
        failure=ExecutionFailure(
            failure_class=FailureClass.UNSUPPORTED_CAPABILITY,
            message="Capability 'insider-trades' is not supported.",
            reason_code="unsupported_capability",
        ),
        attempts=1,
    )

    verdict = ArtifactValidator().evaluate(task, result)

    assert verdict.kind == VerdictKind.ERROR
    assert verdict.failure_class == FailureClass.UNSUPPORTED_CAPABILITY
    assert verdict.reason.startswith("unsupported_capability: ")
