"""Structural validation of execution results.

The validator never judges whether numbers are right; it only checks that a
payload has the expected shape, is non-empty, and carries the fields later
synthesis relies on.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from fin_research.providers.base import Capability
from fin_research.research.models import ExecutionResult, ResearchTask, Verdict

_REQUIRED_ROW_FIELDS: dict[Capability, tuple[tuple[str, ...], ...]] = {
    Capability.INCOME_STATEMENTS: (("report_period",),),
    Capability.BALANCE_SHEETS: (("report_period",),),
    Capability.CASH_FLOW_STATEMENTS: (("report_period",),),
    # FinancialDatasets names the price date "time".
    Capability.PRICE_HISTORY: (("date", "time"), ("close",)),
    Capability.NEWS: (("title",),),
}
_SNAPSHOT_CAPABILITIES = frozenset({Capability.PRICE_SNAPSHOT, Capability.FINANCIAL_METRICS})


class ArtifactValidator:
    """Turns an execution result into a Satisfied / Insufficient / Error verdict."""

    def evaluate(self, task: ResearchTask, result: ExecutionResult) -> Verdict:
        if result.failure is not None:
            failure = result.failure
            return Verdict.error(
                f"{failure.failure_class.value}: {failure.message}",
                failure.failure_class,
            )
        if result.artifact is None:
            return Verdict.error("no artifact was recorded")
        return evaluate_payload(task, result.artifact.payload.get("data"))


def evaluate_payload(task: ResearchTask, data: Any) -> Verdict:  # noqa: PLR0911
    """Judge the ``data`` part of a provider envelope for ``task``."""

    scope = _scope(task)
    if task.capability == Capability.ALL_FINANCIAL_STATEMENTS:
        if not isinstance(data, Mapping):
            return Verdict.insufficient("unexpected payload shape: expected statement groups")
        groups = [rows for rows in data.values() if isinstance(rows, list) and rows]
        if not groups:
            return Verdict.insufficient(f"no rows for requested period{scope}")
        return Verdict.satisfied()

    if task.capability in _SNAPSHOT_CAPABILITIES and isinstance(data, Mapping):
        if not data:
            return Verdict.insufficient(f"empty snapshot{scope}")
        return Verdict.satisfied()

    if not isinstance(data, list):
        if data is None or data == {}:
            return Verdict.insufficient(f"no rows for requested period{scope}")
        return Verdict.insufficient("unexpected payload shape: expected row list")
    if not data:
        return Verdict.insufficient(f"no rows for requested period{scope}")
    rows = [row for row in data if isinstance(row, Mapping)]
    if not rows:
        return Verdict.insufficient("unexpected payload shape: rows are not objects")

    required = _REQUIRED_ROW_FIELDS.get(task.capability, ())
    if required and not any(_has_fields(row, required) for row in rows):
        names = ", ".join("/".join(alternatives) for alternatives in required)
        return Verdict.insufficient(f"rows missing required fields ({names})")
    return Verdict.satisfied()


def _has_fields(row: Mapping[str, Any], required: tuple[tuple[str, ...], ...]) -> bool:
    return all(
        any(row.get(name) not in (None, "") for name in alternatives) for alternatives in required
    )


def _scope(task: ResearchTask) -> str:
    period = task.arguments.get("period")
    return f" ({period})" if period else ""
