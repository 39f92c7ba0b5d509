from __future__ import annotations

import allure
import pytest

from fin_research.providers.base import Capability
from fin_research.research.models import Budget, Plan, ResearchTask, TaskStatus

pytestmark = [
    allure.epic("Research Loop"),
    allure.feature("Plans and Budgets"),
]


def _task(task_id: str, *depends_on: str) -> ResearchTask:
    return ResearchTask(
        task_id=task_id,
        capability=Capability.INCOME_STATEMENTS,
        arguments={"ticker": task_id.upper()},
        depends_on=depends_on,
    )


def test_plan_orders_dependencies_first() -> None:
    plan = Plan(1, [_task("b", "a"), _task("c"), _task("a")])

    assert [task.task_id for task in plan.tasks] == ["c", "a", "b"]


def test_plan_rejects_dependency_cycles() -> None:
    with pytest.raises(ValueError, match="dependency cycle"):
        Plan(1, [_task("a", "b"), _task("b", "a")])


def test_failed_dependency_blocks_dependents_transitively() -> None:
    plan = Plan(1, [_task("a"), _task("b", "a"), _task("c", "b"), _task("d")])
    plan.get("a").status = TaskStatus.INSUFFICIENT

    blocked = plan.fail_blocked_tasks()

    assert [task.task_id for task in blocked] == ["b", "c"]
    assert plan.get("b").note == "dependency a did not succeed"
    assert [task.task_id for task in plan.ready_tasks()] == ["d"]


def test_budget_counts_pending_steps() -> None:
    budget = Budget(max_steps=3, max_cost_usd=0.0)
    budget.record_dispatch()

    assert budget.can_dispatch(0.0, pending_steps=1)
    assert not budget.can_dispatch(0.0, pending_steps=2)


def test_budget_cost_cap_allows_exact_fit() -> None:
    budget = Budget(max_steps=10, max_cost_usd=0.5)
    budget.charge(0.25)

    assert budget.can_dispatch(0.25)
    assert not budget.can_dispatch(0.25, pending_cost_usd=0.01)
    budget.charge(0.25)
    assert budget.exhausted()


def test_zero_cost_cap_never_exhausts_on_spend() -> None:
    budget = Budget(max_steps=10, max_cost_usd=0.0)

    assert not budget.exhausted()
    assert budget.can_dispatch(0.0)
