from __future__ import annotations

from datetime import date

import allure

from fin_research.canonical import canonicalize_arguments, task_digest
from fin_research.providers.base import Capability

pytestmark = [
    allure.epic("Research Loop"),
    allure.feature("Task Identity"),
]


def test_key_order_and_none_values_do_not_change_digest() -> None:
    left = {"ticker": "AAPL", "period": "quarterly", "limit": 4, "filter": {"b": 1, "a": 2}}
    right = {"filter": {"a": 2, "b": 1}, "limit": 4, "cursor": None, "period": "quarterly", "ticker": "AAPL"}

    assert canonicalize_arguments(left) == canonicalize_arguments(right)
    assert task_digest(Capability.INCOME_STATEMENTS, left) == task_digest(
        Capability.INCOME_STATEMENTS,
        right,
    )


def test_capability_is_part_of_digest() -> None:
    arguments = {"ticker": "AAPL"}
    assert task_digest(Capability.BALANCE_SHEETS, arguments) != task_digest(
        Capability.CASH_FLOW_STATEMENTS,
        arguments,
    )
    assert task_digest(Capability.NEWS, arguments) == task_digest("news", arguments)


def test_digest_is_fixed_length_hex() -> None:
    digest = task_digest(Capability.NEWS, {"query": "chip export rules", "limit": 10})
    assert len(digest) == 64
    int(digest, 16)


def test_non_json_values_are_rendered_stably() -> None:
    rendered = canonicalize_arguments(
        {"start_date": date(2025, 1, 1), "capability": Capability.NEWS, "tickers": ("MSFT", "AAPL")},
    )
    assert rendered == '{"capability":"news","start_date":"2025-01-01","tickers":["MSFT","AAPL"]}'
