"""In-memory provider doubles for loop and executor tests."""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable, Mapping
from typing import Any

from fin_research.providers.base import Capability, ProviderResponse

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m fin_research.research.backend.echo_agent "
    "--prompt-file {prompt_file} --model {model}"
)

Handler = Callable[[Mapping[str, Any]], Any]


class FakeProvider:
    """In-memory provider; handlers return data or a ProviderResponse, or raise."""

    requires_api_key = False

    def __init__(self, handlers: Mapping[Capability, Handler], *, name: str = "fake") -> None:
        self.name = name
        self.handlers = dict(handlers)
        self.calls: list[tuple[Capability, dict[str, Any]]] = []
        self.closed = False
        self._lock = threading.Lock()

    def initialize(self) -> None:
        return None

    def operations(self) -> Mapping[Capability, Callable[[Mapping[str, Any]], ProviderResponse]]:
        return {capability: self._operation(capability) for capability in self.handlers}

    def close(self) -> None:
        self.closed = True

    def calls_for(self, capability: Capability) -> list[dict[str, Any]]:
        return [arguments for called, arguments in self.calls if called == capability]

    def _operation(self, capability: Capability) -> Callable[[Mapping[str, Any]], ProviderResponse]:
        def _call(arguments: Mapping[str, Any]) -> ProviderResponse:
            with self._lock:
                self.calls.append((capability, dict(arguments)))
            result = self.handlers[capability](arguments)
            if isinstance(result, ProviderResponse):
                return result
            ticker = arguments.get("ticker") or arguments.get("query") or "-"
            return ProviderResponse(data=result, source=f"fake://{capability.value}/{ticker}")

        return _call


def statement_rows(_: Mapping[str, Any]) -> list[dict[str, Any]]:
    return [
        {"report_period": "2025-09-27", "revenue": 102_466_000_000, "net_income": 27_466_000_000},
        {"report_period": "2025-06-28", "revenue": 94_036_000_000, "net_income": 23_434_000_000},
    ]


def filing_rows(_: Mapping[str, Any]) -> list[dict[str, Any]]:
    return [{"form_type": "4", "filing_date": "2026-09-01", "url": "https://sec.example/4"}]


def estimate_rows(_: Mapping[str, Any]) -> list[dict[str, Any]]:
    return [{"fiscal_period": "2026-12-31", "eps": 7.35}]


def metrics_row(_: Mapping[str, Any]) -> dict[str, Any]:
    return {"pe_ratio": 31.2, "market_cap": 3_400_000_000_000}
