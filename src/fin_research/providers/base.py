"""Common financial data provider contracts."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol


class Capability(str, Enum):
    """Data-gathering operations a provider may support."""

    INCOME_STATEMENTS = "income-statements"
    BALANCE_SHEETS = "balance-sheets"
    CASH_FLOW_STATEMENTS = "cash-flow-statements"
    ALL_FINANCIAL_STATEMENTS = "all-financial-statements"
    PRICE_SNAPSHOT = "price-snapshot"
    PRICE_HISTORY = "price-history"
    FINANCIAL_METRICS = "financial-metrics"
    NEWS = "news"
    ANALYST_ESTIMATES = "analyst-estimates"
    INSIDER_TRADES = "insider-trades"
    FILINGS = "filings"
    SEGMENTED_REVENUES = "segmented-revenues"


STATEMENT_PERIODS = ("annual", "quarterly", "ttm")


@dataclass(slots=True, frozen=True)
class ProviderResponse:
    """Provider response envelope: payload plus provenance for citation."""

    data: Any
    source: str


ProviderOperation = Callable[[Mapping[str, Any]], ProviderResponse]


class ProviderError(RuntimeError):
    """Provider call error with an optional retryability hint."""

    def __init__(
        self,
        message: str,
        *,
        transient: bool | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """Provider call exceeded its time limit; always retryable."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True)


class UnsupportedCapabilityError(ProviderError):
    """No registered provider implements the requested capability."""

    def __init__(self, capability: Capability, *, provider: str | None = None) -> None:
        where = f" by provider {provider!r}" if provider else ""
        super().__init__(f"Capability {capability.value!r} is not supported{where}.", transient=False)
        self.capability = capability
        self.provider = provider


class InvalidArgumentsError(ProviderError):
    """Task arguments are malformed for the requested capability."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=False)


class FinancialProvider(Protocol):
    """Interface for financial data providers."""

    name: str
    requires_api_key: bool

    def initialize(self) -> None:
        """Check provider prerequisites such as credentials."""
        raise NotImplementedError

    def operations(self) -> Mapping[Capability, ProviderOperation]:
        """Return the provider's supported capabilities bound to operations."""
        raise NotImplementedError

    def close(self) -> None:
        """Release network resources."""
        raise NotImplementedError


def require_ticker(arguments: Mapping[str, Any]) -> str:
    """Return the upper-cased ticker argument or raise InvalidArgumentsError."""

    ticker = arguments.get("ticker")
    if not isinstance(ticker, str) or not ticker.strip():
        raise InvalidArgumentsError("Argument 'ticker' is required.")
    return ticker.strip().upper()


def statement_period(arguments: Mapping[str, Any], *, default: str = "annual") -> str:
    """Return a validated statement period argument."""

    period = arguments.get("period") or default
    if period not in STATEMENT_PERIODS:
        raise InvalidArgumentsError(
            f"Argument 'period' must be one of {', '.join(STATEMENT_PERIODS)}; got {period!r}.",
        )
    return str(period)


def positive_limit(arguments: Mapping[str, Any], *, default: int) -> int:
    """Return a validated positive ``limit`` argument."""

    raw = arguments.get("limit", default)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        raise InvalidArgumentsError(f"Argument 'limit' must be a positive integer; got {raw!r}.")
    return raw
