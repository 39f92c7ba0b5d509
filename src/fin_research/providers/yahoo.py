"""Provider backed by Yahoo Finance public JSON endpoints (no API key).

Only the core capabilities plus news are available; estimates, insider
trades, filings, and segment revenue are absent from the operation table.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime, timedelta
from typing import Any

import httpx

from fin_research.http.client import JsonApiClient
from fin_research.providers.base import (
    Capability,
    InvalidArgumentsError,
    ProviderError,
    ProviderOperation,
    ProviderResponse,
    positive_limit,
    require_ticker,
    statement_period,
)

DEFAULT_BASE_URL = "https://query2.finance.yahoo.com"
_DEFAULT_STATEMENT_LIMIT = 10

# module name, list key within the module
_STATEMENT_MODULES: dict[str, dict[str, tuple[str, str]]] = {
    "income_statements": {
        "annual": ("incomeStatementHistory", "incomeStatementHistory"),
        "quarterly": ("incomeStatementHistoryQuarterly", "incomeStatementHistory"),
    },
    "balance_sheets": {
        "annual": ("balanceSheetHistory", "balanceSheetStatements"),
        "quarterly": ("balanceSheetHistoryQuarterly", "balanceSheetStatements"),
    },
    "cash_flow_statements": {
        "annual": ("cashflowStatementHistory", "cashflowStatements"),
        "quarterly": ("cashflowStatementHistoryQuarterly", "cashflowStatements"),
    },
}
_METRIC_FIELDS: tuple[tuple[str, str, str], ...] = (
    ("pe_ratio", "summaryDetail", "trailingPE"),
    ("forward_pe", "summaryDetail", "forwardPE"),
    ("peg_ratio", "defaultKeyStatistics", "pegRatio"),
    ("price_to_book", "defaultKeyStatistics", "priceToBook"),
    ("price_to_sales", "summaryDetail", "priceToSalesTrailing12Months"),
    ("profit_margin", "financialData", "profitMargins"),
    ("operating_margin", "financialData", "operatingMargins"),
    ("roe", "financialData", "returnOnEquity"),
    ("roa", "financialData", "returnOnAssets"),
    ("debt_to_equity", "financialData", "debtToEquity"),
    ("current_ratio", "financialData", "currentRatio"),
    ("quick_ratio", "financialData", "quickRatio"),
)


class YahooFinanceProvider:
    """Free provider; statements, prices, metrics, and news only."""

    name = "yahoo"
    requires_api_key = False

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 20.0,
        transport: httpx.BaseTransport | None = None,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._client = JsonApiClient(
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            transport=transport,
        )
        self._today = today or (lambda: datetime.now(tz=UTC).date())

    def initialize(self) -> None:
        return None

    def operations(self) -> Mapping[Capability, ProviderOperation]:
        return {
            Capability.INCOME_STATEMENTS: self.get_income_statements,
            Capability.BALANCE_SHEETS: self.get_balance_sheets,
            Capability.CASH_FLOW_STATEMENTS: self.get_cash_flow_statements,
            Capability.ALL_FINANCIAL_STATEMENTS: self.get_all_financial_statements,
            Capability.PRICE_SNAPSHOT: self.get_price_snapshot,
            Capability.PRICE_HISTORY: self.get_price_history,
            Capability.FINANCIAL_METRICS: self.get_financial_metrics,
            Capability.NEWS: self.get_news,
        }

    def close(self) -> None:
        self._client.close()

    def get_income_statements(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        return self._statements(arguments, "income_statements", "income-statements")

    def get_balance_sheets(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        return self._statements(arguments, "balance_sheets", "balance-sheets")

    def get_cash_flow_statements(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        return self._statements(arguments, "cash_flow_statements", "cash-flow")

    def get_all_financial_statements(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        ticker = require_ticker(arguments)
        period = _yahoo_period(statement_period(arguments))
        limit = positive_limit(arguments, default=_DEFAULT_STATEMENT_LIMIT)
        modules = [_STATEMENT_MODULES[kind][period][0] for kind in _STATEMENT_MODULES]
        summary, _ = self._quote_summary(ticker, modules)
        data = {
            kind: _statement_rows(summary, mapping[period], limit=limit)
            for kind, mapping in _STATEMENT_MODULES.items()
        }
        return ProviderResponse(
            data=data,
            source=f"yahoo-finance:{ticker}:all-statements:{period}",
        )

    def get_price_snapshot(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        ticker = require_ticker(arguments)
        body, _ = self._client.get_json(
            f"/v8/finance/chart/{ticker}",
            {"range": "1d", "interval": "1d"},
        )
        meta = _chart_result(body, ticker).get("meta") or {}
        price = meta.get("regularMarketPrice")
        rows = []
        if price is not None:
            rows.append(
                {
                    "ticker": ticker,
                    "date": arguments.get("date") or self._today().isoformat(),
                    "price": price,
                    "high": meta.get("regularMarketDayHigh"),
                    "low": meta.get("regularMarketDayLow"),
                    "close": price,
                    "volume": meta.get("regularMarketVolume"),
                    "currency": meta.get("currency"),
                },
            )
        return ProviderResponse(data=rows, source=f"yahoo-finance:{ticker}:price-snapshot")

    def get_price_history(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        ticker = require_ticker(arguments)
        end = _parse_date(arguments.get("end_date"), "end_date") or self._today()
        start = _parse_date(arguments.get("start_date"), "start_date") or end - timedelta(days=365)
        if start > end:
            raise InvalidArgumentsError("Argument 'start_date' must not be after 'end_date'.")
        body, _ = self._client.get_json(
            f"/v8/finance/chart/{ticker}",
            {
                "period1": _epoch(start),
                "period2": _epoch(end + timedelta(days=1)),
                "interval": "1d",
            },
        )
        result = _chart_result(body, ticker)
        timestamps = result.get("timestamp") or []
        quotes = ((result.get("indicators") or {}).get("quote") or [{}])[0]
        rows = [
            {
                "ticker": ticker,
                "date": datetime.fromtimestamp(stamp, tz=UTC).date().isoformat(),
                "open": _at(quotes.get("open"), index),
                "high": _at(quotes.get("high"), index),
                "low": _at(quotes.get("low"), index),
                "close": _at(quotes.get("close"), index),
                "volume": _at(quotes.get("volume"), index),
            }
            for index, stamp in enumerate(timestamps)
        ]
        rows = [row for row in rows if row["close"] is not None]
        if arguments.get("limit") is not None:
            rows = rows[: positive_limit(arguments, default=len(rows) or 1)]
        return ProviderResponse(data=rows, source=f"yahoo-finance:{ticker}:price-history")

    def get_financial_metrics(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        ticker = require_ticker(arguments)
        summary, _ = self._quote_summary(
            ticker,
            ["financialData", "defaultKeyStatistics", "summaryDetail"],
        )
        metrics = {
            name: _raw(((summary.get(module) or {}).get(field)))
            for name, module, field in _METRIC_FIELDS
        }
        rows = [metrics] if any(value is not None for value in metrics.values()) else []
        return ProviderResponse(data=rows, source=f"yahoo-finance:{ticker}:metrics")

    def get_news(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        if not arguments.get("ticker"):
            raise InvalidArgumentsError("Argument 'ticker' is required for Yahoo Finance news.")
        ticker = require_ticker(arguments)
        limit = positive_limit(arguments, default=10)
        body, _ = self._client.get_json(
            "/v1/finance/search",
            {"q": ticker, "newsCount": limit, "quotesCount": 0},
        )
        items = body.get("news") if isinstance(body, dict) else None
        rows = [
            {
                "title": item.get("title"),
                "publisher": item.get("publisher"),
                "url": item.get("link"),
                "published_at": _timestamp_to_iso(item.get("providerPublishTime")),
            }
            for item in (items or [])[:limit]
            if isinstance(item, dict)
        ]
        return ProviderResponse(data=rows, source=f"yahoo-finance:{ticker}:news")

    def _statements(
        self,
        arguments: Mapping[str, Any],
        kind: str,
        label: str,
    ) -> ProviderResponse:
        ticker = require_ticker(arguments)
        period = _yahoo_period(statement_period(arguments))
        limit = positive_limit(arguments, default=_DEFAULT_STATEMENT_LIMIT)
        module = _STATEMENT_MODULES[kind][period]
        summary, _ = self._quote_summary(ticker, [module[0]])
        return ProviderResponse(
            data=_statement_rows(summary, module, limit=limit),
            source=f"yahoo-finance:{ticker}:{label}:{period}",
        )

    def _quote_summary(self, ticker: str, modules: list[str]) -> tuple[dict[str, Any], str]:
        body, url = self._client.get_json(
            f"/v10/finance/quoteSummary/{ticker}",
            {"modules": ",".join(modules)},
        )
        envelope = body.get("quoteSummary") if isinstance(body, dict) else None
        if not isinstance(envelope, dict):
            raise ProviderError("Yahoo Finance returned an unexpected quoteSummary body.")
        if envelope.get("error"):
            raise ProviderError(f"Yahoo Finance API error: {envelope['error']}", transient=False)
        results = envelope.get("result") or []
        return (results[0] if results and isinstance(results[0], dict) else {}), url


def _yahoo_period(period: str) -> str:
    return "annual" if period == "annual" else "quarterly"


def _statement_rows(
    summary: Mapping[str, Any],
    module: tuple[str, str],
    *,
    limit: int,
) -> list[dict[str, Any]]:
    module_name, list_key = module
    statements = (summary.get(module_name) or {}).get(list_key) or []
    rows: list[dict[str, Any]] = []
    for statement in statements[:limit]:
        if not isinstance(statement, dict):
            continue
        row = {key: _raw(value) for key, value in statement.items() if key != "maxAge"}
        end_date = statement.get("endDate")
        if isinstance(end_date, dict) and end_date.get("fmt"):
            row["report_period"] = end_date["fmt"]
        elif isinstance(row.get("endDate"), (int, float)):
            row["report_period"] = _timestamp_to_iso(row["endDate"])
        rows.append(row)
    return rows


def _chart_result(body: Any, ticker: str) -> dict[str, Any]:
    chart = body.get("chart") if isinstance(body, dict) else None
    if not isinstance(chart, dict):
        raise ProviderError(f"Yahoo Finance returned an unexpected chart body for {ticker}.")
    if chart.get("error"):
        raise ProviderError(f"Yahoo Finance API error: {chart['error']}", transient=False)
    results = chart.get("result") or []
    return results[0] if results and isinstance(results[0], dict) else {}


def _raw(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("raw", value.get("fmt"))
    return value


def _at(values: list[Any] | None, index: int) -> Any:
    if not values or index >= len(values):
        return None
    return values[index]


def _parse_date(value: Any, name: str) -> date | None:
    if value is None:
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError as error:
        raise InvalidArgumentsError(f"Argument {name!r} must be YYYY-MM-DD; got {value!r}.") from error


def _epoch(value: date) -> int:
    return int(datetime(value.year, value.month, value.day, tzinfo=UTC).timestamp())


def _timestamp_to_iso(value: Any) -> str | None:
    if not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value, tz=UTC).date().isoformat()
