"""Provider backed by the FinancialDatasets.ai REST API."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx

from fin_research.http.client import JsonApiClient, QueryParams
from fin_research.providers.base import (
    Capability,
    ProviderError,
    ProviderOperation,
    ProviderResponse,
    positive_limit,
    require_ticker,
    statement_period,
)

DEFAULT_BASE_URL = "https://api.financialdatasets.ai"
_REPORT_PERIOD_BOUNDS = (
    "report_period_gt",
    "report_period_gte",
    "report_period_lt",
    "report_period_lte",
)


class FinancialDatasetsProvider:
    """Full-coverage provider; every capability is available with an API key."""

    name = "financialdatasets"
    requires_api_key = True

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 20.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._client = JsonApiClient(
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            headers={"x-api-key": api_key} if api_key else None,
            transport=transport,
        )

    def initialize(self) -> None:
        if not self._api_key:
            raise ProviderError(
                "FINANCIAL_DATASETS_API_KEY is required for the financialdatasets provider.",
                transient=False,
                status_code=401,
            )

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
            Capability.ANALYST_ESTIMATES: self.get_analyst_estimates,
            Capability.INSIDER_TRADES: self.get_insider_trades,
            Capability.FILINGS: self.get_filings,
            Capability.SEGMENTED_REVENUES: self.get_segmented_revenues,
        }

    def close(self) -> None:
        self._client.close()

    def get_income_statements(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        return self._call(
            "/financials/income-statements/",
            _statement_params(arguments),
            "income_statements",
        )

    def get_balance_sheets(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        return self._call("/financials/balance-sheets/", _statement_params(arguments), "balance_sheets")

    def get_cash_flow_statements(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        return self._call(
            "/financials/cash-flow-statements/",
            _statement_params(arguments),
            "cash_flow_statements",
        )

    def get_all_financial_statements(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        return self._call("/financials/", _statement_params(arguments), "financials")

    def get_price_snapshot(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        return self._call(
            "/prices/",
            {"ticker": require_ticker(arguments), "date": arguments.get("date")},
            "prices",
        )

    def get_price_history(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        return self._call(
            "/prices/",
            {
                "ticker": require_ticker(arguments),
                "start_date": arguments.get("start_date"),
                "end_date": arguments.get("end_date"),
                "limit": positive_limit(arguments, default=100),
            },
            "prices",
        )

    def get_financial_metrics(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        return self._call(
            "/financials/metrics/",
            {
                "ticker": require_ticker(arguments),
                "period": statement_period(arguments, default="ttm"),
                "limit": positive_limit(arguments, default=4),
            },
            "metrics",
        )

    def get_news(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        ticker = arguments.get("ticker")
        query = arguments.get("query")
        if not ticker and not query:
            raise ProviderError("News requires a 'ticker' or a 'query' argument.", transient=False)
        return self._call(
            "/news/",
            {
                "ticker": require_ticker(arguments) if ticker else None,
                "query": query,
                "start_date": arguments.get("start_date"),
                "end_date": arguments.get("end_date"),
                "limit": positive_limit(arguments, default=10),
            },
            "news",
        )

    def get_analyst_estimates(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        return self._call(
            "/analyst-estimates/",
            {
                "ticker": require_ticker(arguments),
                "period": statement_period(arguments, default="annual"),
                "limit": positive_limit(arguments, default=4),
            },
            "analyst_estimates",
        )

    def get_insider_trades(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        return self._call(
            "/insider-trades/",
            {
                "ticker": require_ticker(arguments),
                "start_date": arguments.get("start_date"),
                "end_date": arguments.get("end_date"),
                "limit": positive_limit(arguments, default=20),
            },
            "insider_trades",
        )

    def get_filings(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        form_type = arguments.get("form_type")
        if isinstance(form_type, str):
            form_type = [form_type]
        return self._call(
            "/filings/",
            {
                "ticker": require_ticker(arguments),
                "form_type": form_type,
                "start_date": arguments.get("start_date"),
                "end_date": arguments.get("end_date"),
                "limit": positive_limit(arguments, default=10),
            },
            "filings",
        )

    def get_segmented_revenues(self, arguments: Mapping[str, Any]) -> ProviderResponse:
        return self._call(
            "/segments/",
            {
                "ticker": require_ticker(arguments),
                "period": statement_period(arguments),
                "limit": positive_limit(arguments, default=4),
            },
            "segments",
        )

    def _call(self, endpoint: str, params: QueryParams, result_key: str) -> ProviderResponse:
        if not self._api_key:
            raise ProviderError("API key not configured.", transient=False, status_code=401)
        body, url = self._client.get_json(endpoint, params)
        data = body.get(result_key) if isinstance(body, dict) else None
        return ProviderResponse(data=data if data is not None else {}, source=url)


def _statement_params(arguments: Mapping[str, Any]) -> dict[str, Any]:
    params: dict[str, Any] = {
        "ticker": require_ticker(arguments),
        "period": statement_period(arguments),
        "limit": positive_limit(arguments, default=4),
    }
    for bound in _REPORT_PERIOD_BOUNDS:
        params[bound] = arguments.get(bound)
    return params
