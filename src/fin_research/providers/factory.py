"""Provider construction from settings or a user-facing provider name."""

from __future__ import annotations

import httpx

from fin_research.config import SUPPORTED_PROVIDERS, ProviderSettings, normalize_provider_name
from fin_research.providers.base import FinancialProvider
from fin_research.providers.financial_datasets import FinancialDatasetsProvider
from fin_research.providers.yahoo import YahooFinanceProvider


def create_financial_provider(
    name: str,
    settings: ProviderSettings | None = None,
    *,
    transport: httpx.BaseTransport | None = None,
) -> FinancialProvider:
    """Build a provider by name; aliases like ``yahoo-finance`` are accepted."""

    settings = settings or ProviderSettings()
    canonical = normalize_provider_name(name)
    if canonical == "financialdatasets":
        return FinancialDatasetsProvider(
            api_key=settings.financial_datasets_api_key,
            base_url=settings.financial_datasets_base_url,
            timeout_seconds=settings.http_timeout_seconds,
            transport=transport,
        )
    if canonical == "yahoo":
        return YahooFinanceProvider(
            base_url=settings.yahoo_base_url,
            timeout_seconds=settings.http_timeout_seconds,
            transport=transport,
        )
    raise ValueError(
        f"Unknown financial provider: {name!r}. Expected one of {', '.join(SUPPORTED_PROVIDERS)}.",
    )
