"""HTTP JSON client with timeout and transport retries for provider APIs."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from fin_research import __version__
from fin_research.providers.base import ProviderError, ProviderTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 20.0
DEFAULT_CONNECT_RETRIES = 2
DEFAULT_USER_AGENT = f"fin-research/{__version__}"

QueryParams = Mapping[str, str | int | float | list[str] | tuple[str, ...] | None]


class JsonApiClient:
    """httpx wrapper that returns parsed JSON plus the request URL for citation."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        connect_retries: int = DEFAULT_CONNECT_RETRIES,
        user_agent: str = DEFAULT_USER_AGENT,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        base_headers = {"User-Agent": user_agent, "Accept": "application/json"}
        if headers:
            base_headers.update(headers)
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds)),
            headers=base_headers,
            transport=transport or httpx.HTTPTransport(retries=connect_retries),
            follow_redirects=True,
        )

    def get_json(self, path: str, params: QueryParams | None = None) -> tuple[Any, str]:
        """GET ``path`` and return ``(json_body, url)``.

        ``None`` params are dropped and list params are repeated, so the URL
        doubles as a stable provenance string.
        """

        query = _build_query(params or {})
        try:
            response = self._client.get(path, params=query)
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s%s", self.base_url, path)
            raise ProviderTimeoutError(f"Request to {path} timed out: {error}") from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling %s%s: %s", self.base_url, path, error)
            raise ProviderError(f"Network error calling {path}: {error}", transient=True) from error

        url = str(response.request.url)
        if not response.is_success:
            raise ProviderError(
                f"API request failed: {response.status_code} {response.reason_phrase} ({path})",
                status_code=response.status_code,
            )
        try:
            return response.json(), url
        except ValueError as error:
            raise ProviderError(
                f"API returned a non-JSON body for {path}",
                transient=False,
                status_code=response.status_code,
            ) from error

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> JsonApiClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _build_query(params: QueryParams) -> list[tuple[str, str]]:
    query: list[tuple[str, str]] = []
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            query.extend((key, str(item)) for item in value)
        else:
            query.append((key, str(value)))
    return query
