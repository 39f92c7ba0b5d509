"""Rule-based planner turning a research question into data-gathering tasks.

The planner is deterministic: the same query, history and capability set
always produce the same plan. On re-plan it reads the replayed ledger so it
never re-requests data it already has and gives up on a task once its
variants have used up their attempts.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any, Protocol

from fin_research.canonical import task_digest
from fin_research.providers.base import Capability
from fin_research.research.errors import PlanningError
from fin_research.research.ledger import ResearchLedger
from fin_research.research.models import (
    FailureClass,
    FailureReport,
    HistoryItem,
    Plan,
    ResearchTask,
    VerdictKind,
)

logger = logging.getLogger(__name__)

DEFAULT_STATEMENT_LIMIT = 4
DEFAULT_NEWS_LIMIT = 10
DEFAULT_HISTORY_DAYS = 365

COMPANY_TICKERS: dict[str, str] = {
    "apple": "AAPL",
    "microsoft": "MSFT",
    "alphabet": "GOOGL",
    "google": "GOOGL",
    "amazon": "AMZN",
    "tesla": "TSLA",
    "nvidia": "NVDA",
    "meta": "META",
    "facebook": "META",
    "netflix": "NFLX",
    "intel": "INTC",
    "amd": "AMD",
    "oracle": "ORCL",
    "salesforce": "CRM",
    "adobe": "ADBE",
    "ibm": "IBM",
    "berkshire": "BRK.B",
    "jpmorgan": "JPM",
    "visa": "V",
    "mastercard": "MA",
    "walmart": "WMT",
    "coca-cola": "KO",
    "disney": "DIS",
}

# Upper-case words that look like tickers but are not.
_NON_TICKERS = frozenset(
    {
        "A", "I", "AND", "OR", "THE", "FOR", "OF", "VS", "Q1", "Q2", "Q3", "Q4", "FY", "TTM",
        "EPS", "PE", "USD", "CEO", "CFO", "SEC", "YOY", "QOQ", "ROE", "ROA", "EBIT", "EBITDA",
        "FCF", "GAAP", "IPO", "ETF", "AI", "US", "UK", "EU", "K", "Q", "YTD", "MTD", "QTD", "LTM",
        "MRQ", "GDP", "CPI", "PPI", "PCE", "FED", "FOMC", "NYSE", "AMEX", "OTC", "ADR", "REIT", "SPAC",
        "NAV", "AUM", "ESG", "EV", "DCF", "WACC", "CAGR", "ROI", "ROIC", "PEG", "ARPU", "FX", "FDA",
        "USA", "EUR", "GBP", "JPY", "CNY", "COO", "CTO", "IS", "IN", "TO", "BY", "AS", "AN",
    },
)
_DOLLAR_TICKER = re.compile(r"\$([A-Za-z]{1,5}(?:\.[A-Za-z])?)\b")
_BARE_TICKER = re.compile(r"\b([A-Z]{2,5}(?:\.[A-Z])?)\b")
_YEAR = re.compile(r"\b((?:19|20)\d{2})\b")
_QUARTER = re.compile(r"\bq[1-4]\b|\bquarter(?:ly|s)?\b")
_TTM = re.compile(r"\bttm\b|trailing twelve")
_ANNUAL = re.compile(r"\bannual(?:ly)?\b|\byearly\b|\bfiscal year\b|\bfy\b")

_KEYWORDS: tuple[tuple[Capability, tuple[str, ...]], ...] = (
    (
        Capability.INCOME_STATEMENTS,
        ("revenue", "sales", "income statement", "net income", "earnings", "profit", "eps", "margin"),
    ),
    (Capability.BALANCE_SHEETS, ("balance sheet", "assets", "liabilities", "debt", "equity")),
    (Capability.CASH_FLOW_STATEMENTS, ("cash flow", "free cash", "capex", "capital expenditure")),
    (Capability.ALL_FINANCIAL_STATEMENTS, ("financial statements", "financials")),
    (Capability.PRICE_HISTORY, ("price history", "historical price", "performance", "chart", "trend")),
    (Capability.PRICE_SNAPSHOT, ("price", "quote", "trading at", "market cap")),
    (Capability.FINANCIAL_METRICS, ("valuation", "p/e", "ratio", "metrics", "multiple", "return on")),
    (Capability.NEWS, ("news", "headline", "announcement", "announced")),
    (Capability.ANALYST_ESTIMATES, ("estimate", "forecast", "consensus", "analyst", "guidance")),
    (Capability.INSIDER_TRADES, ("insider",)),
    (Capability.FILINGS, ("filing", "10-k", "10-q", "8-k")),
    (Capability.SEGMENTED_REVENUES, ("segment", "by region", "by product", "breakdown")),
)
_DEFAULT_CAPABILITIES = (Capability.FINANCIAL_METRICS, Capability.PRICE_SNAPSHOT)

STATEMENT_CAPABILITIES = frozenset(
    {
        Capability.INCOME_STATEMENTS,
        Capability.BALANCE_SHEETS,
        Capability.CASH_FLOW_STATEMENTS,
        Capability.ALL_FINANCIAL_STATEMENTS,
        Capability.SEGMENTED_REVENUES,
    },
)
FALLBACK_CAPABILITIES: dict[Capability, tuple[Capability, dict[str, Any]]] = {
    Capability.INSIDER_TRADES: (Capability.FILINGS, {"form_type": "4"}),
    Capability.SEGMENTED_REVENUES: (Capability.INCOME_STATEMENTS, {}),
    Capability.ANALYST_ESTIMATES: (Capability.FINANCIAL_METRICS, {}),
}
_DATE_BOUNDS = (
    "report_period_gt",
    "report_period_gte",
    "report_period_lt",
    "report_period_lte",
    "start_date",
    "end_date",
)
# Retrying these classes with the same or widened arguments cannot help.
_HOPELESS_FAILURES = frozenset(
    {
        FailureClass.ACCESS_OR_AUTH,
        FailureClass.BILLING_OR_QUOTA,
        FailureClass.UNSUPPORTED_CAPABILITY,
        FailureClass.INVALID_ARGUMENTS,
        FailureClass.PROVIDER_NON_RETRYABLE,
    },
)
_RETRY_SAME_FAILURES = frozenset(
    {
        FailureClass.TIMEOUT,
        FailureClass.RATE_LIMITED,
        FailureClass.PROVIDER_TRANSIENT,
    },
)


class Planner(Protocol):
    """Produces the next plan from the query and the session history."""

    def plan(
        self,
        query: str,
        history: Sequence[HistoryItem],
        prior_failure: FailureReport | None = None,
    ) -> Plan:
        raise NotImplementedError


@dataclass(slots=True)
class QueryIntent:
    """Structured reading of a research question."""

    tickers: list[str]
    capabilities: list[Capability]
    period: str | None
    years: list[int]
    form_type: str | None
    text: str


@dataclass(slots=True)
class _Candidate:
    key: str
    capability: Capability
    arguments: dict[str, Any]
    depends_on_key: str | None = None
    note: str | None = None


class QueryPlanner:
    """Keyword and ticker driven planner."""

    def __init__(
        self,
        *,
        capabilities: Iterable[Capability] | None = None,
        retry_ceiling: int = 2,
        today: Callable[[], date] | None = None,
    ) -> None:
        self.capabilities = frozenset(capabilities) if capabilities is not None else None
        self.retry_ceiling = retry_ceiling
        self._today = today or (lambda: datetime.now(tz=UTC).date())

    def plan(
        self,
        query: str,
        history: Sequence[HistoryItem],
        prior_failure: FailureReport | None = None,
    ) -> Plan:
        ledger = ResearchLedger.from_history(history)
        version = ledger.plan_version + 1
        intent = parse_query(query)
        omitted: list[str] = []
        candidates = self._candidates(intent, ledger, omitted)
        if not candidates and ledger.plan_version == 0:
            raise PlanningError(f"Could not derive any data request from the question: {query!r}")

        chosen: dict[str, ResearchTask] = {}
        exhausted: set[str] = set()
        covered: set[str] = set()
        for candidate in candidates:
            if candidate.depends_on_key is not None and candidate.depends_on_key in exhausted:
                exhausted.add(candidate.key)
                _note(omitted, f"skipped {_label(candidate)}: its prerequisite data is unavailable")
                continue
            arguments = self._next_variant(candidate, ledger)
            if arguments is None:
                if self._covered(candidate, ledger):
                    covered.add(candidate.key)
                    continue
                exhausted.add(candidate.key)
                _note(omitted, _exhausted_note(candidate, ledger))
                continue
            depends_on: tuple[str, ...] = ()
            if candidate.depends_on_key is not None and candidate.depends_on_key in chosen:
                depends_on = (chosen[candidate.depends_on_key].task_id,)
            task = ResearchTask(
                task_id=f"p{version}-t{len(chosen) + 1}",
                capability=candidate.capability,
                arguments=arguments,
                depends_on=depends_on,
                note=candidate.note,
            )
            chosen[candidate.key] = task

        if prior_failure is not None:
            logger.info(
                "Re-planning after %s on %s (%s)",
                prior_failure.verdict.value,
                prior_failure.capability.value,
                prior_failure.reason,
            )
        logger.info(
            "Plan v%d: %d task(s), %d already covered, %d omitted",
            version,
            len(chosen),
            len(covered),
            len(omitted),
        )
        return Plan(version=version, tasks=list(chosen.values()), omitted=omitted)

    def _candidates(
        self,
        intent: QueryIntent,
        ledger: ResearchLedger,
        omitted: list[str],
    ) -> list[_Candidate]:
        if not intent.tickers:
            if Capability.NEWS in intent.capabilities or not intent.capabilities:
                if self._available(Capability.NEWS, ledger):
                    return [
                        _Candidate(
                            key="news:query",
                            capability=Capability.NEWS,
                            arguments={"query": intent.text, "limit": DEFAULT_NEWS_LIMIT},
                        ),
                    ]
            return []

        capabilities = list(intent.capabilities or _DEFAULT_CAPABILITIES)
        if (
            Capability.ANALYST_ESTIMATES in capabilities
            and Capability.INCOME_STATEMENTS not in capabilities
        ):
            capabilities.insert(capabilities.index(Capability.ANALYST_ESTIMATES), Capability.INCOME_STATEMENTS)

        candidates: list[_Candidate] = []
        for ticker in intent.tickers:
            keys: set[str] = set()
            for capability in capabilities:
                resolved = self._resolve(capability, ledger, omitted)
                if resolved is None:
                    continue
                target, extra, note = resolved
                key = f"{ticker}:{target.value}"
                if key in keys:
                    continue
                keys.add(key)
                arguments = self._arguments(target, ticker, intent)
                arguments.update(extra)
                depends_on_key = None
                if target == Capability.ANALYST_ESTIMATES:
                    depends_on_key = f"{ticker}:{Capability.INCOME_STATEMENTS.value}"
                candidates.append(
                    _Candidate(
                        key=key,
                        capability=target,
                        arguments=arguments,
                        depends_on_key=depends_on_key,
                        note=note,
                    ),
                )
        return candidates

    def _resolve(
        self,
        capability: Capability,
        ledger: ResearchLedger,
        omitted: list[str],
    ) -> tuple[Capability, dict[str, Any], str | None] | None:
        if self._available(capability, ledger):
            return capability, {}, None
        fallback = FALLBACK_CAPABILITIES.get(capability)
        if fallback is not None and self._available(fallback[0], ledger):
            note = (
                f"{capability.value} is not available from the configured provider; "
                f"using {fallback[0].value} instead"
            )
            _note(omitted, note)
            return fallback[0], dict(fallback[1]), note
        _note(omitted, f"{capability.value} is not available from the configured provider")
        return None

    def _available(self, capability: Capability, ledger: ResearchLedger) -> bool:
        if capability in ledger.unsupported:
            return False
        return self.capabilities is None or capability in self.capabilities

    def _arguments(self, capability: Capability, ticker: str, intent: QueryIntent) -> dict[str, Any]:
        arguments: dict[str, Any] = {"ticker": ticker}
        first_year = min(intent.years) if intent.years else None
        last_year = max(intent.years) if intent.years else None
        if capability in STATEMENT_CAPABILITIES:
            arguments["period"] = intent.period or "annual"
            arguments["limit"] = DEFAULT_STATEMENT_LIMIT
            if first_year is not None and last_year is not None:
                arguments["report_period_gte"] = f"{first_year}-01-01"
                arguments["report_period_lte"] = f"{last_year}-12-31"
        elif capability == Capability.PRICE_HISTORY:
            if first_year is not None and last_year is not None:
                arguments["start_date"] = f"{first_year}-01-01"
                arguments["end_date"] = f"{last_year}-12-31"
            else:
                today = self._today()
                arguments["start_date"] = (today - timedelta(days=DEFAULT_HISTORY_DAYS)).isoformat()
                arguments["end_date"] = today.isoformat()
        elif capability == Capability.FINANCIAL_METRICS:
            if intent.period is not None:
                arguments["period"] = intent.period
        elif capability == Capability.ANALYST_ESTIMATES:
            arguments["period"] = "quarterly" if intent.period == "quarterly" else "annual"
        elif capability == Capability.NEWS:
            arguments["limit"] = DEFAULT_NEWS_LIMIT
            if first_year is not None and last_year is not None:
                arguments["start_date"] = f"{first_year}-01-01"
                arguments["end_date"] = f"{last_year}-12-31"
        elif capability == Capability.FILINGS:
            if intent.form_type is not None:
                arguments["form_type"] = intent.form_type
        return arguments

    def _next_variant(self, candidate: _Candidate, ledger: ResearchLedger) -> dict[str, Any] | None:
        """First argument variant still worth dispatching, or None."""

        for arguments in widened_variants(candidate.capability, candidate.arguments):
            digest = task_digest(candidate.capability, arguments)
            if ledger.is_satisfied(digest):
                return None
            record = ledger.record_for(digest)
            if record is None or record.attempts == 0:
                return arguments
            if record.failure_class in _HOPELESS_FAILURES:
                return None
            if record.last_verdict == VerdictKind.INSUFFICIENT:
                continue
            if record.attempts >= self.retry_ceiling:
                return None
            if record.last_verdict is None:
                # Dispatched but never judged; try it again.
                return arguments
            if record.failure_class is None or record.failure_class in _RETRY_SAME_FAILURES:
                return arguments
            return None
        return None

    def _covered(self, candidate: _Candidate, ledger: ResearchLedger) -> bool:
        return any(
            ledger.is_satisfied(task_digest(candidate.capability, arguments))
            for arguments in widened_variants(candidate.capability, candidate.arguments)
        )


def parse_query(query: str) -> QueryIntent:
    """Extract tickers, capabilities, period, and years from a question."""

    lowered = query.lower()
    tickers: list[str] = []
    for match in _DOLLAR_TICKER.finditer(query):
        _append_unique(tickers, match.group(1).upper())
    for name, ticker in COMPANY_TICKERS.items():
        if re.search(rf"\b{re.escape(name)}(?:'s)?\b", lowered):
            _append_unique(tickers, ticker)
    for match in _BARE_TICKER.finditer(query):
        symbol = match.group(1)
        if symbol not in _NON_TICKERS:
            _append_unique(tickers, symbol)

    capabilities: list[Capability] = []
    for capability, words in _KEYWORDS:
        if any(_contains_word(lowered, word) for word in words):
            _append_unique(capabilities, capability)
    if Capability.PRICE_HISTORY in capabilities and Capability.PRICE_SNAPSHOT in capabilities:
        capabilities.remove(Capability.PRICE_SNAPSHOT)

    period: str | None = None
    if _QUARTER.search(lowered):
        period = "quarterly"
    elif _TTM.search(lowered):
        period = "ttm"
    elif _ANNUAL.search(lowered):
        period = "annual"

    form_type = None
    for form in ("10-K", "10-Q", "8-K"):
        if form.lower() in lowered:
            form_type = form
            break

    years = sorted({int(year) for year in _YEAR.findall(query)})
    return QueryIntent(
        tickers=tickers,
        capabilities=capabilities,
        period=period,
        years=years,
        form_type=form_type,
        text=query.strip(),
    )


def widened_variants(capability: Capability, arguments: dict[str, Any]) -> list[dict[str, Any]]:
    """Original arguments followed by progressively wider variants.

    Widening doubles the row limit, then drops date bounds, then switches to
    the alternate statement period. Variants that change nothing are skipped.
    """

    variants = [dict(arguments)]
    current = dict(arguments)
    if "limit" in current:
        current = {**current, "limit": int(current["limit"]) * 2}
        variants.append(current)
    if any(bound in current for bound in _DATE_BOUNDS):
        current = {key: value for key, value in current.items() if key not in _DATE_BOUNDS}
        variants.append(current)
    if capability in STATEMENT_CAPABILITIES and "period" in current:
        alternate = "annual" if current["period"] != "annual" else "quarterly"
        current = {**current, "period": alternate}
        variants.append(current)
    return variants


def _exhausted_note(candidate: _Candidate, ledger: ResearchLedger) -> str:
    record = ledger.record_for(task_digest(candidate.capability, candidate.arguments))
    reason = record.last_reason if record is not None and record.last_reason else "no usable data"
    return f"gave up on {_label(candidate)}: {reason}"


def _label(candidate: _Candidate) -> str:
    ticker = candidate.arguments.get("ticker")
    return f"{candidate.capability.value} for {ticker}" if ticker else candidate.capability.value


def _note(notes: list[str], note: str) -> None:
    if note not in notes:
        notes.append(note)


def _append_unique(items: list[Any], item: Any) -> None:
    if item not in items:
        items.append(item)


def _contains_word(text: str, word: str) -> bool:
    return re.search(rf"(?<![a-z0-9]){re.escape(word)}", text) is not None
