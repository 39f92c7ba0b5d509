"""Final answer synthesis from gathered artifacts."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from fin_research.config import SynthesisSettings
from fin_research.research.backend import AgentBackend, BackendRunError, BackendRunRequest
from fin_research.research.ledger import ResearchLedger
from fin_research.research.models import (
    ArtifactView,
    FinalAnswer,
    HistoryItem,
    MessageRole,
    SessionStatus,
    SessionView,
    StopReason,
)
from fin_research.research.store import SessionStore

logger = logging.getLogger(__name__)

INCOMPLETE_NOTICES: dict[StopReason, str] = {
    StopReason.LOOP_DETECTED: (
        "Incomplete data: research stopped because repeated requests made no progress."
    ),
    StopReason.BUDGET_EXHAUSTED: (
        "Incomplete data: the step or cost budget ran out before every request finished."
    ),
    StopReason.PLANNER_EXHAUSTED: (
        "Incomplete data: some requested data could not be gathered after retries."
    ),
    StopReason.PLANNING_FAILED: (
        "Incomplete data: the question could not be fully mapped to data requests."
    ),
}
_HIGHLIGHT_FIELDS = (
    "revenue",
    "net_income",
    "operating_income",
    "total_assets",
    "total_debt",
    "free_cash_flow",
    "price",
    "close",
    "market_cap",
    "pe_ratio",
)
_PROMPT_DATA_CHARS = 2_000
_AGENT_ATTEMPTS = 2


class ReportSynthesizer:
    """Deterministic synthesizer: a findings digest with citations."""

    def __init__(self, store: SessionStore) -> None:
        self.store = store

    def synthesize(
        self,
        session: SessionView,
        history: Sequence[HistoryItem],
        stop_reason: StopReason,
        *,
        interrupted: bool = False,
    ) -> FinalAnswer:
        """Write the answer message; the session completes unless interrupted."""

        ledger = ResearchLedger.from_history(history)
        artifacts = [item for item in history if isinstance(item, ArtifactView)]
        citations = _unique([artifact.source for artifact in artifacts])
        limitations = collect_limitations(ledger)
        notice = INCOMPLETE_NOTICES.get(stop_reason)

        sections = []
        if interrupted:
            sections.append(
                "Interim answer: research was interrupted. "
                f"Resume with `fin-research resume {session.session_id}`.",
            )
        sections.append(self._body(session.query, artifacts, ledger))
        if notice is not None:
            sections.append(notice)
        if limitations:
            sections.append("Limitations:\n" + "\n".join(f"- {item}" for item in limitations))
        if citations:
            sections.append(
                "Sources:\n" + "\n".join(f"[{index}] {source}" for index, source in enumerate(citations, 1)),
            )
        text = "\n\n".join(sections)

        self.store.append_message(session.session_id, MessageRole.ASSISTANT, text)
        if not interrupted:
            self.store.update_status(session.session_id, SessionStatus.COMPLETED)
        return FinalAnswer(
            session_id=session.session_id,
            text=text,
            citations=citations,
            stop_reason=stop_reason,
            partial=notice is not None or interrupted,
            stalled=stop_reason == StopReason.LOOP_DETECTED,
            interrupted=interrupted,
            limitations=limitations,
        )

    def abort(self, session: SessionView, history: Sequence[HistoryItem], reason: str) -> str:
        """Record that the loop stopped without an answer and mark the session failed."""

        limitations = collect_limitations(ResearchLedger.from_history(history))
        text = f"Research stopped without a complete answer: {reason}"
        if limitations:
            text += "\n\nLimitations:\n" + "\n".join(f"- {item}" for item in limitations)
        self.store.append_message(session.session_id, MessageRole.ASSISTANT, text)
        self.store.update_status(session.session_id, SessionStatus.ERROR)
        return text

    def _body(self, query: str, artifacts: Sequence[ArtifactView], ledger: ResearchLedger) -> str:
        findings = findings_lines(artifacts, ledger)
        if not findings:
            return f"Question: {query}\n\nNo usable data was gathered."
        return f"Question: {query}\n\nFindings:\n" + "\n".join(findings)


class AgentSynthesizer(ReportSynthesizer):
    """Synthesizer that drafts the answer body with a CLI agent.

    Citations, notices, and limitations are still appended here, so an agent
    cannot drop them; when the agent fails the deterministic body is used.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        settings: SynthesisSettings,
        backend: AgentBackend,
        workdir: Path,
    ) -> None:
        super().__init__(store)
        self.settings = settings
        self.backend = backend
        self.workdir = workdir

    def _body(self, query: str, artifacts: Sequence[ArtifactView], ledger: ResearchLedger) -> str:
        fallback = super()._body(query, artifacts, ledger)
        prompt = build_prompt(query, artifacts, ledger)
        request = BackendRunRequest(
            prompt=prompt,
            workdir=self.workdir,
            timeout_seconds=self.settings.timeout_seconds,
            agent=self.settings.agent,
            model=self.settings.model,
            command_template=self.settings.command_template_for(self.settings.agent),
        )
        result = None
        for attempt in range(1, _AGENT_ATTEMPTS + 1):
            try:
                result = self.backend.run(request)
                break
            except BackendRunError as error:
                if error.transient and attempt < _AGENT_ATTEMPTS:
                    logger.info("Synthesis agent %s failed to start (%s); retrying", self.settings.agent, error)
                    continue
                logger.warning("Synthesis agent %s failed to run: %s", self.settings.agent, error)
                return fallback
        assert result is not None
        drafted = result.stdout_text().strip()
        if result.timed_out or result.exit_code != 0 or not drafted:
            logger.warning(
                "Synthesis agent %s returned exit code %s (timed_out=%s); using report body",
                self.settings.agent,
                result.exit_code,
                result.timed_out,
            )
            return fallback
        return drafted


def build_prompt(query: str, artifacts: Sequence[ArtifactView], ledger: ResearchLedger) -> str:
    lines = [
        "You are a financial research assistant. Answer the question using only the data below.",
        "Do not invent numbers. Do not list sources; they are appended automatically.",
        "",
        f"Question: {query}",
        "",
        "Data:",
    ]
    lines.extend(findings_lines(artifacts, ledger))
    for artifact in artifacts:
        data = json.dumps(artifact.payload.get("data"), ensure_ascii=False, default=str)
        lines.append("")
        lines.append(f"Source {artifact.source}:")
        lines.append(data[:_PROMPT_DATA_CHARS])
    return "\n".join(lines) + "\n"


def findings_lines(artifacts: Sequence[ArtifactView], ledger: ResearchLedger) -> list[str]:
    """One bullet per satisfied artifact."""

    lines = []
    for artifact in artifacts:
        digest = artifact.task_digest
        if digest is not None and not ledger.is_satisfied(digest):
            continue
        task = artifact.payload.get("task") or {}
        label = _task_label(task)
        lines.append(f"- {label}: {_summarize(artifact.payload.get('data'))}")
    return lines


def collect_limitations(ledger: ResearchLedger) -> list[str]:
    items = [
        f"{capability.value} data is not available from the configured provider"
        for capability in sorted(ledger.unsupported, key=lambda value: value.value)
    ]
    items.extend(ledger.omitted)
    return _unique(items)


def _task_label(task: dict[str, Any]) -> str:
    capability = task.get("capability", "data")
    arguments = task.get("arguments") or {}
    parts = [str(capability)]
    for key in ("ticker", "query"):
        if arguments.get(key):
            parts.append(str(arguments[key]))
    if arguments.get("period"):
        parts.append(f"({arguments['period']})")
    return " ".join(parts)


def _summarize(data: Any) -> str:
    if isinstance(data, dict):
        groups = {key: value for key, value in data.items() if isinstance(value, list)}
        if groups:
            return ", ".join(f"{len(rows)} {key.replace('_', ' ')}" for key, rows in groups.items())
        return _row_highlights(data) or f"{len(data)} field(s)"
    if isinstance(data, list):
        rows = [row for row in data if isinstance(row, dict)]
        summary = f"{len(data)} row(s)"
        if rows:
            latest = rows[0]
            marker = latest.get("report_period") or latest.get("date") or latest.get("time")
            if marker:
                summary += f"; latest {marker}"
            highlights = _row_highlights(latest)
            if highlights:
                summary += f"; {highlights}"
            title = latest.get("title")
            if title:
                summary += f"; top headline: {title}"
        return summary
    return "no structured rows"


def _row_highlights(row: dict[str, Any]) -> str:
    return ", ".join(
        f"{name} {row[name]}" for name in _HIGHLIGHT_FIELDS if row.get(name) not in (None, "")
    )


def _unique(items: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    ordered = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        ordered.append(item)
    return ordered
