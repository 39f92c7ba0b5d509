"""Use-case services for research sessions and saved preferences."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fin_research.config import (
    SUPPORTED_PROVIDERS,
    SUPPORTED_SYNTH_AGENTS,
    Settings,
    normalize_provider_name,
)
from fin_research.context import (
    PREF_PROVIDER,
    PREF_SYNTH_AGENT,
    PREF_SYNTH_MODEL,
    ResearchContext,
)
from fin_research.research.ledger import ResearchLedger
from fin_research.research.models import HistoryItem, LoopOutcome, SessionView
from fin_research.research.store import SessionStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AskResearch:
    """High-level command to research a question or continue a session."""

    query: str | None = None
    resume_session_id: str | None = None
    max_steps: int | None = None
    max_cost_usd: float | None = None


@dataclass(slots=True)
class SessionDetails:
    """Session row plus its replayed history."""

    session: SessionView
    history: list[HistoryItem]
    ledger: ResearchLedger


@dataclass(slots=True)
class ModelChoice:
    agent: str
    model: str
    source: str


@dataclass(slots=True)
class ProviderChoice:
    provider: str
    source: str


class ResearchService:
    """Runs the reflector loop inside an open research context."""

    def __init__(self, *, context: ResearchContext) -> None:
        self.context = context

    def ask(self, command: AskResearch) -> LoopOutcome:
        loop = self.context.build_loop(
            max_steps=command.max_steps,
            max_cost_usd=command.max_cost_usd,
        )
        if command.resume_session_id is not None:
            return loop.resume(command.resume_session_id)
        query = (command.query or "").strip()
        if not query:
            raise ValueError("Question must not be empty.")
        return loop.start(query)

    def resume(
        self,
        session_id: str,
        *,
        max_steps: int | None = None,
        max_cost_usd: float | None = None,
    ) -> LoopOutcome:
        return self.ask(
            AskResearch(
                resume_session_id=session_id,
                max_steps=max_steps,
                max_cost_usd=max_cost_usd,
            ),
        )


class SessionService:
    """Read and housekeeping operations over stored sessions."""

    def __init__(self, *, store: SessionStore) -> None:
        self.store = store

    def details(self, session_id: str) -> SessionDetails:
        session = self.store.get_session(session_id)
        history = self.store.load_history(session_id)
        return SessionDetails(
            session=session,
            history=history,
            ledger=ResearchLedger.from_history(history),
        )

    def delete(self, session_id: str) -> None:
        self.store.delete_session(session_id)
        logger.info("Deleted session %s", session_id)


class PreferenceService:
    """Saved provider and synthesis-agent choices; they win over env defaults."""

    def __init__(self, *, store: SessionStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def model(self) -> ModelChoice:
        agent = self.store.get_preference(PREF_SYNTH_AGENT)
        model = self.store.get_preference(PREF_SYNTH_MODEL)
        if agent is None and model is None:
            return ModelChoice(
                agent=self.settings.synthesis.agent,
                model=self.settings.synthesis.model,
                source="environment",
            )
        return ModelChoice(
            agent=agent or self.settings.synthesis.agent,
            model=model if model is not None else self.settings.synthesis.model,
            source="saved",
        )

    def set_model(self, *, agent: str, model: str | None) -> ModelChoice:
        normalized = agent.strip().lower()
        if normalized not in SUPPORTED_SYNTH_AGENTS:
            raise ValueError(
                f"Unsupported synthesis agent: {agent!r}. "
                f"Expected one of {', '.join(SUPPORTED_SYNTH_AGENTS)}.",
            )
        self.store.set_preference(PREF_SYNTH_AGENT, normalized)
        self.store.set_preference(PREF_SYNTH_MODEL, (model or "").strip())
        return self.model()

    def provider(self) -> ProviderChoice:
        saved = self.store.get_preference(PREF_PROVIDER)
        if saved:
            return ProviderChoice(provider=saved, source="saved")
        return ProviderChoice(provider=self.settings.providers.provider, source="environment")

    def set_provider(self, name: str) -> ProviderChoice:
        canonical = normalize_provider_name(name)
        if canonical not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unknown financial provider: {name!r}. "
                f"Expected one of {', '.join(SUPPORTED_PROVIDERS)}.",
            )
        self.store.set_preference(PREF_PROVIDER, canonical)
        return self.provider()
