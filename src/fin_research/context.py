"""Process-level research context: store, cache, and provider registry.

One context is opened per CLI invocation and closed on exit; nothing here is
a module-level singleton.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field

import httpx

from fin_research.cache import ResponseCache
from fin_research.config import Settings, normalize_provider_name
from fin_research.providers.base import FinancialProvider
from fin_research.providers.factory import create_financial_provider
from fin_research.providers.registry import ProviderRegistry
from fin_research.research.backend import AgentBackend, CliAgentBackend
from fin_research.research.executor import TaskExecutor
from fin_research.research.loop import ReflectorLoop
from fin_research.research.planner import QueryPlanner
from fin_research.research.store import SessionStore
from fin_research.research.synthesizer import AgentSynthesizer, ReportSynthesizer

PREF_PROVIDER = "provider"
PREF_SYNTH_AGENT = "synthesis.agent"
PREF_SYNTH_MODEL = "synthesis.model"


@dataclass(slots=True)
class ResearchContext:
    """Everything one loop run needs, with an explicit lifetime."""

    settings: Settings
    store: SessionStore
    cache: ResponseCache
    registry: ProviderRegistry
    cancel_event: threading.Event = field(default_factory=threading.Event)
    backend: AgentBackend | None = None
    executors: list[TaskExecutor] = field(default_factory=list)

    def build_loop(
        self,
        *,
        max_steps: int | None = None,
        max_cost_usd: float | None = None,
    ) -> ReflectorLoop:
        loop_settings = self.settings.loop
        executor = TaskExecutor(
            registry=self.registry,
            store=self.store,
            cache=self.cache,
            max_concurrency=loop_settings.max_concurrency,
            max_attempts=loop_settings.max_attempts,
            retry_base_seconds=loop_settings.retry_base_seconds,
            retry_max_seconds=loop_settings.retry_max_seconds,
            call_timeout_seconds=loop_settings.call_timeout_seconds,
            capability_pricing=loop_settings.capability_pricing,
            cancel_event=self.cancel_event,
        )
        self.executors.append(executor)
        planner = QueryPlanner(
            capabilities=self.registry.capabilities(),
            retry_ceiling=loop_settings.retry_ceiling,
        )
        return ReflectorLoop(
            store=self.store,
            planner=planner,
            executor=executor,
            synthesizer=self.build_synthesizer(),
            max_steps=max_steps if max_steps is not None else loop_settings.max_steps,
            max_cost_usd=max_cost_usd if max_cost_usd is not None else loop_settings.max_cost_usd,
            loop_threshold=loop_settings.loop_threshold,
            cancel_event=self.cancel_event,
        )

    def build_synthesizer(self) -> ReportSynthesizer:
        synthesis = self.settings.synthesis
        if synthesis.agent == "none":
            return ReportSynthesizer(self.store)
        return AgentSynthesizer(
            self.store,
            settings=synthesis,
            backend=self.backend or CliAgentBackend(),
            workdir=self.settings.db_path.parent / "synthesis",
        )


def apply_preferences(settings: Settings, store: SessionStore) -> None:
    """Overlay persisted provider and synthesis choices onto env defaults."""

    provider = store.get_preference(PREF_PROVIDER)
    if provider:
        settings.providers.provider = normalize_provider_name(provider)
    agent = store.get_preference(PREF_SYNTH_AGENT)
    if agent:
        settings.synthesis.agent = agent
    model = store.get_preference(PREF_SYNTH_MODEL)
    if model is not None:
        settings.synthesis.model = model


@contextmanager
def open_context(  # noqa: PLR0913
    settings: Settings,
    *,
    provider: str | None = None,
    use_cache: bool = True,
    providers: Sequence[FinancialProvider] | None = None,
    transport: httpx.BaseTransport | None = None,
    backend: AgentBackend | None = None,
    cancel_event: threading.Event | None = None,
) -> Iterator[ResearchContext]:
    """Open store, cache, and registry; close all of them on exit.

    ``provider`` overrides both the environment and the saved preference.
    ``providers`` replaces provider construction entirely.
    """

    store = SessionStore(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        lease_stale_seconds=settings.loop.lease_stale_seconds,
    )
    registry = ProviderRegistry()
    context: ResearchContext | None = None
    try:
        store.init_schema()
        apply_preferences(settings, store)
        if provider is not None:
            settings.providers.provider = normalize_provider_name(provider)
        settings.validate()
        cache = ResponseCache(
            settings.cache.directory,
            ttl_seconds=settings.cache.ttl_seconds,
            enabled=settings.cache.enabled and use_cache,
        )
        for item in providers or (
            create_financial_provider(
                settings.providers.provider,
                settings.providers,
                transport=transport,
            ),
        ):
            registry.register(item)
            item.initialize()
        context = ResearchContext(
            settings=settings,
            store=store,
            cache=cache,
            registry=registry,
            cancel_event=cancel_event or threading.Event(),
            backend=backend,
        )
        yield context
    finally:
        if context is not None:
            for executor in context.executors:
                executor.close()
        registry.close()
        store.close()
