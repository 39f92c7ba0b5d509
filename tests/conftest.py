"""Shared test fixtures."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import pytest
from fakes import FakeProvider

from fin_research.cache import ResponseCache
from fin_research.providers.base import Capability
from fin_research.providers.registry import ProviderRegistry
from fin_research.research.executor import TaskExecutor
from fin_research.research.loop import ReflectorLoop
from fin_research.research.planner import QueryPlanner
from fin_research.research.store import SessionStore
from fin_research.research.synthesizer import ReportSynthesizer


@pytest.fixture()
def store(tmp_path: Path):
    session_store = SessionStore(tmp_path / "research.db")
    session_store.init_schema()
    try:
        yield session_store
    finally:
        session_store.close()


@pytest.fixture()
def build_loop(store: SessionStore):
    """Factory wiring a ReflectorLoop around fake providers."""

    executors: list[TaskExecutor] = []

    def _build(  # noqa: PLR0913
        *providers: FakeProvider,
        max_steps: int = 20,
        max_cost_usd: float = 1.0,
        loop_threshold: int = 3,
        capabilities: frozenset[Capability] | None = None,
        pricing: str = "",
        cache: ResponseCache | None = None,
        cancel_event: threading.Event | None = None,
        planner: Any = None,
    ) -> ReflectorLoop:
        registry = ProviderRegistry()
        for provider in providers:
            registry.register(provider)
        cancel = cancel_event or threading.Event()
        executor = TaskExecutor(
            registry=registry,
            store=store,
            cache=cache,
            max_attempts=2,
            retry_base_seconds=0.0,
            retry_max_seconds=0.0,
            call_timeout_seconds=5.0,
            capability_pricing=pricing,
            cancel_event=cancel,
        )
        executors.append(executor)
        return ReflectorLoop(
            store=store,
            planner=planner or QueryPlanner(capabilities=capabilities),
            executor=executor,
            synthesizer=ReportSynthesizer(store),
            max_steps=max_steps,
            max_cost_usd=max_cost_usd,
            loop_threshold=loop_threshold,
            cancel_event=cancel,
        )

    yield _build
    for executor in executors:
        executor.close()
