from __future__ import annotations

from pathlib import Path

import allure
import pytest
from fakes import FakeProvider, statement_rows

from fin_research.config import Settings
from fin_research.context import PREF_PROVIDER, PREF_SYNTH_AGENT, PREF_SYNTH_MODEL, open_context
from fin_research.providers.base import Capability
from fin_research.research.services import AskResearch, ResearchService
from fin_research.research.store import SessionStore
from fin_research.research.synthesizer import AgentSynthesizer, ReportSynthesizer

pytestmark = [
    allure.epic("Research Loop"),
    allure.feature("Research Context"),
]


def _settings(tmp_path: Path) -> Settings:
    settings = Settings(db_path=tmp_path / "research.db")
    settings.cache.directory = tmp_path / "cache"
    return settings


def _save(db_path: Path, **preferences: str) -> None:
    store = SessionStore(db_path)
    try:
        store.init_schema()
        for key, value in preferences.items():
            store.set_preference(key, value)
    finally:
        store.close()


def test_saved_preferences_override_environment_defaults(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _save(
        settings.db_path,
        **{PREF_PROVIDER: "yahoo", PREF_SYNTH_AGENT: "codex", PREF_SYNTH_MODEL: "gpt-5"},
    )
    provider = FakeProvider({Capability.INCOME_STATEMENTS: statement_rows})

    with open_context(settings, providers=[provider]) as context:
        assert context.settings.providers.provider == "yahoo"
        assert context.settings.synthesis.model == "gpt-5"
        assert isinstance(context.build_synthesizer(), AgentSynthesizer)
        assert context.registry.capabilities() == frozenset({Capability.INCOME_STATEMENTS})

    assert provider.closed


def test_explicit_provider_wins_over_saved_preference(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _save(settings.db_path, **{PREF_PROVIDER: "yahoo"})

    with open_context(settings, provider="financial-datasets", providers=[FakeProvider({})]) as context:
        assert context.settings.providers.provider == "financialdatasets"
        assert type(context.build_synthesizer()) is ReportSynthesizer


def test_invalid_settings_fail_before_any_provider_is_used(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    settings.loop.max_steps = 0
    provider = FakeProvider({})

    with pytest.raises(ValueError, match="FIN_RESEARCH_MAX_STEPS"), open_context(settings, providers=[provider]):
        pass
    assert provider.closed is False


def test_research_service_rejects_blank_question(tmp_path: Path) -> None:
    with open_context(_settings(tmp_path), providers=[FakeProvider({})]) as context:
        with pytest.raises(ValueError, match="must not be empty"):
            ResearchService(context=context).ask(AskResearch(query="   "))


def test_research_service_runs_the_loop(tmp_path: Path) -> None:
    provider = FakeProvider({Capability.INCOME_STATEMENTS: statement_rows})

    with open_context(_settings(tmp_path), providers=[provider], use_cache=False) as context:
        outcome = ResearchService(context=context).ask(AskResearch(query="What was Apple's Q4 revenue?"))

    assert outcome.completed
    assert outcome.answer is not None
    assert outcome.answer.citations == ["fake://income-statements/AAPL"]
