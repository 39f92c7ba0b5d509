from __future__ import annotations

from pathlib import Path

import allure
import pytest

from fin_research.config import (
    DEFAULT_CAPABILITY_PRICING,
    LoopSettings,
    ProviderSettings,
    Settings,
    SynthesisSettings,
    normalize_provider_name,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings & Validation"),
]


def test_defaults_are_valid() -> None:
    settings = Settings()
    settings.validate()

    assert settings.loop.max_steps == 20
    assert settings.loop.max_cost_usd == 1.0
    assert settings.loop.loop_threshold == 3
    assert settings.loop.capability_pricing == DEFAULT_CAPABILITY_PRICING == "*:0.05"
    assert settings.providers.provider == "financialdatasets"
    assert settings.synthesis.agent == "none"


def test_from_env_reads_limits_and_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FIN_RESEARCH_MAX_STEPS", "7")
    monkeypatch.setenv("FIN_RESEARCH_MAX_COST_USD", "0.25")
    monkeypatch.setenv("FIN_RESEARCH_PROVIDER", "Yahoo-Finance")
    monkeypatch.setenv("FIN_RESEARCH_CAPABILITY_PRICING", "*:0.01")
    monkeypatch.setenv("FIN_RESEARCH_SYNTH_AGENT", " Claude ")

    settings = Settings.from_env(db_path=Path("custom.db"))

    assert settings.db_path == Path("custom.db")
    assert settings.loop.max_steps == 7
    assert settings.loop.max_cost_usd == 0.25
    assert settings.loop.capability_pricing == "*:0.01"
    assert settings.providers.provider == "yahoo"
    assert settings.synthesis.agent == "claude"


def test_from_env_accepts_plain_api_key_name(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FIN_RESEARCH_FINANCIAL_DATASETS_API_KEY", raising=False)
    monkeypatch.setenv("FINANCIAL_DATASETS_API_KEY", "key-123")

    assert Settings.from_env().providers.financial_datasets_api_key == "key-123"


def test_disable_cache_env_turns_cache_off(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FIN_RESEARCH_CACHE_ENABLED", raising=False)
    monkeypatch.setenv("DISABLE_CACHE", "1")

    assert Settings.from_env().cache.enabled is False


def test_invalid_boolean_env_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FIN_RESEARCH_CACHE_ENABLED", "maybe")

    with pytest.raises(ValueError, match="FIN_RESEARCH_CACHE_ENABLED"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(loop=LoopSettings(max_steps=0)), "FIN_RESEARCH_MAX_STEPS"),
        (Settings(loop=LoopSettings(max_cost_usd=-1)), "FIN_RESEARCH_MAX_COST_USD"),
        (Settings(loop=LoopSettings(loop_threshold=0)), "FIN_RESEARCH_LOOP_THRESHOLD"),
        (Settings(providers=ProviderSettings(provider="bloomberg")), "Unsupported FIN_RESEARCH_PROVIDER"),
        (
            Settings(providers=ProviderSettings(yahoo_base_url="ftp://example.com")),
            "FIN_RESEARCH_YAHOO_BASE_URL",
        ),
        (Settings(synthesis=SynthesisSettings(agent="gpt")), "FIN_RESEARCH_SYNTH_AGENT"),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_command_template_for_unknown_agent_raises() -> None:
    with pytest.raises(ValueError, match="Unsupported synthesis agent"):
        SynthesisSettings().command_template_for("none")


def test_normalize_provider_name_maps_aliases() -> None:
    assert normalize_provider_name(" Financial-Datasets ") == "financialdatasets"
    assert normalize_provider_name("yahoo-finance") == "yahoo"
    assert normalize_provider_name("other") == "other"


def test_from_env_defaults_to_flat_capability_pricing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FIN_RESEARCH_CAPABILITY_PRICING", raising=False)

    assert Settings.from_env().loop.capability_pricing == DEFAULT_CAPABILITY_PRICING
