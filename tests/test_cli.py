from __future__ import annotations

from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from fakes import FakeProvider, statement_rows

from fin_research.cache import ResponseCache
from fin_research.main import fin_research
from fin_research.providers.base import Capability
from fin_research.research import controllers
from fin_research.research.models import SessionStatus
from fin_research.research.store import SessionStore

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("Research and Maintenance Commands"),
]

_ENV_KEYS = (
    "FIN_RESEARCH_PROVIDER",
    "FINANCIAL_PROVIDER",
    "FIN_RESEARCH_SYNTH_AGENT",
    "FIN_RESEARCH_SYNTH_MODEL",
    "FIN_RESEARCH_MAX_STEPS",
    "FIN_RESEARCH_MAX_COST_USD",
    "FIN_RESEARCH_CAPABILITY_PRICING",
    "DISABLE_CACHE",
)


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("FIN_RESEARCH_CACHE_DIR", str(tmp_path / "cache"))


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "research.db"


@pytest.fixture()
def fake_provider(monkeypatch: pytest.MonkeyPatch) -> FakeProvider:
    """Route `ask` through an in-memory provider instead of HTTP."""

    provider = FakeProvider({Capability.INCOME_STATEMENTS: statement_rows})
    real_open_context = controllers.open_context

    def _open_context(settings, **kwargs):
        return real_open_context(settings, providers=[provider], **kwargs)

    monkeypatch.setattr(controllers, "open_context", _open_context)
    return provider


def _only_session(db_path: Path):
    store = SessionStore(db_path)
    try:
        store.init_schema()
        (session,) = store.list_recent()
        return session
    finally:
        store.close()


def test_ask_prints_answer_with_sources(db_path: Path, fake_provider: FakeProvider) -> None:
    result = CliRunner().invoke(
        fin_research,
        ["ask", "What was Apple's Q4 revenue?", "--db-path", str(db_path)],
    )

    assert result.exit_code == 0, result.output
    assert "Question: What was Apple's Q4 revenue?" in result.output
    assert "[1] fake://income-statements/AAPL" in result.output
    assert "stop_reason=completed steps=1" in result.output
    assert len(fake_provider.calls) == 1
    assert _only_session(db_path).status == SessionStatus.COMPLETED


def test_ask_step_limit_reports_partial_answer(db_path: Path, fake_provider: FakeProvider) -> None:
    result = CliRunner().invoke(
        fin_research,
        [
            "ask",
            "Compare Apple and Microsoft revenue",
            "--db-path",
            str(db_path),
            "--max-steps",
            "1",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "stop_reason=budget_exhausted steps=1" in result.output
    assert "Answer is partial: some data could not be gathered." in result.output


def test_ask_cost_cap_binds_without_configured_pricing(db_path: Path, fake_provider: FakeProvider) -> None:
    result = CliRunner().invoke(
        fin_research,
        [
            "ask",
            "Compare Apple and Microsoft revenue",
            "--db-path",
            str(db_path),
            "--max-cost",
            "0.05",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "stop_reason=budget_exhausted steps=1" in result.output
    assert len(fake_provider.calls) == 1


def test_ask_without_query_or_resume_is_usage_error(db_path: Path) -> None:
    result = CliRunner().invoke(fin_research, ["ask", "--db-path", str(db_path)])

    assert result.exit_code == 2
    assert "Provide a QUERY or --resume SESSION_ID." in result.output


def test_ask_that_cannot_be_planned_exits_with_error(
    db_path: Path,
    fake_provider: FakeProvider,
) -> None:
    result = CliRunner().invoke(fin_research, ["ask", "hello there", "--db-path", str(db_path)])

    assert result.exit_code == 1
    assert "Research stopped without a complete answer" in result.output
    assert fake_provider.calls == []


def test_resume_of_completed_session_fails(db_path: Path, fake_provider: FakeProvider) -> None:
    runner = CliRunner()
    runner.invoke(fin_research, ["ask", "What was Apple's Q4 revenue?", "--db-path", str(db_path)])
    session = _only_session(db_path)

    result = runner.invoke(fin_research, ["resume", session.session_id, "--db-path", str(db_path)])

    assert result.exit_code == 1
    assert "only active sessions can be resumed" in result.output


def test_unknown_provider_override_is_rejected(db_path: Path) -> None:
    result = CliRunner().invoke(
        fin_research,
        ["ask", "Apple revenue", "--db-path", str(db_path), "--provider", "bloomberg"],
    )

    assert result.exit_code == 1
    assert "Unsupported FIN_RESEARCH_PROVIDER: 'bloomberg'" in result.output


def test_sessions_list_show_delete(db_path: Path, fake_provider: FakeProvider) -> None:
    runner = CliRunner()
    runner.invoke(fin_research, ["ask", "What was Apple's Q4 revenue?", "--db-path", str(db_path)])
    session = _only_session(db_path)

    listed = runner.invoke(fin_research, ["sessions", "list", "--db-path", str(db_path)])
    assert listed.exit_code == 0, listed.output
    assert "Sessions: 1" in listed.output
    assert f"{session.session_id} status=completed" in listed.output

    shown = runner.invoke(fin_research, ["sessions", "show", session.session_id, "--db-path", str(db_path)])
    assert shown.exit_code == 0, shown.output
    assert "Steps used: 1" in shown.output
    assert "plan v1 tasks=1" in shown.output
    assert "verdict p1-t1 satisfied" in shown.output
    assert "Latest answer:" in shown.output
    assert "Resume with:" not in shown.output

    deleted = runner.invoke(
        fin_research,
        ["sessions", "delete", session.session_id, "--db-path", str(db_path)],
    )
    assert deleted.exit_code == 0
    assert f"Session deleted: {session.session_id}" in deleted.output

    missing = runner.invoke(fin_research, ["sessions", "show", session.session_id, "--db-path", str(db_path)])
    assert missing.exit_code == 1
    assert f"Session not found: {session.session_id}" in missing.output


def test_sessions_stats_and_vacuum(db_path: Path) -> None:
    runner = CliRunner()

    stats = runner.invoke(fin_research, ["sessions", "stats", "--db-path", str(db_path)])
    vacuum = runner.invoke(fin_research, ["sessions", "vacuum", "--db-path", str(db_path)])

    assert stats.exit_code == 0, stats.output
    assert "Sessions: 0" in stats.output
    assert vacuum.exit_code == 0, vacuum.output
    assert "Vacuum completed" in vacuum.output


def test_cache_commands(tmp_path: Path) -> None:
    cache_dir = tmp_path / "other-cache"
    ResponseCache(cache_dir).set("income-statements", {"ticker": "AAPL"}, {"data": [1], "source": "s"})
    (cache_dir / "broken.json").write_text("{not json", "utf-8")
    runner = CliRunner()

    stats = runner.invoke(fin_research, ["cache", "stats", "--cache-dir", str(cache_dir)])
    cleaned = runner.invoke(fin_research, ["cache", "clean", "--cache-dir", str(cache_dir)])
    cleared = runner.invoke(fin_research, ["cache", "clear", "--cache-dir", str(cache_dir)])

    assert stats.exit_code == 0, stats.output
    assert "Entries: 2 valid=1 expired=1" in stats.output
    assert "Cache cleaned: 1 expired entry removed" in cleaned.output
    assert "Cache cleared: 1 entry removed" in cleared.output
    assert list(cache_dir.glob("*.json")) == []


def test_model_show_and_set(db_path: Path) -> None:
    runner = CliRunner()

    before = runner.invoke(fin_research, ["model", "show", "--db-path", str(db_path)])
    saved = runner.invoke(
        fin_research,
        ["model", "set", "--agent", "Claude", "--model", "sonnet", "--db-path", str(db_path)],
    )
    after = runner.invoke(fin_research, ["model", "show", "--db-path", str(db_path)])
    rejected = runner.invoke(
        fin_research,
        ["model", "set", "--agent", "clippy", "--db-path", str(db_path)],
    )

    assert "Synthesis agent: none model=- (environment)" in before.output
    assert saved.exit_code == 0, saved.output
    assert "Synthesis agent saved: claude model=sonnet" in saved.output
    assert "Synthesis agent: claude model=sonnet (saved)" in after.output
    assert rejected.exit_code == 1
    assert "Unsupported synthesis agent: 'clippy'" in rejected.output


def test_provider_show_and_set(db_path: Path) -> None:
    runner = CliRunner()

    before = runner.invoke(fin_research, ["provider", "show", "--db-path", str(db_path)])
    saved = runner.invoke(fin_research, ["provider", "set", "Yahoo-Finance", "--db-path", str(db_path)])
    after = runner.invoke(fin_research, ["provider", "show", "--db-path", str(db_path)])
    rejected = runner.invoke(fin_research, ["provider", "set", "bloomberg", "--db-path", str(db_path)])

    assert "Financial data provider: financialdatasets (environment)" in before.output
    assert "Financial data provider saved: yahoo" in saved.output
    assert "Financial data provider: yahoo (saved)" in after.output
    assert rejected.exit_code == 1
    assert "Unknown financial provider: 'bloomberg'" in rejected.output
