"""CLI entrypoint for fin-research."""

import logging
import os
from pathlib import Path

import rich_click as click

from fin_research import __version__
from fin_research.research.controllers import (
    AskCommand,
    CacheCommand,
    ModelSetCommand,
    ProviderSetCommand,
    ResearchCliController,
    ResearchRunResult,
    SessionCommand,
    SessionListCommand,
    StoreCommand,
)
from fin_research.research.errors import ProviderError, ResearchError

click.rich_click.USE_MARKDOWN = True
RESEARCH_CONTROLLER = ResearchCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
_HANDLED_ERRORS = (ResearchError, ProviderError, ValueError)


@click.group()
@click.version_option(version=__version__, prog_name="fin-research")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Log level for stderr output; defaults to FIN_RESEARCH_LOG_LEVEL or WARNING.",
)
def fin_research(log_level: str | None) -> None:
    """Budgeted, resumable research over financial data providers."""

    _configure_logging(log_level or os.getenv("FIN_RESEARCH_LOG_LEVEL", "WARNING"))


def _limit_options(function):
    function = click.option(
        "--max-cost",
        "max_cost",
        type=click.FloatRange(min=0),
        default=None,
        help="Estimated spend cap in USD; defaults to FIN_RESEARCH_MAX_COST_USD.",
    )(function)
    function = click.option(
        "--max-steps",
        type=click.IntRange(min=1),
        default=None,
        help="Maximum provider dispatches; defaults to FIN_RESEARCH_MAX_STEPS.",
    )(function)
    function = click.option(
        "--no-cache",
        is_flag=True,
        default=False,
        help="Bypass the provider response cache for this run.",
    )(function)
    function = click.option(
        "--provider",
        default=None,
        help="Financial data provider for this run (financialdatasets or yahoo).",
    )(function)
    return click.option(
        "--db-path",
        type=click.Path(path_type=Path),
        default=None,
        help="SQLite DB path.",
    )(function)


@fin_research.command("ask")
@click.argument("query", required=False)
@click.option(
    "--resume",
    "resume_session_id",
    default=None,
    help="Continue an interrupted session instead of starting a new one.",
)
@_limit_options
def ask(  # noqa: PLR0913
    query: str | None,
    resume_session_id: str | None,
    db_path: Path | None,
    provider: str | None,
    no_cache: bool,
    max_steps: int | None,
    max_cost: float | None,
) -> None:
    """Research a financial question and print a source-cited answer."""

    if not query and resume_session_id is None:
        raise click.UsageError("Provide a QUERY or --resume SESSION_ID.")
    _emit_result(
        AskCommand(
            db_path=db_path,
            query=query,
            resume_session_id=resume_session_id,
            max_steps=max_steps,
            max_cost_usd=max_cost,
            use_cache=not no_cache,
            provider=provider,
        ),
    )


@fin_research.command("resume")
@click.argument("session_id")
@_limit_options
def resume(  # noqa: PLR0913
    session_id: str,
    db_path: Path | None,
    provider: str | None,
    no_cache: bool,
    max_steps: int | None,
    max_cost: float | None,
) -> None:
    """Continue an interrupted research session."""

    _emit_result(
        AskCommand(
            db_path=db_path,
            query=None,
            resume_session_id=session_id,
            max_steps=max_steps,
            max_cost_usd=max_cost,
            use_cache=not no_cache,
            provider=provider,
        ),
    )


@fin_research.group()
def sessions() -> None:
    """Inspect and maintain stored research sessions."""


@sessions.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="How many recent sessions to print.",
)
def sessions_list(db_path: Path | None, limit: int) -> None:
    """List recent sessions, newest first."""

    _run_lines(lambda: RESEARCH_CONTROLLER.list_sessions(SessionListCommand(db_path=db_path, limit=limit)))


@sessions.command("show")
@click.argument("session_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def sessions_show(session_id: str, db_path: Path | None) -> None:
    """Show one session with its loop history and latest answer."""

    _run_lines(
        lambda: RESEARCH_CONTROLLER.show_session(
            SessionCommand(db_path=db_path, session_id=session_id),
        ),
    )


@sessions.command("delete")
@click.argument("session_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def sessions_delete(session_id: str, db_path: Path | None) -> None:
    """Delete one session with its messages and artifacts."""

    _run_lines(
        lambda: RESEARCH_CONTROLLER.delete_session(
            SessionCommand(db_path=db_path, session_id=session_id),
        ),
    )


@sessions.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def sessions_stats(db_path: Path | None) -> None:
    """Show row counts and database size."""

    _run_lines(lambda: RESEARCH_CONTROLLER.session_stats(StoreCommand(db_path=db_path)))


@sessions.command("vacuum")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def sessions_vacuum(db_path: Path | None) -> None:
    """Compact the session database."""

    _run_lines(lambda: RESEARCH_CONTROLLER.vacuum(StoreCommand(db_path=db_path)))


@fin_research.group()
def cache() -> None:
    """Provider response cache maintenance."""


@cache.command("stats")
@click.option("--cache-dir", type=click.Path(path_type=Path), default=None, help="Cache directory.")
def cache_stats(cache_dir: Path | None) -> None:
    """Show cache entry counts and size."""

    _run_lines(lambda: RESEARCH_CONTROLLER.cache_stats(CacheCommand(cache_dir=cache_dir)))


@cache.command("clear")
@click.option("--cache-dir", type=click.Path(path_type=Path), default=None, help="Cache directory.")
def cache_clear(cache_dir: Path | None) -> None:
    """Delete every cache entry."""

    _run_lines(lambda: RESEARCH_CONTROLLER.cache_clear(CacheCommand(cache_dir=cache_dir)))


@cache.command("clean")
@click.option("--cache-dir", type=click.Path(path_type=Path), default=None, help="Cache directory.")
def cache_clean(cache_dir: Path | None) -> None:
    """Delete expired and unreadable cache entries."""

    _run_lines(lambda: RESEARCH_CONTROLLER.cache_clean(CacheCommand(cache_dir=cache_dir)))


@fin_research.group()
def model() -> None:
    """Answer synthesis agent preference."""


@model.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def model_show(db_path: Path | None) -> None:
    """Show the synthesis agent and model in effect."""

    _run_lines(lambda: RESEARCH_CONTROLLER.model_show(StoreCommand(db_path=db_path)))


@model.command("set")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--agent",
    required=True,
    help="Synthesis agent: none, claude, codex, or gemini.",
)
@click.option("--model", "model_name", default=None, help="Model id passed to the agent.")
def model_set(db_path: Path | None, agent: str, model_name: str | None) -> None:
    """Save the synthesis agent and model."""

    _run_lines(
        lambda: RESEARCH_CONTROLLER.model_set(
            ModelSetCommand(db_path=db_path, agent=agent, model=model_name),
        ),
    )


@fin_research.group()
def provider() -> None:
    """Financial data provider preference."""


@provider.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def provider_show(db_path: Path | None) -> None:
    """Show the financial data provider in effect."""

    _run_lines(lambda: RESEARCH_CONTROLLER.provider_show(StoreCommand(db_path=db_path)))


@provider.command("set")
@click.argument("name")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def provider_set(name: str, db_path: Path | None) -> None:
    """Save the financial data provider."""

    _run_lines(
        lambda: RESEARCH_CONTROLLER.provider_set(ProviderSetCommand(db_path=db_path, provider=name)),
    )


def _emit_result(command: AskCommand) -> None:
    try:
        result: ResearchRunResult = RESEARCH_CONTROLLER.ask(command)
    except _HANDLED_ERRORS as error:
        _fail(str(error))
    _emit_lines(result.lines)
    if not result.success:
        raise SystemExit(1)


def _run_lines(action) -> None:
    try:
        lines = action()
    except _HANDLED_ERRORS as error:
        _fail(str(error))
    _emit_lines(lines)


def _fail(message: str) -> None:
    click.secho(f"Error: {message}", fg="red", err=True)
    raise SystemExit(1)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


def _configure_logging(level: str) -> None:
    normalized = level.strip().upper()
    logging.basicConfig(
        level=normalized if normalized in LOG_LEVELS else "WARNING",
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


if __name__ == "__main__":  # pragma: no cover
    fin_research()
