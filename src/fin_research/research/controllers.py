"""Controllers for research CLI commands."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from fin_research.cache import ResponseCache
from fin_research.config import Settings
from fin_research.context import open_context
from fin_research.research.ledger import decode_event
from fin_research.research.models import (
    ArtifactView,
    LoopOutcome,
    MessageRole,
    MessageView,
    SessionStatus,
)
from fin_research.research.services import (
    AskResearch,
    PreferenceService,
    ResearchService,
    SessionService,
)
from fin_research.research.store import SessionStore

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 100


@dataclass(slots=True)
class AskCommand:
    """CLI input for a research question or resume."""

    db_path: Path | None
    query: str | None
    resume_session_id: str | None = None
    max_steps: int | None = None
    max_cost_usd: float | None = None
    use_cache: bool = True
    provider: str | None = None


@dataclass(slots=True)
class SessionListCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class SessionCommand:
    """CLI input for single-session operations."""

    db_path: Path | None
    session_id: str


@dataclass(slots=True)
class StoreCommand:
    db_path: Path | None


@dataclass(slots=True)
class CacheCommand:
    cache_dir: Path | None


@dataclass(slots=True)
class ModelSetCommand:
    db_path: Path | None
    agent: str
    model: str | None


@dataclass(slots=True)
class ProviderSetCommand:
    db_path: Path | None
    provider: str


@dataclass(slots=True)
class ResearchRunResult:
    """Answer report to render in CLI."""

    lines: list[str]
    success: bool


class ResearchCliController:
    """Coordinates research runs, session inspection, cache, and preference commands."""

    def ask(self, command: AskCommand) -> ResearchRunResult:
        settings = Settings.from_env(db_path=command.db_path)
        cancel_event = threading.Event()
        with (
            _signal_handlers(cancel_event),
            open_context(
                settings,
                provider=command.provider,
                use_cache=command.use_cache,
                cancel_event=cancel_event,
            ) as context,
        ):
            outcome = ResearchService(context=context).ask(
                AskResearch(
                    query=command.query,
                    resume_session_id=command.resume_session_id,
                    max_steps=command.max_steps,
                    max_cost_usd=command.max_cost_usd,
                ),
            )
        return _render_outcome(outcome)

    def list_sessions(self, command: SessionListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            sessions = store.list_recent(limit=command.limit)

        lines = [f"Sessions: {len(sessions)}"]
        for session in sessions:
            lines.append(
                f"  {session.session_id} status={session.status.value} "
                f"updated_at={session.updated_at.isoformat()} query={_preview(session.query)}",
            )
        return lines

    def show_session(self, command: SessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            details = SessionService(store=store).details(command.session_id)

        session = details.session
        ledger = details.ledger
        lines = [
            f"Session: {session.session_id}",
            f"Query: {session.query}",
            f"Status: {session.status.value}",
            f"Created: {session.created_at.isoformat()}",
            f"Updated: {session.updated_at.isoformat()}",
            f"Steps used: {ledger.steps_used}",
            f"Estimated cost: ${ledger.cost_used_usd:.4f}",
            f"Plan version: {ledger.plan_version}",
            f"Last stop reason: {(ledger.last_outcome or {}).get('stop_reason', '-')}",
            f"History: {len(details.history)} item(s)",
        ]
        answer: str | None = None
        for item in details.history:
            lines.append(_history_line(item))
            if isinstance(item, MessageView) and item.role == MessageRole.ASSISTANT:
                answer = item.content
        if answer is not None:
            lines.extend(["", "Latest answer:", *answer.splitlines()])
        if session.status == SessionStatus.ACTIVE:
            lines.append(f"Resume with: fin-research resume {session.session_id}")
        return lines

    def delete_session(self, command: SessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            SessionService(store=store).delete(command.session_id)
        return [f"Session deleted: {command.session_id}"]

    def session_stats(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            stats = store.stats()
        return [
            f"Database: {settings.db_path}",
            f"Sessions: {stats.sessions}",
            f"Messages: {stats.messages}",
            f"Artifacts: {stats.artifacts}",
            f"Size: {stats.db_size_bytes} bytes",
        ]

    def vacuum(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            before = store.stats().db_size_bytes
            store.vacuum()
            after = store.stats().db_size_bytes
        return [f"Vacuum completed: size {before} -> {after} bytes"]

    def cache_stats(self, command: CacheCommand) -> list[str]:
        cache = _cache(command)
        stats = cache.stats()
        return [
            f"Cache directory: {cache.directory}",
            f"Entries: {stats.total} valid={stats.valid} expired={stats.expired}",
            f"Size: {stats.approx_size_bytes} bytes",
            f"TTL: {cache.ttl_seconds}s",
        ]

    def cache_clear(self, command: CacheCommand) -> list[str]:
        cleared = _cache(command).purge_all()
        return [f"Cache cleared: {cleared} entr{'y' if cleared == 1 else 'ies'} removed"]

    def cache_clean(self, command: CacheCommand) -> list[str]:
        cleared = _cache(command).purge_expired()
        return [f"Cache cleaned: {cleared} expired entr{'y' if cleared == 1 else 'ies'} removed"]

    def model_show(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            choice = PreferenceService(store=store, settings=settings).model()
        return [f"Synthesis agent: {choice.agent} model={choice.model or '-'} ({choice.source})"]

    def model_set(self, command: ModelSetCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            choice = PreferenceService(store=store, settings=settings).set_model(
                agent=command.agent,
                model=command.model,
            )
        return [f"Synthesis agent saved: {choice.agent} model={choice.model or '-'}"]

    def provider_show(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            choice = PreferenceService(store=store, settings=settings).provider()
        return [f"Financial data provider: {choice.provider} ({choice.source})"]

    def provider_set(self, command: ProviderSetCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            choice = PreferenceService(store=store, settings=settings).set_provider(
                command.provider,
            )
        return [f"Financial data provider saved: {choice.provider}"]


def _render_outcome(outcome: LoopOutcome) -> ResearchRunResult:
    summary = (
        f"Session: {outcome.session_id} stop_reason={outcome.stop_reason.value} "
        f"steps={outcome.steps_used} cost_usd={outcome.cost_used_usd:.4f}"
    )
    answer = outcome.answer
    if answer is None:
        return ResearchRunResult(
            lines=[
                f"Research stopped without a complete answer: {outcome.error or 'unknown reason'}",
                summary,
            ],
            success=False,
        )
    lines = [*answer.text.splitlines(), "", summary]
    if answer.interrupted:
        lines.append(f"Interrupted; resume with: fin-research resume {outcome.session_id}")
    elif answer.partial:
        lines.append("Answer is partial: some data could not be gathered.")
    return ResearchRunResult(lines=lines, success=True)


def _history_line(item: MessageView | ArtifactView) -> str:
    stamp = item.timestamp.isoformat()
    if isinstance(item, ArtifactView):
        return f"  {stamp} artifact source={item.source}"
    event = decode_event(item.content) if item.role == MessageRole.SYSTEM else None
    if event is None:
        return f"  {stamp} {item.role.value}: {_preview(item.content)}"
    kind = event.get("event")
    if kind == "plan":
        return f"  {stamp} plan v{event.get('version')} tasks={len(event.get('tasks') or [])}"
    if kind == "dispatch":
        return f"  {stamp} dispatch {event.get('task_id')} {event.get('capability')}"
    if kind == "verdict":
        reason = f" ({event['reason']})" if event.get("reason") else ""
        return f"  {stamp} verdict {event.get('task_id')} {event.get('verdict')}{reason}"
    return f"  {stamp} outcome {event.get('stop_reason')}"


def _preview(text: str) -> str:
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    if len(first_line) > _PREVIEW_CHARS:
        return first_line[: _PREVIEW_CHARS - 3] + "..."
    return first_line


def _cache(command: CacheCommand) -> ResponseCache:
    settings = Settings.from_env()
    directory = command.cache_dir or settings.cache.directory
    return ResponseCache(directory, ttl_seconds=settings.cache.ttl_seconds)


@contextmanager
def _signal_handlers(cancel_event: threading.Event) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cancellation request for the running loop."""

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        if cancel_event.is_set():
            logger.warning("Received %s again; still waiting for in-flight calls", name)
            return
        logger.warning("Received %s; stopping after the current wave", name)
        cancel_event.set()

    installed = False
    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        installed = True
    except ValueError:
        # Signal handlers can only be installed in main thread.
        pass
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


@contextmanager
def _store(settings: Settings) -> Iterator[SessionStore]:
    store = SessionStore(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        lease_stale_seconds=settings.loop.lease_stale_seconds,
    )
    try:
        store.init_schema()
        yield store
    finally:
        store.close()
