"""Durable session store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from alembic.util.exc import CommandError
from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from fin_research.research.errors import (
    PersistenceError,
    SessionBusyError,
    SessionNotFoundError,
)
from fin_research.research.models import (
    ArtifactView,
    HistoryItem,
    MessageRole,
    MessageView,
    SessionStatus,
    SessionView,
)
from fin_research.storage.alembic_runner import upgrade_head
from fin_research.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from fin_research.storage.sqlmodel_models import (
    Preference,
    ResearchArtifactRow,
    ResearchSession,
    SessionMessage,
)

logger = logging.getLogger(__name__)

_TIMESTAMP_STEP = timedelta(microseconds=1)


@dataclass(slots=True)
class StoreStats:
    sessions: int
    messages: int
    artifacts: int
    db_size_bytes: int


class SessionStore:
    """Persistence facade for sessions, messages, artifacts, and preferences.

    Every write commits before returning. Appends for one session are
    serialized and receive strictly increasing timestamps, so history replay
    order is deterministic.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        lease_stale_seconds: int = 1_800,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.lease_stale_seconds = lease_stale_seconds
        self._clock = clock
        self._write_lock = threading.Lock()
        self._leased_here: set[str] = set()
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create the database directory and apply migrations."""

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            upgrade_head(self.db_path)
        except (OSError, SQLAlchemyError, CommandError) as error:
            raise PersistenceError(f"Cannot initialize session store at {self.db_path}: {error}") from error

    def create_session(self, query: str) -> SessionView:
        now = self._clock()
        session_id = f"{to_db_datetime(now):%Y%m%dT%H%M%S%f}-{uuid4().hex[:8]}"
        with self._write_lock, self._db("create session") as session:
            row = ResearchSession(
                id=session_id,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
                status=SessionStatus.ACTIVE.value,
                query=query,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_session_view(row)

    def get_session(self, session_id: str) -> SessionView:
        with self._db("load session") as session:
            return _to_session_view(self._session_row(session, session_id))

    def list_recent(self, limit: int = 20) -> list[SessionView]:
        """Sessions newest first."""

        with self._db("list sessions") as session:
            rows = session.exec(
                select(ResearchSession)
                .order_by(col(ResearchSession.created_at).desc(), col(ResearchSession.id).desc())
                .limit(max(1, limit)),
            ).all()
            return [_to_session_view(row) for row in rows]

    def update_status(self, session_id: str, status: SessionStatus) -> None:
        with self._write_lock, self._db("update session status") as session:
            result = session.exec(
                sa_update(ResearchSession)
                .where(col(ResearchSession.id) == session_id)
                .values(status=status.value, updated_at=to_db_datetime(self._clock())),
            )
            if result.rowcount != 1:
                session.rollback()
                raise SessionNotFoundError(session_id)
            session.commit()

    def append_message(self, session_id: str, role: MessageRole, content: str) -> MessageView:
        with self._write_lock, self._db("append message") as session:
            parent = self._session_row(session, session_id)
            timestamp = self._next_timestamp(session, session_id)
            row = SessionMessage(
                id=uuid4().hex,
                session_id=session_id,
                role=role.value,
                content=content,
                timestamp=timestamp,
            )
            session.add(row)
            parent.updated_at = timestamp
            session.add(parent)
            session.commit()
            session.refresh(row)
            return _to_message_view(row)

    def append_artifact(
        self,
        session_id: str,
        payload: dict[str, Any],
        source: str,
    ) -> ArtifactView:
        data_json = json.dumps(payload, ensure_ascii=False, default=str)
        with self._write_lock, self._db("append artifact") as session:
            parent = self._session_row(session, session_id)
            timestamp = self._next_timestamp(session, session_id)
            row = ResearchArtifactRow(
                id=uuid4().hex,
                session_id=session_id,
                data_json=data_json,
                source=source,
                timestamp=timestamp,
            )
            session.add(row)
            parent.updated_at = timestamp
            session.add(parent)
            session.commit()
            session.refresh(row)
            return _to_artifact_view(row)

    def load_history(self, session_id: str) -> list[HistoryItem]:
        """Messages and artifacts of one session in append order."""

        with self._db("load history") as session:
            self._session_row(session, session_id)
            messages = session.exec(
                select(SessionMessage)
                .where(SessionMessage.session_id == session_id)
                .order_by(col(SessionMessage.timestamp).asc()),
            ).all()
            artifacts = session.exec(
                select(ResearchArtifactRow)
                .where(ResearchArtifactRow.session_id == session_id)
                .order_by(col(ResearchArtifactRow.timestamp).asc()),
            ).all()
            keyed: list[tuple[datetime, int, HistoryItem]] = [
                (row.timestamp, 0, _to_message_view(row)) for row in messages
            ]
            keyed.extend((row.timestamp, 1, _to_artifact_view(row)) for row in artifacts)
            keyed.sort(key=lambda item: (item[0], item[1]))
            return [item for _, _, item in keyed]

    def delete_session(self, session_id: str) -> None:
        """Delete one session with its messages and artifacts."""

        with self._write_lock, self._db("delete session") as session:
            row = self._session_row(session, session_id)
            session.delete(row)
            session.commit()

    def stats(self) -> StoreStats:
        with self._db("collect stats") as session:
            sessions = session.exec(select(func.count()).select_from(ResearchSession)).one()
            messages = session.exec(select(func.count()).select_from(SessionMessage)).one()
            artifacts = session.exec(select(func.count()).select_from(ResearchArtifactRow)).one()
        try:
            size = self.db_path.stat().st_size
        except OSError:
            size = 0
        return StoreStats(
            sessions=int(sessions),
            messages=int(messages),
            artifacts=int(artifacts),
            db_size_bytes=size,
        )

    def vacuum(self) -> None:
        try:
            with self.engine.connect().execution_options(isolation_level="AUTOCOMMIT") as connection:
                connection.exec_driver_sql("VACUUM")
        except SQLAlchemyError as error:
            raise PersistenceError(f"Failed to vacuum database: {error}") from error

    def acquire_loop_lease(self, session_id: str, owner: str) -> None:
        """Claim the single-writer lease for one session or raise SessionBusyError."""

        now = self._clock()
        stale_before = to_db_datetime(now - timedelta(seconds=self.lease_stale_seconds))
        with self._write_lock:
            if session_id in self._leased_here:
                raise SessionBusyError(session_id, owner="this process")
            with self._db("acquire loop lease") as session:
                current = self._session_row(session, session_id)
                previous_owner = current.lease_owner
                result = session.exec(
                    sa_update(ResearchSession)
                    .where(
                        col(ResearchSession.id) == session_id,
                        or_(
                            col(ResearchSession.lease_owner).is_(None),
                            col(ResearchSession.lease_owner) == owner,
                            col(ResearchSession.lease_heartbeat_at) < stale_before,
                        ),
                    )
                    .values(lease_owner=owner, lease_heartbeat_at=to_db_datetime(now)),
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise SessionBusyError(session_id, owner=previous_owner)
                session.commit()
            self._leased_here.add(session_id)
        if previous_owner not in (None, owner):
            logger.warning(
                "Reclaimed stale loop lease on session %s from %s",
                session_id,
                previous_owner,
            )

    def touch_loop_lease(self, session_id: str, owner: str) -> None:
        with self._write_lock, self._db("refresh loop lease") as session:
            session.exec(
                sa_update(ResearchSession)
                .where(
                    col(ResearchSession.id) == session_id,
                    col(ResearchSession.lease_owner) == owner,
                )
                .values(lease_heartbeat_at=to_db_datetime(self._clock())),
            )
            session.commit()

    def release_loop_lease(self, session_id: str, owner: str) -> None:
        with self._write_lock:
            self._leased_here.discard(session_id)
            with self._db("release loop lease") as session:
                session.exec(
                    sa_update(ResearchSession)
                    .where(
                        col(ResearchSession.id) == session_id,
                        col(ResearchSession.lease_owner) == owner,
                    )
                    .values(lease_owner=None, lease_heartbeat_at=None),
                )
                session.commit()

    def get_preference(self, key: str) -> str | None:
        with self._db("read preference") as session:
            row = session.get(Preference, key)
            return row.value if row is not None else None

    def set_preference(self, key: str, value: str) -> None:
        with self._write_lock, self._db("write preference") as session:
            row = session.get(Preference, key)
            now = to_db_datetime(self._clock())
            if row is None:
                row = Preference(key=key, value=value, updated_at=now)
            else:
                row.value = value
                row.updated_at = now
            session.add(row)
            session.commit()

    @contextmanager
    def _db(self, action: str) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise PersistenceError(f"Failed to {action}: {error}") from error

    def _session_row(self, session: Session, session_id: str) -> ResearchSession:
        row = session.get(ResearchSession, session_id)
        if row is None:
            raise SessionNotFoundError(session_id)
        return row

    def _next_timestamp(self, session: Session, session_id: str) -> datetime:
        candidate = to_db_datetime(self._clock())
        latest_message = session.exec(
            select(func.max(SessionMessage.timestamp)).where(SessionMessage.session_id == session_id),
        ).one()
        latest_artifact = session.exec(
            select(func.max(ResearchArtifactRow.timestamp)).where(
                ResearchArtifactRow.session_id == session_id,
            ),
        ).one()
        for latest in (latest_message, latest_artifact):
            if latest is None:
                continue
            latest = to_db_datetime(_as_datetime(latest))
            if candidate <= latest:
                candidate = latest + _TIMESTAMP_STEP
        return candidate


def _as_datetime(value: datetime | str) -> datetime:
    # SQLite may hand back the raw stored string.
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _to_session_view(row: ResearchSession) -> SessionView:
    return SessionView(
        session_id=row.id,
        query=row.query,
        status=SessionStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_message_view(row: SessionMessage) -> MessageView:
    return MessageView(
        message_id=row.id,
        session_id=row.session_id,
        role=MessageRole(row.role),
        content=row.content,
        timestamp=to_utc_aware_datetime(row.timestamp),
    )


def _to_artifact_view(row: ResearchArtifactRow) -> ArtifactView:
    try:
        payload = json.loads(row.data_json)
    except ValueError:
        payload = {}
    return ArtifactView(
        artifact_id=row.id,
        session_id=row.session_id,
        payload=payload if isinstance(payload, dict) else {"data": payload},
        source=row.source,
        timestamp=to_utc_aware_datetime(row.timestamp),
    )
