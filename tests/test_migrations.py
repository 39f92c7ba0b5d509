from pathlib import Path

import allure
from sqlalchemy import text

from fin_research.research.store import SessionStore

pytestmark = [
    allure.epic("Session Store"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "migrations.db")
    store.init_schema()
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('sessions', 'messages', 'research_artifacts', 'preferences')
                ORDER BY name
                """,
            ),
        ).scalars().all()
        lease_columns = [
            row[1] for row in connection.execute(text("PRAGMA table_info(sessions)")).fetchall()
        ]
    store.close()

    assert version == "20261001_0003"
    assert tables == ["messages", "preferences", "research_artifacts", "sessions"]
    assert "lease_owner" in lease_columns
    assert "lease_heartbeat_at" in lease_columns


def test_init_schema_creates_missing_parent_directory(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "dir" / "research.db"
    store = SessionStore(db_path)
    store.init_schema()
    store.close()

    assert db_path.exists()
