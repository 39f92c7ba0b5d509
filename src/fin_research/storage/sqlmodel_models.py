"""SQLModel ORM tables for research session storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class ResearchSession(SQLModel, table=True):
    __tablename__ = "sessions"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    status: str = Field(default="active", index=True)
    query: str = Field(sa_column=Column(Text, nullable=False))
    lease_owner: str | None = None
    lease_heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class SessionMessage(SQLModel, table=True):
    __tablename__ = "messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_messages_session_timestamp", "session_id", "timestamp"),)

    id: str = Field(primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    role: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ResearchArtifactRow(SQLModel, table=True):
    __tablename__ = "research_artifacts"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_research_artifacts_session_timestamp", "session_id", "timestamp"),
    )

    id: str = Field(primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    data_json: str = Field(sa_column=Column(Text, nullable=False))
    source: str = Field(sa_column=Column(Text, nullable=False))
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Preference(SQLModel, table=True):
    __tablename__ = "preferences"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
