"""SQLModel ORM tables for tickets, agent runs and progress logs."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Text
from sqlmodel import Field, SQLModel


class Ticket(SQLModel, table=True):
    __tablename__ = "tickets"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    title: str
    description: str = Field(sa_column=Column(Text, nullable=False))
    repo_url: str
    branch_name: str
    status: str = Field(index=True)
    pr_url: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentRun(SQLModel, table=True):
    __tablename__ = "agent_runs"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    ticket_id: str = Field(
        sa_column=Column(
            ForeignKey("tickets.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    status: str = Field(index=True)
    error: str | None = Field(default=None, sa_column=Column(Text))
    branch_name: str | None = None
    pr_url: str | None = None
    pushed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class ProgressLog(SQLModel, table=True):
    __tablename__ = "progress_logs"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    agent_run_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_runs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    ticket_id: str = Field(index=True)
    type: str = Field(index=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    metadata_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
