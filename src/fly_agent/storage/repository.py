"""Progress and run-status persistence backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from fly_agent.runtime.models import ProgressEntry, ProgressKind, RunControlState, RunStatus
from fly_agent.storage.alembic_runner import upgrade_head
from fly_agent.storage.common import build_sqlite_engine, ensure_utc, utc_now
from fly_agent.storage.sqlmodel_models import AgentRun, ProgressLog, Ticket

logger = logging.getLogger(__name__)


class TicketStatus(str, Enum):
    """Ticket board columns the pipeline moves a ticket between."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"


@dataclass(slots=True)
class TicketView:
    ticket_id: str
    title: str
    description: str
    repo_url: str
    branch_name: str
    status: str
    pr_url: str | None


@dataclass(slots=True)
class AgentRunView:
    run_id: str
    ticket_id: str
    status: RunStatus
    error: str | None
    branch_name: str | None
    pr_url: str | None
    pushed_at: datetime | None
    started_at: datetime
    finished_at: datetime | None


class ProgressRepository:
    """Store for tickets, runs and the append-only progress log."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_ticket(  # noqa: PLR0913
        self,
        *,
        title: str,
        description: str,
        repo_url: str,
        branch_name: str,
        ticket_id: str | None = None,
        status: TicketStatus = TicketStatus.QUEUED,
    ) -> TicketView:
        now = utc_now()
        row = Ticket(
            id=ticket_id or str(uuid4()),
            title=title,
            description=description,
            repo_url=repo_url,
            branch_name=branch_name,
            status=status.value,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _ticket_view(row)

    def get_ticket(self, ticket_id: str) -> TicketView | None:
        with Session(self.engine) as session:
            row = session.get(Ticket, ticket_id)
            return _ticket_view(row) if row is not None else None

    def update_ticket_status(
        self,
        ticket_id: str,
        status: TicketStatus,
        *,
        pr_url: str | None = None,
    ) -> None:
        with Session(self.engine) as session:
            row = session.get(Ticket, ticket_id)
            if row is None:
                logger.warning("Ticket not found for status update: %s", ticket_id)
                return
            row.status = status.value
            if pr_url:
                row.pr_url = pr_url
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def create_run(
        self,
        *,
        ticket_id: str,
        run_id: str | None = None,
        status: RunStatus = RunStatus.QUEUED,
    ) -> AgentRunView:
        row = AgentRun(
            id=run_id or str(uuid4()),
            ticket_id=ticket_id,
            status=status.value,
            started_at=utc_now(),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _run_view(row)

    def get_run(self, run_id: str) -> AgentRunView | None:
        with Session(self.engine) as session:
            row = session.get(AgentRun, run_id)
            return _run_view(row) if row is not None else None

    def latest_run_for_ticket(self, ticket_id: str) -> AgentRunView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(AgentRun)
                .where(AgentRun.ticket_id == ticket_id)
                .order_by(col(AgentRun.started_at).desc())
                .limit(1),
            ).first()
            return _run_view(row) if row is not None else None

    def read_run_status(self, run_id: str) -> RunControlState | None:
        with Session(self.engine) as session:
            row = session.get(AgentRun, run_id)
            if row is None:
                return None
            return RunControlState(status=RunStatus(row.status), error=row.error)

    def write_run_status(
        self,
        run_id: str,
        state: RunControlState,
        *,
        pr_url: str | None = None,
    ) -> None:
        with Session(self.engine) as session:
            row = session.get(AgentRun, run_id)
            if row is None:
                logger.warning("Agent run not found for status update: %s", run_id)
                return
            row.status = state.status.value
            row.finished_at = None if state.status == RunStatus.RUNNING else utc_now()
            if state.error:
                row.error = state.error
            if pr_url:
                row.pr_url = pr_url
            session.add(row)
            session.commit()

    def transition_run_status(
        self,
        run_id: str,
        state: RunControlState,
        *,
        from_statuses: Iterable[RunStatus],
    ) -> bool:
        """Write ``state`` only if the run is currently in one of ``from_statuses``."""

        values: dict[str, Any] = {
            "status": state.status.value,
            "finished_at": None if state.status == RunStatus.RUNNING else utc_now(),
        }
        if state.error:
            values["error"] = state.error
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentRun)
                .where(
                    col(AgentRun.id) == run_id,
                    col(AgentRun.status).in_([status.value for status in from_statuses]),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def update_run_branch(self, run_id: str, branch_name: str) -> None:
        with Session(self.engine) as session:
            row = session.get(AgentRun, run_id)
            if row is None:
                logger.warning("Agent run not found for branch update: %s", run_id)
                return
            row.branch_name = branch_name
            session.add(row)
            session.commit()

    def mark_run_pushed(self, run_id: str, branch_name: str) -> None:
        with Session(self.engine) as session:
            row = session.get(AgentRun, run_id)
            if row is None:
                logger.warning("Agent run not found for push marker: %s", run_id)
                return
            row.branch_name = branch_name
            row.pushed_at = utc_now()
            session.add(row)
            session.commit()

    def append_log_entry(self, entry: ProgressEntry) -> None:
        """Persist one progress entry; storage errors are logged, never raised."""

        row = ProgressLog(
            agent_run_id=entry.run_id,
            ticket_id=entry.correlation_id,
            type=entry.kind.value,
            message=entry.message,
            metadata_json=json.dumps(entry.metadata, ensure_ascii=False, default=str),
            created_at=entry.timestamp,
        )
        try:
            with Session(self.engine) as session:
                session.add(row)
                session.commit()
        except SQLAlchemyError:
            logger.exception(
                "Failed to log progress: run_id=%s kind=%s",
                entry.run_id,
                entry.kind.value,
            )

    def list_log_entries(self, run_id: str, *, limit: int | None = None) -> list[ProgressEntry]:
        with Session(self.engine) as session:
            statement = (
                select(ProgressLog)
                .where(ProgressLog.agent_run_id == run_id)
                .order_by(col(ProgressLog.id))
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [
            ProgressEntry(
                run_id=row.agent_run_id,
                correlation_id=row.ticket_id,
                kind=ProgressKind(row.type),
                message=row.message,
                metadata=_load_metadata(row.metadata_json),
                timestamp=ensure_utc(row.created_at),
            )
            for row in rows
        ]


def _load_metadata(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _ticket_view(row: Ticket) -> TicketView:
    return TicketView(
        ticket_id=row.id,
        title=row.title,
        description=row.description,
        repo_url=row.repo_url,
        branch_name=row.branch_name,
        status=row.status,
        pr_url=row.pr_url,
    )


def _run_view(row: AgentRun) -> AgentRunView:
    return AgentRunView(
        run_id=row.id,
        ticket_id=row.ticket_id,
        status=RunStatus(row.status),
        error=row.error,
        branch_name=row.branch_name,
        pr_url=row.pr_url,
        pushed_at=ensure_utc(row.pushed_at) if row.pushed_at is not None else None,
        started_at=ensure_utc(row.started_at),
        finished_at=ensure_utc(row.finished_at) if row.finished_at is not None else None,
    )
