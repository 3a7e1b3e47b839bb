"""Controllers for fly-agent CLI commands."""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from fly_agent.config import Settings
from fly_agent.pipeline import AgentJob, JobResult, JobRunner, job_for_ticket
from fly_agent.runtime.control import request_stop
from fly_agent.runtime.models import RunStatus
from fly_agent.storage.repository import ProgressRepository

AGENT_JOB_ENV = "AGENT_JOB"


@dataclass(slots=True)
class RunJobCommand:
    """CLI input for one clone-to-PR job."""

    db_path: Path | None
    job_file: Path | None
    ticket_id: str | None


@dataclass(slots=True)
class AddTicketCommand:
    """CLI input for registering a ticket locally."""

    db_path: Path | None
    title: str
    description: str
    repo_url: str
    branch_name: str


@dataclass(slots=True)
class RunRefCommand:
    """CLI input addressing one agent run."""

    db_path: Path | None
    run_id: str


@dataclass(slots=True)
class RunLogsCommand:
    """CLI input for progress log listing."""

    db_path: Path | None
    run_id: str
    limit: int | None


@dataclass(slots=True)
class RunOutcome:
    lines: list[str]
    success: bool


class AgentCliController:
    """Coordinates job execution, stop requests and run inspection."""

    def run_job(self, command: RunJobCommand) -> RunOutcome:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_job()
        with _repository(settings) as repository:
            job = _resolve_job(command, repository)
            result = JobRunner(settings=settings, repository=repository).run(job)
        return RunOutcome(lines=_result_lines(result), success=result.status == RunStatus.COMPLETE)

    def add_ticket(self, command: AddTicketCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            ticket = repository.create_ticket(
                title=command.title,
                description=command.description,
                repo_url=command.repo_url,
                branch_name=command.branch_name,
            )
        return [f"Ticket created: ticket_id={ticket.ticket_id} status={ticket.status}"]

    def stop(self, command: RunRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            requested = request_stop(repository, command.run_id)
        if not requested:
            return [f"Run already finished: {command.run_id}"]
        return [f"Stop requested: run_id={command.run_id}"]

    def status(self, command: RunRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            run = repository.get_run(command.run_id)
        if run is None:
            raise ValueError(f"Agent run not found: {command.run_id}")
        lines = [
            f"Run: run_id={run.run_id} ticket_id={run.ticket_id} status={run.status.value}",
            f"Started: {run.started_at.isoformat()}",
        ]
        if run.finished_at is not None:
            lines.append(f"Finished: {run.finished_at.isoformat()}")
        if run.branch_name:
            pushed = " (pushed)" if run.pushed_at is not None else ""
            lines.append(f"Branch: {run.branch_name}{pushed}")
        if run.pr_url:
            lines.append(f"PR: {run.pr_url}")
        if run.error:
            lines.append(f"Error: {run.error}")
        return lines

    def logs(self, command: RunLogsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            entries = repository.list_log_entries(command.run_id, limit=command.limit)
        if not entries:
            return [f"No progress entries for run: {command.run_id}"]
        return [
            f"{entry.timestamp.strftime('%H:%M:%S')} [{entry.kind.value}] {entry.message}"
            for entry in entries
        ]


def _resolve_job(command: RunJobCommand, repository: ProgressRepository) -> AgentJob:
    if command.ticket_id:
        return job_for_ticket(repository, command.ticket_id)
    if command.job_file is not None:
        return AgentJob.from_file(command.job_file)
    raw = os.getenv(AGENT_JOB_ENV)
    if not raw:
        raise ValueError(
            f"No job given: pass --ticket-id, --job-file or set {AGENT_JOB_ENV}.",
        )
    return AgentJob.from_json(raw)


def _result_lines(result: JobResult) -> list[str]:
    lines = [
        f"Run finished: run_id={result.run_id} status={result.status.value} "
        f"branch={result.branch_name}",
    ]
    if result.pr_url:
        lines.append(f"PR: {result.pr_url}")
    if result.error:
        lines.append(f"Error: {result.error}")
    return lines


@contextmanager
def _repository(settings: Settings) -> Iterator[ProgressRepository]:
    repository = ProgressRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
