"""Clone-to-pull-request job around one supervised agent run."""

from __future__ import annotations

import json
import logging
import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fly_agent.config import Settings
from fly_agent.opencode import HttpClientConfig, OpencodeClient, OpencodeServer, ServerConfig
from fly_agent.runtime.control import STOPPED_BY_USER, StopSignal, is_stop_request
from fly_agent.runtime.errors import RunStopped
from fly_agent.runtime.models import ProgressEntry, ProgressKind, RunControlState, RunStatus
from fly_agent.runtime.progress import record_progress
from fly_agent.runtime.supervisor import RunRequest, RunSupervisor, SupervisorOptions
from fly_agent.storage.repository import ProgressRepository, TicketStatus
from fly_agent.vcs.git import GitCommandError, GitWorkspace
from fly_agent.vcs.github import GithubClient, authenticated_clone_url, pull_request_body

logger = logging.getLogger(__name__)

ERROR_JSON_MAX_CHARS = 500

_JOB_FIELDS = {
    "ticket_id": "ticketId",
    "agent_run_id": "agentRunId",
    "repo_url": "repoUrl",
    "branch_name": "branchName",
    "title": "title",
    "description": "description",
}


@dataclass(slots=True)
class AgentJob:
    """Unit of work handed to the runner by the dispatcher."""

    ticket_id: str
    agent_run_id: str
    repo_url: str
    branch_name: str
    title: str
    description: str

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> AgentJob:
        """Accept both snake_case and the dispatcher's camelCase keys."""

        values: dict[str, str] = {}
        missing: list[str] = []
        for name, camel in _JOB_FIELDS.items():
            value = payload.get(name, payload.get(camel))
            if value is None or (name != "description" and not str(value).strip()):
                missing.append(name)
                continue
            values[name] = str(value)
        if missing:
            raise ValueError(f"Agent job is missing fields: {', '.join(missing)}")
        return cls(**values)

    @classmethod
    def from_json(cls, raw: str) -> AgentJob:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as error:
            raise ValueError(f"Agent job is not valid JSON: {error}") from error
        if not isinstance(payload, dict):
            raise ValueError("Agent job must be a JSON object.")
        return cls.from_mapping(payload)

    @classmethod
    def from_file(cls, path: Path) -> AgentJob:
        return cls.from_json(path.read_text(encoding="utf-8"))

    @property
    def run_branch_name(self) -> str:
        return f"{self.branch_name}-{self.agent_run_id[:8]}"

    def workspace_path(self, root: Path) -> Path:
        return root / f"workspace-{self.ticket_id}"


@dataclass(slots=True)
class JobResult:
    run_id: str
    status: RunStatus
    branch_name: str
    pr_url: str | None = None
    error: str | None = None


def job_for_ticket(repository: ProgressRepository, ticket_id: str) -> AgentJob:
    """Create a fresh run for a stored ticket and describe it as a job."""

    ticket = repository.get_ticket(ticket_id)
    if ticket is None:
        raise ValueError(f"Ticket not found: {ticket_id}")
    run = repository.create_run(ticket_id=ticket.ticket_id)
    return AgentJob(
        ticket_id=ticket.ticket_id,
        agent_run_id=run.run_id,
        repo_url=ticket.repo_url,
        branch_name=ticket.branch_name,
        title=ticket.title,
        description=ticket.description,
    )


def describe_error(error: object) -> str:
    """Best human-readable reason for a failure, whatever was raised."""

    if error is None:
        return "Unknown error"
    if isinstance(error, BaseException):
        message = str(error) or type(error).__name__
        cause = error.__cause__
        if cause is not None:
            return f"{message}: {str(cause) or type(cause).__name__}"
        if isinstance(error, GitCommandError) and error.command:
            return f"{message} (command: {' '.join(error.command)})"
        return message
    if isinstance(error, str):
        return error
    if isinstance(error, Mapping):
        for key in ("message", "error"):
            value = error.get(key)
            if isinstance(value, str):
                return value
        try:
            rendered = json.dumps(error)
        except (TypeError, ValueError):
            return "Unknown error (non-serializable object)"
        if len(rendered) > ERROR_JSON_MAX_CHARS:
            return rendered[:ERROR_JSON_MAX_CHARS] + "..."
        return rendered
    return f"Unknown error: {error}"


SupervisorFactory = Callable[[AgentJob], RunSupervisor]
GithubFactory = Callable[[], GithubClient]
CloneFn = Callable[[str, Path], GitWorkspace]


class JobRunner:
    """Runs one job end to end and records every step in the progress log."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        repository: ProgressRepository,
        supervisor_factory: SupervisorFactory | None = None,
        github_factory: GithubFactory | None = None,
        clone: CloneFn = GitWorkspace.clone,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.supervisor_factory = supervisor_factory or self._default_supervisor
        self.github_factory = github_factory or self._default_github
        self.clone = clone

    def run(self, job: AgentJob) -> JobResult:
        branch = job.run_branch_name
        logger.info("Starting agent for ticket: %s", job.title)
        logger.info("Repo: %s, branch: %s", job.repo_url, branch)
        self._ensure_records(job)
        if is_stop_request(self.repository.read_run_status(job.agent_run_id)):
            logger.info("Run %s was stopped before it started", job.agent_run_id)
            return self._stopped(job, branch)
        self.repository.write_run_status(
            job.agent_run_id,
            RunControlState(status=RunStatus.RUNNING),
        )
        self.repository.update_ticket_status(job.ticket_id, TicketStatus.IN_PROGRESS)
        try:
            return self._run_steps(job, branch)
        except RunStopped as stopped:
            logger.info("Run %s stopped: %s", job.agent_run_id, stopped.reason)
            return self._stopped(job, branch)
        except Exception as error:  # noqa: BLE001
            message = describe_error(error)
            logger.error("Agent failed: %s", message, exc_info=True)
            self._log(job, ProgressKind.ERROR, message)
            self._finish_failed(job, message)
            return JobResult(
                run_id=job.agent_run_id,
                status=RunStatus.FAILED,
                branch_name=branch,
                error=message,
            )

    def _run_steps(self, job: AgentJob, branch: str) -> JobResult:
        self._log(job, ProgressKind.STARTED, f"Agent starting for: {job.title}")

        workspace_path = job.workspace_path(self.settings.git.workspace_root)
        shutil.rmtree(workspace_path, ignore_errors=True)

        self._log(job, ProgressKind.THINKING, "Cloning repository")
        workspace = self.clone(
            authenticated_clone_url(job.repo_url, self.settings.github.token),
            workspace_path,
        )
        workspace.configure_identity(
            name=self.settings.git.user_name,
            email=self.settings.git.user_email,
        )
        workspace.checkout_new_branch(branch)
        self.repository.update_run_branch(job.agent_run_id, branch)
        self._log(job, ProgressKind.ACTION, f"Created branch: {branch}")

        supervisor = self.supervisor_factory(job)
        supervisor.run(
            RunRequest(
                run_id=job.agent_run_id,
                correlation_id=job.ticket_id,
                workspace_path=str(workspace.path),
                title=job.title,
                description=job.description,
            ),
        )

        if not workspace.has_changes():
            self._log(job, ProgressKind.ACTION, "No changes needed")
            self.repository.write_run_status(
                job.agent_run_id,
                RunControlState(status=RunStatus.COMPLETE),
            )
            self.repository.update_ticket_status(job.ticket_id, TicketStatus.REVIEW)
            return JobResult(
                run_id=job.agent_run_id,
                status=RunStatus.COMPLETE,
                branch_name=branch,
            )

        workspace.commit_all(f"[ADD Agent] {job.title}\n\nAgent-Run-ID: {job.agent_run_id}")
        self._log(job, ProgressKind.ACTION, "Changes committed")

        self._log(job, ProgressKind.ACTION, f"Pushing to remote ({branch})")
        workspace.push(branch)
        self.repository.mark_run_pushed(job.agent_run_id, branch)

        self._log(job, ProgressKind.THINKING, "Creating pull request")
        with self.github_factory() as github:
            pr_url = github.create_pull_request(
                job.repo_url,
                head=branch,
                title=f"[ADD Agent] {job.title}",
                body=pull_request_body(description=job.description, run_id=job.agent_run_id),
            )
        logger.info("PR created: %s", pr_url)

        self._log(job, ProgressKind.COMPLETE, f"PR created: {pr_url}", {"pr_url": pr_url})
        self.repository.update_ticket_status(job.ticket_id, TicketStatus.REVIEW, pr_url=pr_url)
        self.repository.write_run_status(
            job.agent_run_id,
            RunControlState(status=RunStatus.COMPLETE),
            pr_url=pr_url,
        )
        return JobResult(
            run_id=job.agent_run_id,
            status=RunStatus.COMPLETE,
            branch_name=branch,
            pr_url=pr_url,
        )

    def _ensure_records(self, job: AgentJob) -> None:
        if self.repository.get_ticket(job.ticket_id) is None:
            self.repository.create_ticket(
                ticket_id=job.ticket_id,
                title=job.title,
                description=job.description,
                repo_url=job.repo_url,
                branch_name=job.branch_name,
            )
        if self.repository.get_run(job.agent_run_id) is None:
            self.repository.create_run(ticket_id=job.ticket_id, run_id=job.agent_run_id)

    def _stopped(self, job: AgentJob, branch: str) -> JobResult:
        self._log(job, ProgressKind.ERROR, STOPPED_BY_USER)
        self._finish_failed(job, STOPPED_BY_USER)
        return JobResult(
            run_id=job.agent_run_id,
            status=RunStatus.FAILED,
            branch_name=branch,
            error=STOPPED_BY_USER,
        )

    def _finish_failed(self, job: AgentJob, message: str) -> None:
        self.repository.write_run_status(
            job.agent_run_id,
            RunControlState(status=RunStatus.FAILED, error=message),
        )
        self.repository.update_ticket_status(job.ticket_id, TicketStatus.QUEUED)

    def _log(
        self,
        job: AgentJob,
        kind: ProgressKind,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        record_progress(
            self.repository,
            ProgressEntry(
                run_id=job.agent_run_id,
                correlation_id=job.ticket_id,
                kind=kind,
                message=message,
                metadata=metadata or {},
            ),
        )

    def _default_supervisor(self, job: AgentJob) -> RunSupervisor:
        http_config = HttpClientConfig.from_settings(self.settings.http)
        return RunSupervisor(
            server=OpencodeServer(ServerConfig.from_settings(self.settings.server)),
            client_factory=lambda url: OpencodeClient(url, config=http_config),
            sink=self.repository,
            stop_requested=StopSignal(self.repository, job.agent_run_id).requested,
            options=SupervisorOptions.from_settings(self.settings),
            install_signal_handlers=True,
        )

    def _default_github(self) -> GithubClient:
        return GithubClient(self.settings.github.token, api_url=self.settings.github.api_url)
