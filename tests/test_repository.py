from __future__ import annotations

from pathlib import Path

import allure
import pytest
from sqlalchemy import text

from fly_agent.runtime.control import STOPPED_BY_USER, request_stop
from fly_agent.runtime.models import ProgressEntry, ProgressKind, RunControlState, RunStatus
from fly_agent.storage.repository import ProgressRepository, TicketStatus

pytestmark = [
    allure.epic("Persistence"),
    allure.feature("Progress Store"),
]


@pytest.fixture()
def repository(tmp_path: Path):
    repository = ProgressRepository(tmp_path / "agent.db")
    repository.init_schema()
    yield repository
    repository.close()


def _seed(repository: ProgressRepository) -> tuple[str, str]:
    ticket = repository.create_ticket(
        title="Fix test",
        description="Parser fails on empty input",
        repo_url="https://github.com/acme/widgets",
        branch_name="fix-parser",
    )
    run = repository.create_run(ticket_id=ticket.ticket_id)
    return ticket.ticket_id, run.run_id


def test_schema_is_migrated_to_head(repository: ProgressRepository) -> None:
    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = {
            row[0]
            for row in connection.execute(
                text("SELECT name FROM sqlite_master WHERE type = 'table'"),
            )
        }

    assert version == "20261019_0001"
    assert {"tickets", "agent_runs", "progress_logs"} <= tables


def test_ticket_and_run_lifecycle(repository: ProgressRepository) -> None:
    ticket_id, run_id = _seed(repository)

    run = repository.get_run(run_id)
    assert run is not None
    assert run.status == RunStatus.QUEUED
    assert run.finished_at is None

    repository.write_run_status(run_id, RunControlState(status=RunStatus.RUNNING))
    repository.update_run_branch(run_id, "fix-parser-abcd1234")
    repository.mark_run_pushed(run_id, "fix-parser-abcd1234")
    repository.write_run_status(
        run_id,
        RunControlState(status=RunStatus.COMPLETE),
        pr_url="https://github.com/acme/widgets/pull/7",
    )
    repository.update_ticket_status(
        ticket_id,
        TicketStatus.REVIEW,
        pr_url="https://github.com/acme/widgets/pull/7",
    )

    run = repository.get_run(run_id)
    ticket = repository.get_ticket(ticket_id)
    assert run is not None
    assert ticket is not None
    assert run.status == RunStatus.COMPLETE
    assert run.branch_name == "fix-parser-abcd1234"
    assert run.pushed_at is not None
    assert run.finished_at is not None
    assert run.pr_url == "https://github.com/acme/widgets/pull/7"
    assert ticket.status == "review"
    assert ticket.pr_url == "https://github.com/acme/widgets/pull/7"
    assert repository.latest_run_for_ticket(ticket_id).run_id == run_id


def test_read_run_status_reports_stop_request(repository: ProgressRepository) -> None:
    _, run_id = _seed(repository)
    repository.write_run_status(
        run_id,
        RunControlState(status=RunStatus.FAILED, error=STOPPED_BY_USER),
    )

    assert repository.read_run_status(run_id) == RunControlState(
        status=RunStatus.FAILED,
        error=STOPPED_BY_USER,
    )
    assert repository.read_run_status("missing") is None


def test_stop_request_does_not_overwrite_finished_run(repository: ProgressRepository) -> None:
    _, run_id = _seed(repository)
    repository.write_run_status(run_id, RunControlState(status=RunStatus.COMPLETE))

    assert request_stop(repository, run_id) is False
    assert repository.read_run_status(run_id) == RunControlState(status=RunStatus.COMPLETE)


def test_stop_request_marks_active_run(repository: ProgressRepository) -> None:
    _, run_id = _seed(repository)

    assert request_stop(repository, run_id) is True

    run = repository.get_run(run_id)
    assert run is not None
    assert run.status == RunStatus.FAILED
    assert run.error == STOPPED_BY_USER
    assert run.finished_at is not None
    assert repository.transition_run_status(
        "missing",
        RunControlState(status=RunStatus.RUNNING),
        from_statuses=(RunStatus.QUEUED,),
    ) is False


def test_log_entries_keep_order_and_metadata(repository: ProgressRepository) -> None:
    ticket_id, run_id = _seed(repository)
    for kind, message, metadata in (
        (ProgressKind.STARTED, "Agent starting for: Fix test", {}),
        (ProgressKind.CHANGES, "src/app.go (+3/-1)", {"file": "src/app.go", "additions": 3}),
        (ProgressKind.COMPLETE, "PR created", {"pr_url": "https://example.test/pr/1"}),
    ):
        repository.append_log_entry(
            ProgressEntry(
                run_id=run_id,
                correlation_id=ticket_id,
                kind=kind,
                message=message,
                metadata=metadata,
            ),
        )

    entries = repository.list_log_entries(run_id)
    limited = repository.list_log_entries(run_id, limit=1)

    assert [entry.kind for entry in entries] == [
        ProgressKind.STARTED,
        ProgressKind.CHANGES,
        ProgressKind.COMPLETE,
    ]
    assert entries[1].metadata == {"file": "src/app.go", "additions": 3}
    assert entries[0].timestamp.tzinfo is not None
    assert [entry.message for entry in limited] == ["Agent starting for: Fix test"]


def test_append_for_unknown_run_is_swallowed(repository: ProgressRepository) -> None:
    repository.append_log_entry(
        ProgressEntry(
            run_id="no-such-run",
            correlation_id="no-such-ticket",
            kind=ProgressKind.ACTION,
            message="dropped",
        ),
    )

    assert repository.list_log_entries("no-such-run") == []


def test_updates_for_unknown_rows_are_ignored(repository: ProgressRepository) -> None:
    repository.write_run_status("missing", RunControlState(status=RunStatus.COMPLETE))
    repository.update_ticket_status("missing", TicketStatus.REVIEW)

    assert repository.get_run("missing") is None
    assert repository.get_ticket("missing") is None
