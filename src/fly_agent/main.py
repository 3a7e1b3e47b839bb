"""CLI entrypoint for fly-agent."""

import logging
from pathlib import Path

import rich_click as click

from fly_agent import __version__
from fly_agent.controllers import (
    AddTicketCommand,
    AgentCliController,
    RunJobCommand,
    RunLogsCommand,
    RunRefCommand,
)

click.rich_click.USE_MARKDOWN = True
AGENT_CONTROLLER = AgentCliController()


@click.group()
@click.version_option(version=__version__, prog_name="fly-agent")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def fly_agent(verbose: bool) -> None:
    """Run coding-agent jobs against an embedded opencode server."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@fly_agent.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--job-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON file describing the job. Defaults to the `AGENT_JOB` variable.",
)
@click.option("--ticket-id", default=None, help="Start a new run for a stored ticket.")
def run_job(db_path: Path | None, job_file: Path | None, ticket_id: str | None) -> None:
    """Clone, run the agent, push and open a pull request."""

    try:
        result = AGENT_CONTROLLER.run_job(
            RunJobCommand(db_path=db_path, job_file=job_file, ticket_id=ticket_id),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Agent run failed.")


@fly_agent.command("add-ticket")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--title", required=True, help="Ticket title.")
@click.option("--description", default="", help="Ticket description handed to the agent.")
@click.option("--repo-url", required=True, help="GitHub repository URL.")
@click.option("--branch", "branch_name", required=True, help="Base name for the run branch.")
def add_ticket(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    description: str,
    repo_url: str,
    branch_name: str,
) -> None:
    """Register a ticket so `run --ticket-id` can pick it up."""

    _emit_lines(
        AGENT_CONTROLLER.add_ticket(
            AddTicketCommand(
                db_path=db_path,
                title=title,
                description=description,
                repo_url=repo_url,
                branch_name=branch_name,
            ),
        ),
    )


@fly_agent.command("stop")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("run_id")
def stop_run(db_path: Path | None, run_id: str) -> None:
    """Ask a running job to stop."""

    try:
        lines = AGENT_CONTROLLER.stop(RunRefCommand(db_path=db_path, run_id=run_id))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@fly_agent.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("run_id")
def run_status(db_path: Path | None, run_id: str) -> None:
    """Show status, branch and PR of one run."""

    try:
        lines = AGENT_CONTROLLER.status(RunRefCommand(db_path=db_path, run_id=run_id))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@fly_agent.command("logs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Show at most this many entries.",
)
@click.argument("run_id")
def run_logs(db_path: Path | None, limit: int | None, run_id: str) -> None:
    """Print the progress log of one run."""

    _emit_lines(
        AGENT_CONTROLLER.logs(RunLogsCommand(db_path=db_path, run_id=run_id, limit=limit)),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    fly_agent()
