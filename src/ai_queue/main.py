"""CLI entrypoint for ai-queue."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from ai_queue import __version__
from ai_queue.errors import AiQueueError
from ai_queue.queue.controllers import (
    CredentialAddCommand,
    CredentialListCommand,
    CredentialRemoveCommand,
    CredentialTestCommand,
    DeadLetterCommand,
    JobCommand,
    JobListCommand,
    JobSubmitCommand,
    QueueCliController,
    QueueCommand,
    SetBudgetCommand,
    UsageShowCommand,
    WorkerCommand,
)
from ai_queue.queue.models import JobKind, JobState

click.rich_click.USE_MARKDOWN = True
CONTROLLER = QueueCliController()

T = TypeVar("T")

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path. Defaults to AI_QUEUE_DB_PATH or .ai_queue.db.",
)


@click.group()
@click.version_option(version=__version__, prog_name="ai-queue")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for queue, worker and provider messages.",
)
def ai_queue(log_level: str) -> None:
    """Asynchronous AI inference job queue."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@ai_queue.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("submit")
@_DB_PATH_OPTION
@click.option(
    "--kind",
    type=click.Choice([kind.value for kind in JobKind], case_sensitive=False),
    required=True,
    help="Inference task kind.",
)
@click.option(
    "--payload",
    "payload_json",
    required=True,
    help='Job payload as a JSON object, for example `{"text": "..."}`.',
)
@click.option("--user-id", default=None, help="Owner of the job; omit for anonymous.")
@click.option(
    "--priority",
    type=int,
    default=100,
    show_default=True,
    help="Lower value runs first.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help=(
        "Queue-level attempt cap. Defaults to AI_QUEUE_MAX_ATTEMPTS. Each attempt may call "
        "the provider up to AI_QUEUE_RETRY_ATTEMPTS times."
    ),
)
@click.option(
    "--estimated-max-cost-cents",
    type=click.IntRange(min=0),
    default=None,
    help="Cost estimate used for budget checks.",
)
def jobs_submit(  # noqa: PLR0913
    db_path: Path | None,
    kind: str,
    payload_json: str,
    user_id: str | None,
    priority: int,
    max_attempts: int | None,
    estimated_max_cost_cents: int | None,
) -> None:
    """Validate and enqueue one inference job."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.submit(
                JobSubmitCommand(
                    db_path=db_path,
                    kind=kind.lower(),
                    payload_json=payload_json,
                    user_id=user_id,
                    priority=priority,
                    max_attempts=max_attempts,
                    estimated_max_cost_cents=estimated_max_cost_cents,
                ),
            ),
        ),
    )


@jobs.command("list")
@_DB_PATH_OPTION
@click.option(
    "--state",
    type=click.Choice([state.value for state in JobState], case_sensitive=False),
    default=None,
    help="Optional state filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(db_path: Path | None, state: str | None, limit: int) -> None:
    """List jobs, newest first."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.list_jobs(
                JobListCommand(db_path=db_path, state=state, limit=limit),
            ),
        ),
    )


@jobs.command("inspect")
@_DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Show job details, result and event history."""

    _emit_lines(_run(lambda: CONTROLLER.inspect(JobCommand(db_path=db_path, job_id=job_id))))


@jobs.command("failed")
@_DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max number of failed jobs to print.",
)
def jobs_failed(db_path: Path | None, limit: int) -> None:
    """List failed jobs with their failure class."""

    _emit_lines(_run(lambda: CONTROLLER.failed(QueueCommand(db_path=db_path, limit=limit))))


@jobs.command("remove")
@_DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
def jobs_remove(db_path: Path | None, job_id: str) -> None:
    """Remove a job, or request cancellation when it is active."""

    _emit_lines(_run(lambda: CONTROLLER.remove(JobCommand(db_path=db_path, job_id=job_id))))


@jobs.command("purge-failed")
@_DB_PATH_OPTION
def jobs_purge_failed(db_path: Path | None) -> None:
    """Delete all failed jobs."""

    _emit_lines(_run(lambda: CONTROLLER.purge_failed(QueueCommand(db_path=db_path))))


@jobs.command("dead-letter")
@_DB_PATH_OPTION
@click.option("--job-id", default=None, help="Failed job to move to dead_lettered.")
@click.option(
    "--all-failed",
    is_flag=True,
    default=False,
    help="Move every failed job to dead_lettered.",
)
def jobs_dead_letter(db_path: Path | None, job_id: str | None, all_failed: bool) -> None:
    """Move failed jobs to the terminal dead_lettered state."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.dead_letter(
                DeadLetterCommand(db_path=db_path, job_id=job_id, all_failed=all_failed),
            ),
        ),
    )


@jobs.command("stats")
@_DB_PATH_OPTION
def jobs_stats(db_path: Path | None) -> None:
    """Show job counts per state."""

    _emit_lines(_run(lambda: CONTROLLER.stats(QueueCommand(db_path=db_path))))


@ai_queue.command("worker")
@_DB_PATH_OPTION
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one lease-execute cycle or loop until idle.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads in loop mode. Defaults to AI_QUEUE_CONCURRENCY.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before a loop worker exits.",
)
def worker(
    db_path: Path | None,
    once: bool,
    concurrency: int | None,
    max_jobs: int | None,
    max_idle_polls: int,
) -> None:
    """Run the queue worker."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    once=once,
                    concurrency=concurrency,
                    max_jobs=max_jobs,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        ),
    )


@ai_queue.group()
def usage() -> None:
    """Usage ledger and budget commands."""


@usage.command("show")
@_DB_PATH_OPTION
@click.option("--user-id", default=None, help="User id; omit for anonymous.")
@click.option("--period", default=None, help="Ledger period as YYYY-MM. Defaults to current month.")
@click.option(
    "--group-by",
    type=click.Choice(["provider", "model"], case_sensitive=False),
    default="provider",
    show_default=True,
    help="Breakdown dimension.",
)
def usage_show(
    db_path: Path | None,
    user_id: str | None,
    period: str | None,
    group_by: str,
) -> None:
    """Show usage totals, remaining budget and a breakdown."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.usage(
                UsageShowCommand(
                    db_path=db_path,
                    user_id=user_id,
                    period=period,
                    group_by=group_by.lower(),
                ),
            ),
        ),
    )


@usage.command("set-budget")
@_DB_PATH_OPTION
@click.option("--user-id", default=None, help="User id; omit for anonymous.")
@click.option("--cents", type=click.IntRange(min=0), required=True, help="Monthly ceiling.")
def usage_set_budget(db_path: Path | None, user_id: str | None, cents: int) -> None:
    """Set the monthly cost ceiling for a user."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.set_budget(
                SetBudgetCommand(db_path=db_path, user_id=user_id, cents=cents),
            ),
        ),
    )


@ai_queue.group()
def credentials() -> None:
    """Provider credential commands."""


@credentials.command("test")
@_DB_PATH_OPTION
@click.option("--provider", required=True, help="Provider name, for example openai.")
@click.option("--api-key", required=True, help="API key to probe.")
@click.option("--model", required=True, help="Model used for the probe request.")
@click.option("--endpoint", default=None, help="Optional endpoint override.")
def credentials_test(
    db_path: Path | None,
    provider: str,
    api_key: str,
    model: str,
    endpoint: str | None,
) -> None:
    """Send a tiny request to check that a credential works."""

    result = _run(
        lambda: CONTROLLER.test_credential(
            CredentialTestCommand(
                db_path=db_path,
                provider=provider,
                api_key=api_key,
                model=model,
                endpoint=endpoint,
            ),
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Credential test failed.")


@credentials.command("add")
@_DB_PATH_OPTION
@click.option("--provider", required=True, help="Provider name, for example openai.")
@click.option("--api-key", required=True, help="API key.")
@click.option("--model", required=True, help="Model used for jobs routed to this credential.")
@click.option("--endpoint", default=None, help="Optional endpoint override.")
@click.option("--user-id", default=None, help="Owner; omit to store a system credential.")
@click.option(
    "--default",
    "is_default",
    is_flag=True,
    default=False,
    help="Prefer this credential.",
)
@click.option(
    "--task-kind",
    "task_kinds",
    type=click.Choice([kind.value for kind in JobKind], case_sensitive=False),
    multiple=True,
    help="Restrict to a task kind. Can be repeated; omit for all kinds.",
)
@click.option("--skip-test", is_flag=True, default=False, help="Store without a probe request.")
def credentials_add(  # noqa: PLR0913
    db_path: Path | None,
    provider: str,
    api_key: str,
    model: str,
    endpoint: str | None,
    user_id: str | None,
    is_default: bool,
    task_kinds: tuple[str, ...],
    skip_test: bool,
) -> None:
    """Test and store a provider credential."""

    result = _run(
        lambda: CONTROLLER.add_credential(
            CredentialAddCommand(
                db_path=db_path,
                provider=provider,
                api_key=api_key,
                model=model,
                endpoint=endpoint,
                user_id=user_id,
                is_default=is_default,
                task_kinds=tuple(kind.lower() for kind in task_kinds),
                skip_test=skip_test,
            ),
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Credential was not stored.")


@credentials.command("list")
@_DB_PATH_OPTION
@click.option("--user-id", default=None, help="Owner; omit to list system credentials.")
def credentials_list(db_path: Path | None, user_id: str | None) -> None:
    """List stored credentials with masked keys."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.list_credentials(
                CredentialListCommand(db_path=db_path, user_id=user_id),
            ),
        ),
    )


@credentials.command("remove")
@_DB_PATH_OPTION
@click.option("--credential-id", required=True, help="Credential id.")
def credentials_remove(db_path: Path | None, credential_id: str) -> None:
    """Delete a stored credential."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.remove_credential(
                CredentialRemoveCommand(db_path=db_path, credential_id=credential_id),
            ),
        ),
    )


def _run(action: Callable[[], T]) -> T:
    try:
        return action()
    except (AiQueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ai_queue()
