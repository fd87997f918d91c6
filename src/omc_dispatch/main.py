"""CLI entrypoint for omc-dispatch."""

from pathlib import Path

import rich_click as click

from omc_dispatch import __version__
from omc_dispatch.controllers import (
    AskCommand,
    CommandResult,
    DetectCommand,
    DispatchCliController,
    JobCommand,
    JobKillCommand,
    JobsCleanupCommand,
    JobsListCommand,
    JobsStoreCommand,
    JobWaitCommand,
)
from omc_dispatch.lifecycle import ALLOWED_SIGNALS
from omc_dispatch.models import Provider

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DispatchCliController()

PROVIDER_CHOICE = click.Choice([provider.value for provider in Provider], case_sensitive=False)

workdir_option = click.option(
    "--workdir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Working directory for the job. Defaults to the current directory.",
)


@click.group()
@click.version_option(version=__version__, prog_name="omc-dispatch")
def omc_dispatch() -> None:
    """Dispatch prompts to external AI CLIs and manage their jobs."""


@omc_dispatch.command("detect")
@click.argument("provider", type=PROVIDER_CHOICE)
def detect(provider: str) -> None:
    """Check whether a provider CLI is installed and report its version."""

    _emit_result(CONTROLLER.detect(DetectCommand(provider=Provider(provider.lower()))), "detect")


@omc_dispatch.command("ask")
@click.argument("provider", type=PROVIDER_CHOICE)
@workdir_option
@click.option("--role", "agent_role", required=True, help="Agent role, for example architect.")
@click.option("--prompt-file", required=True, help="Prompt file inside the working directory.")
@click.option("--output-file", required=True, help="Where the response should be written.")
@click.option(
    "--model",
    default=None,
    help="Explicit model. Disables the fallback chain when set.",
)
@click.option(
    "--context-file",
    "context_files",
    multiple=True,
    help="File passed to the provider as untrusted context. Can be repeated.",
)
@click.option(
    "--system-prompt-file",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help="File whose content is sent as system instructions.",
)
@click.option(
    "--background",
    is_flag=True,
    default=False,
    help="Dispatch as a background job, print its ids, then follow it until it finishes.",
)
@click.option(
    "--wait-timeout-ms",
    type=click.IntRange(min=1_000, max=3_600_000),
    default=3_600_000,
    show_default=True,
    help="How long to follow a background job.",
)
def ask(  # noqa: PLR0913
    provider: str,
    workdir: Path | None,
    agent_role: str,
    prompt_file: str,
    output_file: str,
    model: str | None,
    context_files: tuple[str, ...],
    system_prompt_file: Path | None,
    background: bool,
    wait_timeout_ms: int,
) -> None:
    """Send a prompt file to a provider CLI and write its response."""

    _emit_result(
        CONTROLLER.ask(
            AskCommand(
                provider=Provider(provider.lower()),
                workdir=workdir,
                prompt_file=prompt_file,
                output_file=output_file,
                agent_role=agent_role,
                model=model,
                context_files=context_files,
                system_prompt_file=system_prompt_file,
                background=background,
                wait_timeout_ms=wait_timeout_ms,
            ),
        ),
        "ask",
    )


@omc_dispatch.group()
def jobs() -> None:
    """Job lifecycle commands."""


@jobs.command("list")
@click.argument("provider", type=PROVIDER_CHOICE)
@workdir_option
@click.option(
    "--status",
    "status_filter",
    type=click.Choice(["active", "completed", "failed", "all"]),
    default="active",
    show_default=True,
    help="Which jobs to list; failed includes timed out jobs.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(provider: str, workdir: Path | None, status_filter: str, limit: int) -> None:
    """List jobs for a provider, newest first."""

    _emit_result(
        CONTROLLER.list_jobs(
            JobsListCommand(
                workdir=workdir,
                provider=Provider(provider.lower()),
                status_filter=status_filter,  # type: ignore[arg-type]
                limit=limit,
            ),
        ),
        "jobs list",
    )


@jobs.command("status")
@click.argument("provider", type=PROVIDER_CHOICE)
@click.argument("job_id")
@workdir_option
def jobs_status(provider: str, job_id: str, workdir: Path | None) -> None:
    """Show the recorded state of one job."""

    _emit_result(
        CONTROLLER.status(
            JobCommand(workdir=workdir, provider=Provider(provider.lower()), job_id=job_id),
        ),
        "jobs status",
    )


@jobs.command("wait")
@click.argument("provider", type=PROVIDER_CHOICE)
@click.argument("job_id")
@workdir_option
@click.option(
    "--timeout-ms",
    type=click.IntRange(min=1),
    default=3_600_000,
    show_default=True,
    help="Max time to wait; clamped to 1s..1h.",
)
def jobs_wait(provider: str, job_id: str, workdir: Path | None, timeout_ms: int) -> None:
    """Block until a job reaches a terminal state."""

    _emit_result(
        CONTROLLER.wait(
            JobWaitCommand(
                workdir=workdir,
                provider=Provider(provider.lower()),
                job_id=job_id,
                timeout_ms=timeout_ms,
            ),
        ),
        "jobs wait",
    )


@jobs.command("kill")
@click.argument("provider", type=PROVIDER_CHOICE)
@click.argument("job_id")
@workdir_option
@click.option(
    "--signal",
    "signal_name",
    type=click.Choice(list(ALLOWED_SIGNALS)),
    default="SIGTERM",
    show_default=True,
    help="Signal sent to the job's process group.",
)
def jobs_kill(provider: str, job_id: str, workdir: Path | None, signal_name: str) -> None:
    """Signal a running job spawned by this process and mark it failed."""

    _emit_result(
        CONTROLLER.kill(
            JobKillCommand(
                workdir=workdir,
                provider=Provider(provider.lower()),
                job_id=job_id,
                signal=signal_name,
            ),
        ),
        "jobs kill",
    )


@jobs.command("cleanup")
@workdir_option
@click.option(
    "--max-age-hours",
    type=click.IntRange(min=0),
    default=None,
    help="Remove terminal jobs older than this. Defaults to OMC_JOB_CLEANUP_MAX_AGE_HOURS.",
)
@click.option(
    "--mark-stale-hours",
    type=click.IntRange(min=1),
    default=None,
    help="First move active jobs older than this to timeout.",
)
def jobs_cleanup(
    workdir: Path | None,
    max_age_hours: int | None,
    mark_stale_hours: int | None,
) -> None:
    """Delete aged terminal job records."""

    _emit_result(
        CONTROLLER.cleanup(
            JobsCleanupCommand(
                workdir=workdir,
                max_age_hours=max_age_hours,
                mark_stale_hours=mark_stale_hours,
            ),
        ),
        "jobs cleanup",
    )


@jobs.command("migrate")
@workdir_option
def jobs_migrate(workdir: Path | None) -> None:
    """Import JSON status files into the SQLite job database."""

    _emit_result(CONTROLLER.migrate(JobsStoreCommand(workdir=workdir)), "jobs migrate")


@jobs.command("stats")
@workdir_option
def jobs_stats(workdir: Path | None) -> None:
    """Show aggregate job counts."""

    _emit_result(CONTROLLER.stats(JobsStoreCommand(workdir=workdir)), "jobs stats")


@jobs.command("summary")
@workdir_option
def jobs_summary(workdir: Path | None) -> None:
    """Print a markdown summary of active and recent jobs."""

    _emit_result(CONTROLLER.summary(JobsStoreCommand(workdir=workdir)), "jobs summary")


def _emit_result(result: CommandResult, name: str) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(f"{name} failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    omc_dispatch()
