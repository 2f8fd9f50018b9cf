# Stdlib imports
import json
import pathlib
import typing

# Vendor imports
import sh
import typer

# Local imports
from . import (
    batch,
    command,
    config as applicationConfig,
    daemon,
    helper,
    model,
    restic,
    scheduler,
)
from .errors import BackupError, ConfigurationError


# Create a subclass of the context with correct typing of the backup config object
class BackupCLIContext(typer.Context):
    obj: model.RootBackupConfiguration


# Initialize the typer app
cli = typer.Typer()


# Main method that initializes the configuration and makes it available to all commands
@cli.callback()
def cli_main(
    ctx: BackupCLIContext,
    config: pathlib.Path = typer.Option(
        applicationConfig.default_config_path,
        "--config",
        "-c",
        envvar="BACKUPRS_CONFIG",
        help="Path to backup configuration file.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose/",
        "-v/",
        envvar="BACKUPRS_VERBOSE",
        help="Print verbose information when executing commands.",
    ),
):
    # Load the config options and insert it into the context object
    try:
        values = applicationConfig.load_config_values(config)
    except ConfigurationError as err:
        helper.print_error(f"Error: {err}")

    if verbose:
        values.settings.verbose = True
    ctx.obj = values


def _validate(config: model.RootBackupConfiguration) -> None:
    try:
        applicationConfig.validate(config)
    except ConfigurationError as err:
        helper.print_error(f"Error: {err}")


def _print_outcome(outcome) -> None:
    if outcome.success:
        helper.print_nested_line(f"[green]{outcome.job_name}: ok")
    else:
        helper.print_nested_line(f"[red]{outcome.job_name}: {outcome.failure}")
    for warning in outcome.warnings:
        helper.print_nested_line(f"[yellow]{outcome.job_name}: {warning}")


@cli.command(name="run", help="Execute all backup jobs, or a single one, now.")
def cli_run(
    ctx: BackupCLIContext,
    job_name: typing.Optional[str] = typer.Option(
        None, "--job", "-j", help="Name of a single job to run."
    ),
    abort_on_error: bool = typer.Option(
        False,
        "--abort-on-error/",
        "-a/",
        help="Stop processing the remaining jobs after the first failure.",
    ),
):
    config = ctx.obj
    _validate(config)

    result = batch.run_batch(
        config.jobs,
        config.settings,
        target=job_name,
        abort_on_error=abort_on_error,
    )

    helper.print_line("Results:")
    for outcome in result.outcomes:
        _print_outcome(outcome)
    for name in result.skipped:
        helper.print_nested_line(f"[yellow]{name}: skipped")

    raise typer.Exit(result.exit_code)


@cli.command(
    name="daemon", help="Run in daemon mode and execute backups on a schedule."
)
def cli_daemon(ctx: BackupCLIContext):
    config = ctx.obj
    _validate(config)

    daemon.run_daemon(config.jobs, config.settings)


@cli.command(
    name="test",
    help="Validate the configuration and perform a dry run of every job.",
)
def cli_test(
    ctx: BackupCLIContext,
    job_name: typing.Optional[str] = typer.Option(
        None, "--job", "-j", help="Name of a single job to test."
    ),
):
    config = ctx.obj
    _validate(config)

    try:
        helper.print_line(command.restic_version(config.settings))
    except (sh.CommandNotFound, sh.ErrorReturnCode, BackupError) as err:
        helper.print_error(f"Error: restic can't be started: {err}")

    try:
        jobs = batch.resolve_targets(config.jobs, job_name)
    except BackupError as err:
        helper.print_error(f"Error: {err}")

    failed = 0
    for job in jobs:
        outcome = batch.test_job(job, config.settings, dry_run=True)
        _print_outcome(outcome)
        if not outcome.success:
            failed += 1

    if failed:
        helper.print_error(f"Failed test for {failed} jobs")
    helper.print_line("[green]Test successful")


@cli.command(
    name="list",
    help="List all backup jobs defined in the configuration file.",
)
def cli_list(ctx: BackupCLIContext):
    config = ctx.obj
    settings = config.settings

    helper.print("Jobs:")
    for job in config.jobs:
        helper.print(f"  - {job.name}")
        helper.print_kv("      backend", job.backend.type)
        helper.print_kv("      repository", job.repository)
        if job.database is not None:
            helper.print_kv("      database", f"{job.database.type} {job.database.database}")
        timeframe = scheduler.job_timeframe(job, settings)
        if timeframe is not None:
            helper.print_kv(
                "      timeframe",
                f"{timeframe.backup_start_time:%H:%M} - {timeframe.backup_end_time:%H:%M}"
                f" (runs every {settings.poll_interval:g}s while open)",
            )
        else:
            helper.print_kv("      interval", str(scheduler.job_interval(job, settings)))

    helper.print()


@cli.command(
    name="snapshots", help="List all snapshots found for the given job."
)
def cli_snapshots(
    ctx: BackupCLIContext,
    job_name: str = typer.Argument(..., help="Name of the backup job."),
    json_output: bool = typer.Option(False, "--json/", help="Enable JSON output."),
):
    config = ctx.obj
    job = config.get_job(job_name)
    if job is None:
        helper.print_error(f"Error: No job found by name '{job_name}'")

    try:
        found = restic.snapshots(job, config.settings)
    except BackupError as err:
        helper.print_error(f"Error: {err}")

    if json_output:
        typer.echo(json.dumps([snapshot.model_dump(mode="json") for snapshot in found]))
        return

    for snapshot in found:
        helper.print(
            f"{snapshot.short_id or snapshot.id[:8]}  {snapshot.time:%Y-%m-%d %H:%M:%S}  "
            f"{snapshot.hostname}  {', '.join(snapshot.paths)}"
        )
