# Stdlib imports
import datetime
import json
import pathlib
import re
import typing

# Vendor imports
import pydantic
import sh

# Local imports
from . import backend, command, helper, model
from .errors import RepositoryNotInitialized, SnapshotInvocationFailed

# restic >= 0.17 exits with this code when the repository doesn't exist
EXIT_REPOSITORY_MISSING = 10

_not_initialized_pattern = re.compile(
    r"Fatal: .*unable to open config file.*(does not exist|no such file)",
    re.IGNORECASE,
)


def fix_timestamp(t: str) -> str:
    # restic reports nanoseconds, python only handles microseconds
    return re.sub(
        r":(\d+)\.(\d+)",
        lambda match: f":{match.group(1)}.{match.group(2)[:6]}",
        t,
    )


class Snapshot(pydantic.BaseModel):
    id: str
    short_id: typing.Optional[str] = None
    time: datetime.datetime
    paths: list[str] = []
    hostname: str = ""
    username: str = ""
    tags: list[str] = []

    @pydantic.field_validator("time", mode="before")
    @classmethod
    def truncate_nanoseconds(cls, value):
        if isinstance(value, str):
            return fix_timestamp(value)
        return value


class BackupStatus(pydantic.BaseModel):
    percent_done: float = 0
    total_files: int = 0
    files_done: int = 0
    total_bytes: int = 0
    bytes_done: int = 0


class BackupVerboseStatus(pydantic.BaseModel):
    action: str
    item: str = ""
    data_size: int = 0


class BackupSummary(pydantic.BaseModel):
    """Final message of `restic backup --json`."""

    files_new: int = 0
    files_changed: int = 0
    files_unmodified: int = 0
    dirs_new: int = 0
    dirs_changed: int = 0
    dirs_unmodified: int = 0
    data_added: int = 0
    total_files_processed: int = 0
    total_bytes_processed: int = 0
    total_duration: float = 0
    snapshot_id: typing.Optional[str] = None
    dry_run: bool = False

    def __str__(self) -> str:
        return (
            f"took {self.total_duration:.1f}s, {helper.human_readable(self.data_added)} added, "
            f"{self.files_new} new files, {self.files_changed} changed files, "
            f"{self.files_unmodified} unchanged files"
        )


class ResticOutput:
    """Line callbacks for a running restic process.

    Parses the JSON messages on stdout and keeps stderr around for error
    reporting.
    """

    def __init__(self, job_name: str, verbose: bool = False, progress: bool = False):
        self.job_name = job_name
        self.verbose = verbose
        self.progress = progress

        self.stdout_lines: list[str] = []
        self.stderr_lines: list[str] = []
        self.summary: typing.Optional[BackupSummary] = None
        self._last_percent = -1

    @property
    def not_initialized(self) -> bool:
        return any(_not_initialized_pattern.search(line) for line in self.stderr_lines)

    def on_stdout(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        self.stdout_lines.append(line)

        try:
            message = json.loads(line)
        except ValueError:
            if self.verbose:
                helper.print_job_output(self.job_name, "restic", line)
            return
        if not isinstance(message, dict):
            return

        message_type = message.get("message_type")
        if message_type == "summary":
            self.summary = BackupSummary.model_validate(message)
        elif message_type == "status" and self.progress:
            self._print_progress(BackupStatus.model_validate(message))
        elif message_type == "verbose_status" and self.verbose:
            self._print_verbose_status(BackupVerboseStatus.model_validate(message))

    def on_stderr(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        self.stderr_lines.append(line)
        if self.verbose:
            helper.print_job_output(self.job_name, "restic", line, stderr=True)

    def _print_progress(self, status: BackupStatus) -> None:
        percent = int(status.percent_done * 100)
        if percent == self._last_percent:
            return
        self._last_percent = percent
        helper.print_job(
            self.job_name,
            f"Backup {percent}% finished, {status.files_done} files finished",
        )

    def _print_verbose_status(self, status: BackupVerboseStatus) -> None:
        if status.action == "unchanged":
            helper.print_job(self.job_name, f'Unchanged "{status.item}"')
        elif status.action in ("new", "changed"):
            helper.print_job(
                self.job_name,
                f'{status.action.capitalize()} "{status.item}" {helper.human_readable(status.data_size)}',
            )

    def print_errors(self) -> None:
        for line in self.stderr_lines:
            helper.print_job_output(self.job_name, "restic", line, stderr=True)


def _run(
    job: model.Job,
    settings: model.GlobalSettings,
    subcommand: list[str],
    output: ResticOutput,
    quiet: bool = True,
):
    parameters = backend.build_parameters(job, settings)
    args = ["--json", *(["--quiet"] if quiet else []), *parameters.args, *subcommand]

    try:
        restic = command.restic(settings)
    except sh.CommandNotFound as err:
        raise SnapshotInvocationFailed(f"restic binary not found: {err}") from err

    if settings.verbose:
        helper.print_job(job.name, f"Executing restic {subcommand[0]}")

    try:
        return helper.run_command_politely(
            restic,
            args,
            helper.execution_env(parameters.env),
            on_stdout=output.on_stdout,
            on_stderr=output.on_stderr,
            timeout=settings.command_timeout,
        )
    except sh.TimeoutException as err:
        raise SnapshotInvocationFailed(
            f"restic {subcommand[0]} timed out after {settings.command_timeout}s"
        ) from err
    except sh.ErrorReturnCode as err:
        if output.not_initialized or err.exit_code == EXIT_REPOSITORY_MISSING:
            raise RepositoryNotInitialized() from err
        if not output.verbose:
            output.print_errors()
        raise SnapshotInvocationFailed(
            f"restic {subcommand[0]} exited with code {err.exit_code}"
        ) from err
    except (sh.ForkException, OSError) as err:
        raise SnapshotInvocationFailed(
            f"restic {subcommand[0]}: can't start '{settings.restic_binary}': {err}"
        ) from err


def snapshots(
    job: model.Job,
    settings: model.GlobalSettings,
    latest: typing.Optional[int] = None,
) -> list[Snapshot]:
    """List the snapshots of a job's repository.

    Raises `RepositoryNotInitialized` if the repository doesn't exist yet.
    """
    output = ResticOutput(job.name, verbose=settings.verbose)
    subcommand = ["snapshots"]
    if latest is not None:
        subcommand += ["--latest", str(latest)]
    _run(job, settings, subcommand, output)

    try:
        parsed = json.loads("\n".join(output.stdout_lines) or "[]")
    except ValueError as err:
        raise SnapshotInvocationFailed("Unexpected response from restic") from err

    # Older restic versions print `null` for an empty repository
    return [Snapshot.model_validate(entry) for entry in parsed or []]


def init_repository(job: model.Job, settings: model.GlobalSettings) -> None:
    helper.print_job(job.name, "Initializing repository")
    _run(job, settings, ["init"], ResticOutput(job.name, verbose=settings.verbose))


def ensure_initialized(
    job: model.Job, settings: model.GlobalSettings, dry_run: bool = False
) -> list[Snapshot]:
    """Make sure the job's repository exists, creating it when needed.

    A dry run never creates the repository.
    """
    try:
        return snapshots(job, settings, latest=1)
    except RepositoryNotInitialized:
        if dry_run:
            raise
        if settings.verbose:
            helper.print_job(job.name, "Repository not initialized")

    init_repository(job, settings)
    return snapshots(job, settings, latest=1)


def backup_arguments(
    job: model.Job,
    backup_paths: list[pathlib.Path],
    dry_run: bool = False,
    verbose: bool = False,
) -> list[str]:
    args = ["backup"]
    if dry_run:
        args += ["--dry-run", "--verbose"]
    elif verbose:
        args.append("--verbose")

    for exclude in job.excludes:
        args += ["--exclude", exclude]

    # Paths come last as positional args
    args += [str(path) for path in backup_paths]
    return args


def backup(
    job: model.Job,
    settings: model.GlobalSettings,
    backup_paths: list[pathlib.Path],
    dry_run: bool = False,
) -> typing.Optional[BackupSummary]:
    output = ResticOutput(
        job.name, verbose=settings.verbose or dry_run, progress=settings.progress
    )
    _run(
        job,
        settings,
        backup_arguments(job, backup_paths, dry_run, settings.verbose),
        output,
        quiet=False,
    )

    if output.summary is None and not dry_run:
        raise SnapshotInvocationFailed("No backup summary received from restic")
    return output.summary
