"""Lifecycle of a single backup run.

A run walks through these states, in this order:

    INIT -> SCRATCH_READY -> PRE_COMMAND_DONE -> DUMP_DONE -> SNAPSHOT_DONE
         -> POST_COMMAND_DONE -> CLEANED_UP

A fatal failure skips the remaining stages, but the post command is still
considered (see `post_command_on_failure`) and the temp folder is always
removed once it was created.
"""

# Stdlib imports
import datetime
import enum
import pathlib
import shutil
import tempfile
import typing

# Vendor imports
import pydantic
import rich.markup
import sh

# Local imports
from . import command, database, helper, model, restic
from .errors import (
    BackupError,
    DatabaseDumpFailed,
    PostCommandFailed,
    PreCommandFailed,
    ScratchUnwritable,
    SnapshotInvocationFailed,
    Stage,
    StageError,
)

ENV_JOB_NAME = "BACKUPRS_JOB_NAME"
ENV_TARGETS = "BACKUPRS_TARGETS"
ENV_EXCLUDES = "BACKUPRS_EXCLUDES"
ENV_TEMP_FOLDER = "BACKUPRS_TEMP_FOLDER"
ENV_SUCCESS = "BACKUPRS_SUCCESS"

LIST_DELIMITER = ";"


class RunState(enum.Enum):
    INIT = "init"
    SCRATCH_READY = "scratch_ready"
    PRE_COMMAND_DONE = "pre_command_done"
    DUMP_DONE = "dump_done"
    SNAPSHOT_DONE = "snapshot_done"
    POST_COMMAND_DONE = "post_command_done"
    CLEANED_UP = "cleaned_up"


class StageFailure(pydantic.BaseModel):
    stage: Stage
    detail: str

    @classmethod
    def from_error(cls, error: StageError) -> "StageFailure":
        return cls(stage=error.stage, detail=error.detail)

    def __str__(self) -> str:
        return f"{self.stage.value}: {self.detail}"


class RunOutcome(pydantic.BaseModel):
    job_name: str
    started_at: datetime.datetime
    finished_at: typing.Optional[datetime.datetime] = None
    dry_run: bool = False

    # Fatal failure of the run, None means success
    failure: typing.Optional[StageFailure] = None
    # Failures that were recorded without failing the run
    warnings: list[StageFailure] = []
    summary: typing.Optional[restic.BackupSummary] = None
    states: list[RunState] = []

    @property
    def success(self) -> bool:
        return self.failure is None


class ExecutionContext:
    """Per run state: folders, child environment and outcome so far."""

    def __init__(
        self,
        job: model.Job,
        settings: model.GlobalSettings,
        dry_run: bool = False,
        now: typing.Optional[datetime.datetime] = None,
    ):
        self.job = job
        self.settings = settings
        self.dry_run = dry_run

        self.scratch_root = helper.fully_qualified_path(settings.scratch_dir)
        self.scratch_folder = self.scratch_root / job.name
        self.temp_folder: typing.Optional[pathlib.Path] = None

        # Additional backup targets, like database dumps
        self.extra_targets: list[pathlib.Path] = []

        self.outcome = RunOutcome(
            job_name=job.name,
            started_at=now or datetime.datetime.now(),
            dry_run=dry_run,
            states=[RunState.INIT],
        )

    @property
    def success(self) -> bool:
        return self.outcome.success

    def advance(self, state: RunState) -> None:
        self.outcome.states.append(state)

    def fail(self, error: StageError) -> None:
        self.outcome.failure = StageFailure.from_error(error)
        helper.print_job(
            self.job.name,
            f"[red]{error.stage.value} failed:[/] {rich.markup.escape(error.detail)}",
        )

    def warn(self, error: StageError) -> None:
        self.outcome.warnings.append(StageFailure.from_error(error))
        helper.print_job(
            self.job.name,
            f"[yellow]{error.stage.value} failed:[/] {rich.markup.escape(error.detail)}",
        )

    def backup_paths(self) -> list[pathlib.Path]:
        return [pathlib.Path(path) for path in self.job.paths] + self.extra_targets

    def prepare(self) -> None:
        """Create the scratch subfolder and a fresh temp folder."""
        try:
            self.scratch_folder.mkdir(parents=True, exist_ok=True)
            self.temp_folder = pathlib.Path(
                tempfile.mkdtemp(
                    prefix=f"{self.job.name}_", suffix="_temp", dir=self.scratch_root
                )
            )
        except OSError as err:
            raise ScratchUnwritable(
                f"Can't prepare scratch space in '{self.scratch_root}': {err}"
            ) from err
        self.advance(RunState.SCRATCH_READY)

    def cleanup(self) -> None:
        if self.temp_folder is not None:
            try:
                shutil.rmtree(self.temp_folder)
            except OSError as err:
                helper.print_warning(
                    f"Warning: Failed to delete temp folder '{self.temp_folder}' of job '{self.job.name}': {err}"
                )
            else:
                self.temp_folder = None
        self.advance(RunState.CLEANED_UP)

    def command_env(self, success: bool) -> dict[str, str]:
        """Variables handed to pre and post commands on top of our own environment."""
        env = {ENV_JOB_NAME: self.job.name}
        if self.job.paths:
            env[ENV_TARGETS] = LIST_DELIMITER.join(self.job.paths)
        if self.job.excludes:
            env[ENV_EXCLUDES] = LIST_DELIMITER.join(self.job.excludes)
        if self.temp_folder is not None:
            env[ENV_TEMP_FOLDER] = str(self.temp_folder)
        env[ENV_SUCCESS] = "true" if success else "false"
        return env


def _run_child(
    context: ExecutionContext,
    program: str,
    args: list[str],
    extra_env: dict[str, str],
    label: str,
    error: type[StageError],
    cwd: typing.Optional[str] = None,
) -> None:
    """Run a helper process for a job, translating failures into `error`."""
    name = context.job.name
    verbose = context.settings.verbose
    output: list[tuple[str, bool]] = []

    def collect(stderr: bool):
        def callback(line: str) -> None:
            output.append((line, stderr))
            if verbose:
                helper.print_job_output(name, label, line, stderr)

        return callback

    try:
        executable = command.resolve(program)
    except sh.CommandNotFound as err:
        raise error(f"{label}: command '{program}' not found") from err

    try:
        helper.run_command_politely(
            executable,
            args,
            helper.execution_env(extra_env),
            on_stdout=collect(False),
            on_stderr=collect(True),
            cwd=cwd,
            timeout=context.settings.command_timeout,
        )
    except sh.TimeoutException as err:
        raise error(
            f"{label} timed out after {context.settings.command_timeout}s"
        ) from err
    except sh.ErrorReturnCode as err:
        if not verbose:
            for line, stderr in output:
                helper.print_job_output(name, label, line, stderr)
        raise error(f"{label} failed, exit code {err.exit_code}") from err
    except (sh.ForkException, OSError) as err:
        raise error(f"{label}: can't start '{program}': {err}") from err


def run_pre_command(context: ExecutionContext) -> None:
    spec = context.job.pre_command
    if spec is not None:
        try:
            _run_child(
                context,
                spec.command,
                spec.args,
                context.command_env(True),
                "pre-command",
                PreCommandFailed,
                cwd=spec.workdir,
            )
        except PreCommandFailed as err:
            # The exit code of a pre command is informational only
            context.warn(err)
    context.advance(RunState.PRE_COMMAND_DONE)


def run_database_dump(context: ExecutionContext) -> None:
    dump = database.dump_command(
        context.job.database, context.settings, context.scratch_folder
    )
    if dump is not None:
        helper.print_job(context.job.name, f"Starting {dump.tool_name} dump")
        _run_child(
            context,
            dump.program,
            dump.args,
            dump.env,
            dump.tool_name,
            DatabaseDumpFailed,
        )
        context.extra_targets.append(context.scratch_folder)
    context.advance(RunState.DUMP_DONE)


def run_snapshot(context: ExecutionContext) -> None:
    job, settings = context.job, context.settings
    try:
        restic.ensure_initialized(job, settings, dry_run=context.dry_run)
        context.outcome.summary = restic.backup(
            job, settings, context.backup_paths(), dry_run=context.dry_run
        )
    except SnapshotInvocationFailed:
        raise
    except BackupError as err:
        # Mostly incomplete backend configuration
        raise SnapshotInvocationFailed(str(err)) from err
    context.advance(RunState.SNAPSHOT_DONE)


def run_post_command(context: ExecutionContext) -> None:
    spec = context.job.post_command
    if spec is not None and (context.success or context.job.post_command_on_failure):
        try:
            _run_child(
                context,
                spec.command,
                spec.args,
                context.command_env(context.success),
                "post-command",
                PostCommandFailed,
                cwd=spec.workdir,
            )
        except PostCommandFailed as err:
            # Doesn't change the outcome of the backup itself
            context.warn(err)
    context.advance(RunState.POST_COMMAND_DONE)


def run_job(
    job: model.Job,
    settings: model.GlobalSettings,
    dry_run: bool = False,
    now: typing.Optional[datetime.datetime] = None,
) -> RunOutcome:
    """Execute one run of `job` and return how it went.

    Stage failures never escape as exceptions, they are reported through the
    returned outcome.
    """
    context = ExecutionContext(job, settings, dry_run=dry_run, now=now)
    helper.print_job(job.name, "Starting dry run" if dry_run else "Starting backup")

    try:
        context.prepare()
    except ScratchUnwritable as err:
        context.fail(err)
        context.outcome.finished_at = datetime.datetime.now()
        return context.outcome

    try:
        try:
            run_pre_command(context)
            run_database_dump(context)
            run_snapshot(context)
        except StageError as err:
            context.fail(err)
        run_post_command(context)
    finally:
        context.cleanup()

    context.outcome.finished_at = datetime.datetime.now()
    if context.success:
        summary = context.outcome.summary
        helper.print_job(
            job.name,
            f"[green]Backup finished.[/] {summary}" if summary else "[green]Backup finished.",
        )
    return context.outcome
