# Stdlib imports
import datetime
import typing

# Vendor imports
import pydantic

# Local imports
from . import helper, job as job_module, model, scheduler
from .errors import JobNotFound

RunJob = typing.Callable[..., job_module.RunOutcome]


class BatchResult(pydantic.BaseModel):
    outcomes: list[job_module.RunOutcome] = []
    # Jobs skipped because an earlier job failed with abort_on_error set
    skipped: list[str] = []
    not_found: typing.Optional[str] = None

    @property
    def failed(self) -> list[job_module.RunOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.success]

    @property
    def success(self) -> bool:
        return self.not_found is None and not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1


def resolve_targets(
    jobs: list[model.Job], target: typing.Optional[str] = None
) -> list[model.Job]:
    """All jobs, or only the one named `target`. Raises `JobNotFound`."""
    if target is None:
        return list(jobs)
    for job in jobs:
        if job.name == target:
            return [job]
    raise JobNotFound(target)


def run_batch(
    jobs: list[model.Job],
    settings: model.GlobalSettings,
    target: typing.Optional[str] = None,
    abort_on_error: bool = False,
    history: typing.Optional[scheduler.RunHistory] = None,
    run_job: RunJob = job_module.run_job,
) -> BatchResult:
    """Run all jobs, or a single named one, sequentially in declaration order."""
    result = BatchResult()
    try:
        selected = resolve_targets(jobs, target)
    except JobNotFound as err:
        helper.print_warning(f"Error: {err}")
        result.not_found = err.name
        return result

    for index, job in enumerate(selected):
        started_at = datetime.datetime.now()
        outcome = run_job(job, settings, now=started_at)
        result.outcomes.append(outcome)
        if history is not None:
            history.record(job.name, started_at, outcome.success)

        if not outcome.success and abort_on_error:
            result.skipped = [remaining.name for remaining in selected[index + 1 :]]
            if result.skipped:
                helper.print_warning(
                    f"Aborting after failure of '{job.name}', skipping: {', '.join(result.skipped)}"
                )
            break

    return result


def test_job(
    job: model.Job, settings: model.GlobalSettings, dry_run: bool = True
) -> job_module.RunOutcome:
    """Run a job to validate its configuration, without storing anything by default."""
    return job_module.run_job(job, settings, dry_run=dry_run)
