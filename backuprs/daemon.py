# Stdlib imports
import datetime
import typing

# Vendor imports
import apscheduler.executors.pool
import apscheduler.schedulers.blocking
import apscheduler.triggers.interval
import rich.markup

# Local imports
from . import helper, job as job_module, model, scheduler

RunJob = typing.Callable[..., job_module.RunOutcome]


class Daemon:
    """Polls the scheduler and runs eligible jobs, one at a time."""

    def __init__(
        self,
        jobs: list[model.Job],
        settings: model.GlobalSettings,
        history: typing.Optional[scheduler.RunHistory] = None,
        run_job: RunJob = job_module.run_job,
        clock: typing.Callable[[], datetime.datetime] = datetime.datetime.now,
    ):
        self.jobs = jobs
        self.settings = settings
        self.history = history if history is not None else scheduler.RunHistory()
        self.run_job = run_job
        self.clock = clock

    def tick(
        self, now: typing.Optional[datetime.datetime] = None
    ) -> list[job_module.RunOutcome]:
        """Run every job that is eligible, in declaration order."""
        outcomes = []
        for job in self.jobs:
            moment = now or self.clock()
            record = self.history.get(job.name)
            if not scheduler.eligible(job, moment, record, self.settings):
                continue

            success = False
            try:
                outcome = self.run_job(job, self.settings, now=moment)
                success = outcome.success
                outcomes.append(outcome)
            except Exception as err:
                # Keep polling the remaining jobs
                helper.print_job(
                    job.name,
                    f"[red]Run crashed:[/] {rich.markup.escape(repr(err))}",
                )
            finally:
                self.history.record(job.name, moment, success)

            if self.settings.verbose:
                helper.print_job(
                    job.name,
                    f"Next run at {scheduler.next_run(job, record, self.settings, self.clock())}",
                )
        return outcomes

    def _scheduled_tick(self) -> None:
        self.tick()

    def build_scheduler(self) -> apscheduler.schedulers.blocking.BlockingScheduler:
        # A single worker thread keeps the runs strictly sequential
        blocking_scheduler = apscheduler.schedulers.blocking.BlockingScheduler(
            executors={
                "default": apscheduler.executors.pool.ThreadPoolExecutor(1)
            },
        )
        blocking_scheduler.add_job(
            id="backuprs-poll",
            func=self._scheduled_tick,
            trigger=apscheduler.triggers.interval.IntervalTrigger(
                seconds=self.settings.poll_interval
            ),
            misfire_grace_time=None,
            coalesce=True,
            max_instances=1,
            next_run_time=datetime.datetime.now(),
        )
        return blocking_scheduler

    def run(self) -> None:
        helper.print_line("Scheduled jobs:")
        for job in self.jobs:
            interval = scheduler.job_interval(job, self.settings)
            timeframe = scheduler.job_timeframe(job, self.settings)
            if timeframe is not None:
                helper.print_nested_line(
                    f"{job.name}: between {timeframe.backup_start_time:%H:%M} and {timeframe.backup_end_time:%H:%M}, "
                    f"again every {self.settings.poll_interval:g}s while the window is open"
                )
            else:
                helper.print_nested_line(f"{job.name}: every {interval}")

        blocking_scheduler = self.build_scheduler()
        try:
            helper.print_warning("Starting scheduler...")
            blocking_scheduler.start()
        except KeyboardInterrupt:
            helper.print_warning("Scheduler stopping...")


def run_daemon(jobs: list[model.Job], settings: model.GlobalSettings) -> None:
    """Run the jobs on their schedule until the process is terminated."""
    if not jobs:
        helper.print_warning("No jobs configured. Check your configuration and try again.")
        return
    Daemon(jobs, settings).run()
