### stdlib imports
import datetime
import typing

### vendor imports
import pydantic

### local imports
from . import model


class RunRecord(pydantic.BaseModel):
    last_attempt_at: typing.Optional[datetime.datetime] = None
    last_success_at: typing.Optional[datetime.datetime] = None


class RunHistory:
    """In-memory run records, keyed by job name. Lost when the process exits."""

    def __init__(self):
        self._records: dict[str, RunRecord] = {}

    def get(self, name: str) -> RunRecord:
        if name not in self._records:
            self._records[name] = RunRecord()
        return self._records[name]

    def record(self, name: str, attempted_at: datetime.datetime, success: bool) -> RunRecord:
        record = self.get(name)
        record.last_attempt_at = attempted_at
        if success:
            record.last_success_at = attempted_at
        return record


def job_interval(job: model.Job, settings: model.GlobalSettings) -> datetime.timedelta:
    minutes = job.interval if job.interval is not None else settings.default_interval
    return datetime.timedelta(minutes=minutes)


def job_timeframe(
    job: model.Job, settings: model.GlobalSettings
) -> typing.Optional[model.TimeWindow]:
    return job.period if job.period is not None else settings.period


def eligible(
    job: model.Job,
    now: datetime.datetime,
    record: RunRecord,
    settings: model.GlobalSettings,
) -> bool:
    """Whether `job` may start at `now`.

    A timeframe, when configured, is the only gate: inside the window the
    interval isn't checked. Without one, the interval has to have passed
    since the last attempt, successful or not.
    """
    timeframe = job_timeframe(job, settings)
    if timeframe is not None:
        return timeframe.contains(now.time())

    if record.last_attempt_at is None:
        return True
    return now - record.last_attempt_at >= job_interval(job, settings)


def next_run(
    job: model.Job,
    record: RunRecord,
    settings: model.GlobalSettings,
    now: typing.Optional[datetime.datetime] = None,
) -> datetime.datetime:
    """Earliest moment at which `job` becomes eligible again."""
    now = now or datetime.datetime.now()

    timeframe = job_timeframe(job, settings)
    if timeframe is not None:
        if timeframe.contains(now.time()):
            return now
        start = datetime.datetime.combine(
            now.date(), timeframe.backup_start_time, tzinfo=now.tzinfo
        )
        if start < now:
            start += datetime.timedelta(days=1)
        return start

    if record.last_attempt_at is None:
        return now
    return max(now, record.last_attempt_at + job_interval(job, settings))
