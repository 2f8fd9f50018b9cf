### stdlib imports
import datetime
import typing

### vendor imports
import pydantic


class TimeWindow(pydantic.BaseModel):
    backup_start_time: datetime.time
    backup_end_time: datetime.time

    @pydantic.model_validator(mode="after")
    def check_not_empty(self) -> "TimeWindow":
        if self.backup_start_time == self.backup_end_time:
            raise ValueError("Backup period start and end time can't be the same")
        return self

    def contains(self, moment: datetime.time) -> bool:
        start, end = self.backup_start_time, self.backup_end_time
        # Windows with start > end span across midnight
        if start < end:
            return start <= moment < end
        return moment >= start or moment < end


### Backend variants ###

# Fields left unset on a job fall back to the backend defaults of the
# global settings.


class RestBackend(pydantic.BaseModel):
    type: typing.Literal["rest"] = "rest"
    host: typing.Optional[str] = None
    server_pubkey_file: typing.Optional[str] = None
    user: typing.Optional[str] = None
    password: typing.Optional[str] = None


class SftpBackend(pydantic.BaseModel):
    type: typing.Literal["sftp"] = "sftp"
    host: typing.Optional[str] = None
    # For example `ssh -p 23 {user}@{host} -s sftp`
    command: typing.Optional[str] = None
    user: typing.Optional[str] = None


class S3Backend(pydantic.BaseModel):
    type: typing.Literal["s3"] = "s3"
    host: typing.Optional[str] = None
    access_key_id: typing.Optional[str] = None
    secret_access_key: typing.Optional[str] = None


Backend = typing.Annotated[
    typing.Union[RestBackend, SftpBackend, S3Backend],
    pydantic.Field(discriminator="type"),
]


### Database targets ###


class PostgresDatabase(pydantic.BaseModel):
    type: typing.Literal["postgres"] = "postgres"
    database: str
    change_user: bool = False
    os_user: str = "postgres"
    user: typing.Optional[str] = None
    password: typing.Optional[str] = None


class MysqlDatabase(pydantic.BaseModel):
    type: typing.Literal["mysql"] = "mysql"
    database: str


DatabaseTarget = typing.Annotated[
    typing.Union[PostgresDatabase, MysqlDatabase],
    pydantic.Field(discriminator="type"),
]


class CommandSpec(pydantic.BaseModel):
    command: str
    args: list[str] = []
    workdir: typing.Optional[str] = None


class Job(pydantic.BaseModel):
    name: str
    paths: list[str] = []
    excludes: list[str] = []
    repository: str
    repository_key: str
    backend: Backend
    database: typing.Optional[DatabaseTarget] = None
    pre_command: typing.Optional[CommandSpec] = None
    post_command: typing.Optional[CommandSpec] = None
    post_command_on_failure: bool = False

    # Minutes between two backup attempts, overrides the global default
    interval: typing.Optional[int] = None
    period: typing.Optional[TimeWindow] = None


class GlobalSettings(pydantic.BaseModel):
    restic_binary: str
    scratch_dir: str
    default_interval: int
    period: typing.Optional[TimeWindow] = None

    mysql_dump_binary: typing.Optional[str] = None
    postgres_dump_binary: typing.Optional[str] = None

    # Backend defaults
    rest: typing.Optional[RestBackend] = None
    sftp: typing.Optional[SftpBackend] = None
    s3: typing.Optional[S3Backend] = None

    verbose: bool = False
    progress: bool = True
    # Seconds before a child process is killed. Unset means wait forever.
    command_timeout: typing.Optional[float] = None
    # Seconds between two eligibility checks of the daemon
    poll_interval: float = 60


class RootBackupConfiguration(pydantic.BaseModel):
    settings: GlobalSettings
    jobs: list[Job] = []
    v: typing.Optional[int] = None

    def get_job(self, name: str) -> typing.Optional[Job]:
        for job in self.jobs:
            if job.name == name:
                return job
        return None
