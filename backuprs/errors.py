### stdlib imports
import enum
import typing


class Stage(str, enum.Enum):
    SCRATCH = "scratch"
    PRE_COMMAND = "pre_command"
    DATABASE_DUMP = "database_dump"
    SNAPSHOT = "snapshot"
    POST_COMMAND = "post_command"


class BackupError(Exception):
    """Base class of every error raised by backuprs."""


class ConfigurationError(BackupError):
    pass


class BackendConfigError(ConfigurationError):
    pass


class JobNotFound(BackupError):
    def __init__(self, name: str):
        super().__init__(f"No job found by name '{name}'")
        self.name = name


class StageError(BackupError):
    """An error attributed to one stage of a job run."""

    stage: typing.ClassVar[Stage]

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ScratchUnwritable(StageError):
    stage = Stage.SCRATCH


class PreCommandFailed(StageError):
    stage = Stage.PRE_COMMAND


class DatabaseDumpFailed(StageError):
    stage = Stage.DATABASE_DUMP


class SnapshotInvocationFailed(StageError):
    stage = Stage.SNAPSHOT


class RepositoryNotInitialized(SnapshotInvocationFailed):
    def __init__(self, detail: str = "Repository not initialized"):
        super().__init__(detail)


class PostCommandFailed(StageError):
    stage = Stage.POST_COMMAND
