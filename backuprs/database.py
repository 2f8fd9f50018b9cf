### stdlib imports
import pathlib
import typing

### local imports
from . import command, model

POSTGRES_DUMP_FILE = "db_dump_postgres.sql"
MYSQL_DUMP_FILE = "db_dump_mysql.sql"


class DumpCommand(typing.NamedTuple):
    program: str
    args: list[str]
    # Only the additional variables, the parent environment is added on execution
    env: dict[str, str]
    output: pathlib.Path

    @property
    def tool_name(self) -> str:
        return pathlib.Path(self.program).name


def dump_path(
    target: model.DatabaseTarget, scratch_folder: pathlib.Path
) -> pathlib.Path:
    """Fixed location of a target's dump file.

    The path never changes between runs of the same job, so restic sees the
    dump as the same file and only stores what changed.
    """
    if isinstance(target, model.PostgresDatabase):
        return scratch_folder / POSTGRES_DUMP_FILE
    elif isinstance(target, model.MysqlDatabase):
        return scratch_folder / MYSQL_DUMP_FILE
    else:
        typing.assert_never(target)


def _postgres_command(
    target: model.PostgresDatabase,
    settings: model.GlobalSettings,
    output: pathlib.Path,
) -> DumpCommand:
    binary = settings.postgres_dump_binary or command.POSTGRES_DUMP_NAME

    env: dict[str, str] = {}
    if target.user:
        env["PGUSER"] = target.user
    if target.password:
        env["PGPASSWORD"] = target.password

    # The database name has to be the last argument
    args = [f"--file={output}", target.database]

    if target.change_user:
        return DumpCommand(
            program=command.SUDO_NAME,
            args=["-u", target.os_user, binary, *args],
            env=env,
            output=output,
        )
    return DumpCommand(program=binary, args=args, env=env, output=output)


def _mysql_command(
    target: model.MysqlDatabase,
    settings: model.GlobalSettings,
    output: pathlib.Path,
) -> DumpCommand:
    # Credentials are looked up by mysqldump itself (~/.my.cnf and friends)
    return DumpCommand(
        program=settings.mysql_dump_binary or command.MYSQL_DUMP_NAME,
        args=["--databases", target.database, f"--result-file={output}"],
        env={},
        output=output,
    )


def dump_command(
    target: typing.Optional[model.DatabaseTarget],
    settings: model.GlobalSettings,
    scratch_folder: pathlib.Path,
) -> typing.Optional[DumpCommand]:
    """Return the command dumping `target`, or None when there's nothing to dump."""
    if target is None:
        return None

    output = dump_path(target, scratch_folder)
    if isinstance(target, model.PostgresDatabase):
        return _postgres_command(target, settings, output)
    elif isinstance(target, model.MysqlDatabase):
        return _mysql_command(target, settings, output)
    else:
        typing.assert_never(target)
