### stdlib imports
import pathlib
import typing

### vendor imports
import sh

### local imports
from . import helper, model
from .errors import ConfigurationError

# Tool names used when no binary path is configured
MYSQL_DUMP_NAME = "mysqldump"
POSTGRES_DUMP_NAME = "pg_dump"
SUDO_NAME = "sudo"


def resolve(program: typing.Union[str, pathlib.Path]) -> sh.Command:
    """Return an `sh.Command` for a binary path or a name on PATH.

    Raises `sh.CommandNotFound` when the program can't be found.
    """
    program = str(program)
    if "/" in program:
        program = str(helper.fully_qualified_path(program))
    return sh.Command(program)


def restic(settings: model.GlobalSettings) -> sh.Command:
    return resolve(settings.restic_binary)


def restic_version(settings: model.GlobalSettings) -> str:
    """Run `restic version` and return its output."""
    output = restic(settings)("version", _env=helper.execution_env())
    output = str(output).strip()
    if not output.startswith("restic"):
        raise ConfigurationError(
            f"'{settings.restic_binary}' doesn't look like restic: {output}"
        )
    return output
