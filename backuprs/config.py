# Stdlib imports
import os
import pathlib
import tempfile

# Vendor imports
import pydantic
import yaml

# Local imports
from . import helper, model
from .errors import ConfigurationError

CURRENT_CONFIG_VERSION = 1

# Default configuration file path exists in the user's home dir
default_config_path = pathlib.Path("~/.backuprs.yaml")

_default_config_contents = (
    f"""
v: {CURRENT_CONFIG_VERSION}

# Process wide settings and backend defaults
settings:
  restic_binary: /usr/bin/restic
  scratch_dir: /var/lib/backuprs
  # Minutes between two runs of the same job
  default_interval: 1440

# List of backup jobs
jobs: []

""".strip()
    + "\n"
)


# Return the config values in the config file
def load_config_values(
    config_path: pathlib.Path,
) -> model.RootBackupConfiguration:
    # Resolve the path string to a path object
    config_path = config_path.expanduser()

    # If the config file doesn't already exist, create it
    if not config_path.exists():
        with config_path.open("w") as handle:
            handle.write(_default_config_contents)

    # Open and decode the config file
    with config_path.open("r") as handle:
        parsed = yaml.load(handle, yaml.SafeLoader)

    return parse_config_values(parsed, source=str(config_path))


def parse_config_values(
    parsed: dict, source: str = "<config>"
) -> model.RootBackupConfiguration:
    if not isinstance(parsed, dict):
        raise ConfigurationError(f"Config file '{source}' is not a mapping")

    try:
        instance = model.RootBackupConfiguration(**parsed)
    except pydantic.ValidationError as err:
        raise ConfigurationError(f"Invalid config file '{source}':\n{err}") from err

    if instance.v is not None and instance.v < CURRENT_CONFIG_VERSION:
        helper.print_warning(
            f'Warning: Config file located at "{source}" is possibly incompatible with the version of the backup tool you are using. Validate that the contents of the config file are compatible and update the "v" property to "v: {CURRENT_CONFIG_VERSION}", or delete the "v" property entirely to suppress this warning in the future.'
        )

    check_jobs(instance.jobs)
    return instance


def check_jobs(jobs: list[model.Job]) -> None:
    """Checks that only depend on the job definitions themselves."""
    seen: set[str] = set()
    for job in jobs:
        if job.name in seen:
            raise ConfigurationError(
                f"Multiple jobs with the same name '{job.name}' detected"
            )
        seen.add(job.name)

        if not job.paths and job.database is None:
            raise ConfigurationError(
                f"Job '{job.name}' has neither paths nor a database to back up"
            )


def _check_file(value: str, option: str) -> None:
    path = pathlib.Path(value).expanduser()
    if not path.exists():
        raise ConfigurationError(
            f"Path for config value '{option}' not accessible or doesn't exist"
        )
    if not path.is_file():
        raise ConfigurationError(f"Path for config value '{option}' is not a file")


def check_scratch_dir(scratch_dir: str) -> None:
    path = pathlib.Path(scratch_dir).expanduser()
    if not path.is_dir():
        raise ConfigurationError(
            "Path for config value 'scratch_dir' is not an existing folder"
        )
    try:
        tempfile.TemporaryDirectory(dir=path).cleanup()
    except OSError as err:
        raise ConfigurationError(
            f"Can't write to scratch_dir '{path}': {err}"
        ) from err


def validate(config: model.RootBackupConfiguration) -> None:
    """Verify that the settings point at usable files and folders."""
    settings = config.settings

    _check_file(settings.restic_binary, "restic_binary")
    check_scratch_dir(settings.scratch_dir)

    if settings.mysql_dump_binary:
        _check_file(settings.mysql_dump_binary, "mysql_dump_binary")
    if settings.postgres_dump_binary:
        _check_file(settings.postgres_dump_binary, "postgres_dump_binary")

    pubkey_files = [
        ("settings.rest", settings.rest.server_pubkey_file if settings.rest else None)
    ]
    for job in config.jobs:
        if isinstance(job.backend, model.RestBackend):
            pubkey_files.append((f"job '{job.name}'", job.backend.server_pubkey_file))

    for owner, pubkey_file in pubkey_files:
        if pubkey_file is None:
            continue
        if not os.access(pathlib.Path(pubkey_file).expanduser(), os.R_OK):
            raise ConfigurationError(
                f"Rest 'server_pubkey_file' of {owner} specified, but can't read file"
            )

    check_jobs(config.jobs)
