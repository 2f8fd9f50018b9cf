"""Translate a job's backend into the parameters restic needs to reach it.

Nothing in here touches the filesystem or the network, the functions only
combine strings from the configuration.
"""

### stdlib imports
import re
import typing

### vendor imports
import mergedeep

### local imports
from . import model
from .errors import BackendConfigError


class BackendParameters(typing.NamedTuple):
    # Repository location string, as understood by restic's `--repo`
    repository: str
    # Environment variables with the repository key and credentials
    env: dict[str, str]
    # Extra restic options, placed before the restic sub command
    args: list[str]


_placeholder_pattern = re.compile(r"\{(user|host)\}")


def resolve_backend(
    job: model.Job, settings: model.GlobalSettings
) -> typing.Union[model.RestBackend, model.SftpBackend, model.S3Backend]:
    """Return the job's backend with the global backend defaults applied."""
    backend = job.backend
    if isinstance(backend, model.RestBackend):
        defaults = settings.rest
    elif isinstance(backend, model.SftpBackend):
        defaults = settings.sftp
    elif isinstance(backend, model.S3Backend):
        defaults = settings.s3
    else:
        typing.assert_never(backend)

    defaults_dict = {} if defaults is None else defaults.model_dump(exclude_none=True)
    backend_dict = backend.model_dump(exclude_none=True)

    # Values defined on the job win over the defaults
    merged_dict = mergedeep.merge(
        {}, defaults_dict, backend_dict, strategy=mergedeep.Strategy.REPLACE
    )

    return type(backend)(**merged_dict)


def render_command_template(template: str, values: dict[str, typing.Optional[str]]) -> str:
    """Replace `{user}` and `{host}` in a single pass.

    Replaced values are never scanned again, so the result doesn't depend on
    the order of the placeholders.
    """

    def substitute(match: re.Match) -> str:
        name = match.group(1)
        value = values.get(name)
        if value is None:
            raise BackendConfigError(
                f"Command template '{template}' references '{{{name}}}', but no {name} is configured"
            )
        return value

    return _placeholder_pattern.sub(substitute, template)


def _require_host(backend_name: str, host: typing.Optional[str]) -> str:
    if not host:
        raise BackendConfigError(
            f"No host configured for the {backend_name} backend, neither on the job nor in the global settings"
        )
    return host


def _rest_parameters(
    job: model.Job, backend: model.RestBackend
) -> tuple[str, dict[str, str], list[str]]:
    host = _require_host("rest", backend.host)

    credentials = ""
    if backend.user:
        credentials = backend.user
        if backend.password:
            credentials += f":{backend.password}"
        credentials += "@"

    # HTTPS is assumed as soon as a server certificate is known
    args: list[str] = []
    scheme = "http"
    if backend.server_pubkey_file:
        scheme = "https"
        args += ["--cacert", backend.server_pubkey_file]

    repository = f"rest:{scheme}://{credentials}{host}/{job.repository}"
    return repository, {}, args


def _sftp_parameters(
    job: model.Job, backend: model.SftpBackend
) -> tuple[str, dict[str, str], list[str]]:
    host = _require_host("sftp", backend.host)

    login = f"{backend.user}@" if backend.user else ""
    repository = f"sftp:{login}{host}:{job.repository}"

    args: list[str] = []
    if backend.command:
        rendered = render_command_template(
            backend.command, {"user": backend.user, "host": host}
        )
        args += ["-o", f"sftp.command={rendered}"]

    return repository, {}, args


def _s3_parameters(
    job: model.Job, backend: model.S3Backend
) -> tuple[str, dict[str, str], list[str]]:
    host = _require_host("s3", backend.host)
    repository = f"s3:{host}/{job.repository}"

    env: dict[str, str] = {}
    if backend.access_key_id:
        env["AWS_ACCESS_KEY_ID"] = backend.access_key_id
    if backend.secret_access_key:
        env["AWS_SECRET_ACCESS_KEY"] = backend.secret_access_key

    return repository, env, []


def build_parameters(
    job: model.Job, settings: model.GlobalSettings
) -> BackendParameters:
    backend = resolve_backend(job, settings)

    if isinstance(backend, model.RestBackend):
        repository, env, args = _rest_parameters(job, backend)
    elif isinstance(backend, model.SftpBackend):
        repository, env, args = _sftp_parameters(job, backend)
    elif isinstance(backend, model.S3Backend):
        repository, env, args = _s3_parameters(job, backend)
    else:
        typing.assert_never(backend)

    return BackendParameters(
        repository=repository,
        env={
            "RESTIC_REPOSITORY": repository,
            "RESTIC_PASSWORD": job.repository_key,
            **env,
        },
        args=args,
    )
