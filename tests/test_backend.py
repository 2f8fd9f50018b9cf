import pytest

from backuprs import backend, model
from backuprs.errors import BackendConfigError

from conftest import make_job


@pytest.fixture(scope="function")
def backend_settings() -> model.GlobalSettings:
    return model.GlobalSettings(
        restic_binary="/usr/bin/restic",
        scratch_dir="/var/lib/backuprs",
        default_interval=60,
        rest=model.RestBackend(host="rest.example.com:8000"),
        sftp=model.SftpBackend(host="u1234.example.com", user="u1234"),
        s3=model.S3Backend(
            host="s3.amazonaws.com",
            access_key_id="AKIADEFAULT",
            secret_access_key="default-secret",
        ),
    )


def test_rest_plain_http(backend_settings):
    job = make_job(backend=model.RestBackend(user="alice", password="pw"))

    params = backend.build_parameters(job, backend_settings)

    assert params.repository == "rest:http://alice:pw@rest.example.com:8000/job1-repo"
    assert params.args == []
    assert params.env["RESTIC_REPOSITORY"] == params.repository
    assert params.env["RESTIC_PASSWORD"] == "s3cr3t"


def test_rest_pubkey_switches_to_https(backend_settings):
    job = make_job(
        backend=model.RestBackend(host="10.0.0.1:443", server_pubkey_file="/etc/backuprs/server.pem")
    )

    params = backend.build_parameters(job, backend_settings)

    assert params.repository == "rest:https://10.0.0.1:443/job1-repo"
    assert params.args == ["--cacert", "/etc/backuprs/server.pem"]


def test_rest_global_pubkey_applies_to_jobs(backend_settings):
    backend_settings.rest.server_pubkey_file = "/etc/backuprs/default.pem"
    job = make_job(backend=model.RestBackend())

    params = backend.build_parameters(job, backend_settings)

    assert params.repository.startswith("rest:https://rest.example.com:8000/")
    assert params.args == ["--cacert", "/etc/backuprs/default.pem"]


def test_job_host_overrides_global_default(backend_settings):
    job = make_job(backend=model.S3Backend(host="minio.local:9000"))

    params = backend.build_parameters(job, backend_settings)

    assert params.repository == "s3:minio.local:9000/job1-repo"


def test_s3_credentials_in_env(backend_settings):
    job = make_job(backend=model.S3Backend(access_key_id="AKIAJOB"))

    params = backend.build_parameters(job, backend_settings)

    assert params.repository == "s3:s3.amazonaws.com/job1-repo"
    assert params.env["AWS_ACCESS_KEY_ID"] == "AKIAJOB"
    assert params.env["AWS_SECRET_ACCESS_KEY"] == "default-secret"
    assert params.args == []


def test_sftp_command_template(backend_settings):
    job = make_job(backend=model.SftpBackend(command="ssh -p 23 {user}@{host} -s sftp"))

    params = backend.build_parameters(job, backend_settings)

    assert params.repository == "sftp:u1234@u1234.example.com:job1-repo"
    assert params.args == [
        "-o",
        "sftp.command=ssh -p 23 u1234@u1234.example.com -s sftp",
    ]


def test_sftp_without_command_has_no_options(backend_settings):
    job = make_job(backend=model.SftpBackend(host="other.example.com", user="bob"))

    params = backend.build_parameters(job, backend_settings)

    assert params.repository == "sftp:bob@other.example.com:job1-repo"
    assert params.args == []


def test_sftp_missing_user_for_placeholder(backend_settings):
    backend_settings.sftp = model.SftpBackend(host="u1234.example.com")
    job = make_job(backend=model.SftpBackend(command="ssh {user}@{host} -s sftp"))

    with pytest.raises(BackendConfigError, match="user"):
        backend.build_parameters(job, backend_settings)


def test_template_without_placeholders_needs_no_user(backend_settings):
    backend_settings.sftp = model.SftpBackend(host="u1234.example.com")
    job = make_job(backend=model.SftpBackend(command="ssh backup-alias -s sftp"))

    params = backend.build_parameters(job, backend_settings)

    assert params.args == ["-o", "sftp.command=ssh backup-alias -s sftp"]


def test_template_substitution_is_order_independent():
    values = {"user": "{host}", "host": "example.com"}

    assert backend.render_command_template("{user}@{host}", values) == "{host}@example.com"
    assert backend.render_command_template("{host} {user}", values) == "example.com {host}"


def test_missing_host_is_an_error():
    settings = model.GlobalSettings(
        restic_binary="/usr/bin/restic", scratch_dir="/tmp", default_interval=60
    )
    job = make_job(backend=model.S3Backend())

    with pytest.raises(BackendConfigError, match="host"):
        backend.build_parameters(job, settings)


def test_resolve_backend_keeps_variant(backend_settings):
    job = make_job(backend=model.SftpBackend(user="override"))

    resolved = backend.resolve_backend(job, backend_settings)

    assert isinstance(resolved, model.SftpBackend)
    assert resolved.user == "override"
    assert resolved.host == "u1234.example.com"
