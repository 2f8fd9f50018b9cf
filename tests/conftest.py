import datetime
import pathlib
import stat
import textwrap
from typing import Callable, Optional

import pytest

from backuprs import model
from backuprs.errors import Stage
from backuprs.job import RunOutcome, StageFailure

SNAPSHOT_JSON = (
    '[{"id":"4f2b9c1d8e7a6b5c4d3e2f1a0b9c8d7e6f5a4b3c2d1e0f9a8b7c6d5e4f3a2b1c",'
    '"short_id":"4f2b9c1d","time":"2024-05-01T02:00:00.123456789+02:00",'
    '"paths":["/data"],"hostname":"backup-host","username":"root"}]'
)

SUMMARY_JSON = (
    '{"message_type":"summary","files_new":2,"files_changed":1,"files_unmodified":7,'
    '"dirs_new":0,"dirs_changed":1,"dirs_unmodified":3,"data_added":2048,'
    '"total_files_processed":10,"total_bytes_processed":4096,"total_duration":1.5,'
    '"snapshot_id":"deadbeef"}'
)


ScriptFactory = Callable[[str, str], str]


@pytest.fixture(scope="function")
def make_script(tmp_path: pathlib.Path) -> ScriptFactory:
    """Write an executable shell script into the test's bin folder."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def factory(name: str, body: str) -> str:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + textwrap.dedent(body).strip() + "\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return factory


class FakeRestic:
    """A shell script standing in for restic, recording how it was called."""

    def __init__(self, make_script: ScriptFactory, workdir: pathlib.Path):
        self.make_script = make_script
        self.log = workdir / "restic.log"
        self.env_log = workdir / "restic.env"
        self.initialized_marker = workdir / "restic.initialized"
        self.initialized_marker.touch()
        self.path = self.write()

    def write(self, backup_exit: int = 0, summary: bool = True, backup_delay: float = 0) -> str:
        delay_line = f"sleep {backup_delay}" if backup_delay else ""
        summary_line = f"echo '{SUMMARY_JSON}'" if summary else ""
        self.path = self.make_script(
            "restic",
            f"""
            echo "$@" >> "{self.log}"
            env | grep -E '^(RESTIC|AWS)_' >> "{self.env_log}"
            for arg in "$@"; do
              case "$arg" in
                version)
                  echo "restic 0.16.4 compiled with go1.21.6 on linux/amd64"
                  exit 0 ;;
                snapshots)
                  if [ -f "{self.initialized_marker}" ]; then
                    echo '{SNAPSHOT_JSON}'
                    exit 0
                  fi
                  echo "Fatal: unable to open config file: stat /repo/config: no such file or directory" >&2
                  echo "Is there a repository at the following location?" >&2
                  exit 1 ;;
                init)
                  touch "{self.initialized_marker}"
                  exit 0 ;;
                backup)
                  {delay_line}
                  echo '{{"message_type":"status","percent_done":0.5,"files_done":5}}'
                  {summary_line}
                  exit {backup_exit} ;;
              esac
            done
            exit 0
            """,
        )
        return self.path

    def uninitialize(self) -> None:
        self.initialized_marker.unlink()

    @property
    def calls(self) -> list[str]:
        if not self.log.exists():
            return []
        return self.log.read_text().splitlines()

    def called(self, subcommand: str) -> list[str]:
        return [call for call in self.calls if subcommand in call.split()]


@pytest.fixture(scope="function")
def fake_restic(make_script: ScriptFactory, tmp_path: pathlib.Path) -> FakeRestic:
    return FakeRestic(make_script, tmp_path)


@pytest.fixture(scope="function")
def scratch_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture(scope="function")
def settings(fake_restic: FakeRestic, scratch_dir: pathlib.Path) -> model.GlobalSettings:
    return model.GlobalSettings(
        restic_binary=fake_restic.path,
        scratch_dir=str(scratch_dir),
        default_interval=60,
        rest=model.RestBackend(host="backup.example.com:8000"),
        progress=False,
    )


@pytest.fixture(scope="function")
def env_recorder(make_script: ScriptFactory, tmp_path: pathlib.Path):
    """Build a hook command that dumps its BACKUPRS_* environment to a file."""

    def factory(name: str, exit_code: int = 0) -> tuple[model.CommandSpec, pathlib.Path]:
        output = tmp_path / f"{name}.env"
        script = make_script(
            name,
            f"""
            env | grep '^BACKUPRS_' > "{output}"
            exit {exit_code}
            """,
        )
        return model.CommandSpec(command=script), output

    return factory


def read_env_file(path: pathlib.Path) -> dict[str, str]:
    values = {}
    for line in path.read_text().splitlines():
        key, _, value = line.partition("=")
        values[key] = value
    return values


def make_job(
    name: str = "Job1",
    paths: Optional[list[str]] = None,
    **kwargs,
) -> model.Job:
    return model.Job(
        name=name,
        paths=["/data"] if paths is None else paths,
        repository=kwargs.pop("repository", "job1-repo"),
        repository_key=kwargs.pop("repository_key", "s3cr3t"),
        backend=kwargs.pop("backend", model.RestBackend(user="alice", password="pw")),
        **kwargs,
    )


class RecordingRunner:
    """Stands in for the job executor, failing the jobs it is told to."""

    def __init__(self, failing: tuple[str, ...] = ()):
        self.failing = failing
        self.ran: list[str] = []

    def __call__(self, job, settings, dry_run: bool = False, now: Optional[datetime.datetime] = None):
        self.ran.append(job.name)
        failure = None
        if job.name in self.failing:
            failure = StageFailure(stage=Stage.SNAPSHOT, detail="restic backup exited with code 1")
        return RunOutcome(
            job_name=job.name,
            started_at=now or datetime.datetime.now(),
            failure=failure,
        )
