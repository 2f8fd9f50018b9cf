import yaml
from typer.testing import CliRunner

from backuprs import cli

runner = CliRunner()


def write_config(tmp_path, settings, jobs):
    path = tmp_path / "backuprs.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "v": 1,
                "settings": settings.model_dump(mode="json", exclude_none=True),
                "jobs": jobs,
            }
        )
    )
    return path


def job_entry(name: str) -> dict:
    return {
        "name": name,
        "paths": ["/data"],
        "repository": name.lower(),
        "repository_key": "s3cr3t",
        "backend": {"type": "rest"},
    }


def test_run_all_jobs(tmp_path, settings, fake_restic):
    path = write_config(tmp_path, settings, [job_entry("Job1"), job_entry("Job2")])

    result = runner.invoke(cli, ["--config", str(path), "run"])

    assert result.exit_code == 0, result.output
    assert len(fake_restic.called("backup")) == 2


def test_run_failing_job_exits_non_zero(tmp_path, settings, fake_restic):
    fake_restic.write(backup_exit=1)
    path = write_config(tmp_path, settings, [job_entry("Job1")])

    result = runner.invoke(cli, ["--config", str(path), "run", "--job", "Job1"])

    assert result.exit_code == 1


def test_run_unknown_job(tmp_path, settings, fake_restic):
    path = write_config(tmp_path, settings, [job_entry("Job1")])

    result = runner.invoke(cli, ["--config", str(path), "run", "--job", "Other"])

    assert result.exit_code != 0
    assert fake_restic.calls == []


def test_test_command_does_dry_runs(tmp_path, settings, fake_restic):
    path = write_config(tmp_path, settings, [job_entry("Job1")])

    result = runner.invoke(cli, ["--config", str(path), "test"])

    assert result.exit_code == 0, result.output
    assert len(fake_restic.called("version")) == 1
    (backup_call,) = fake_restic.called("backup")
    assert "--dry-run" in backup_call.split()


def test_list_command(tmp_path, settings, fake_restic):
    path = write_config(tmp_path, settings, [job_entry("Job1")])

    result = runner.invoke(cli, ["--config", str(path), "list"])

    assert result.exit_code == 0
    assert "Job1" in result.output


def test_list_command_mentions_rerun_inside_timeframe(tmp_path, settings, fake_restic):
    entry = job_entry("Job1")
    entry["period"] = {"backup_start_time": "22:00", "backup_end_time": "05:00"}
    path = write_config(tmp_path, settings, [entry])

    result = runner.invoke(cli, ["--config", str(path), "list"])

    assert result.exit_code == 0
    assert "22:00 - 05:00" in result.output
    assert "while open" in result.output
