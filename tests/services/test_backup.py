import os
import stat
import subprocess

import pytest
from rich.console import Console

from moodleupgrader.errors import UpgraderError
from moodleupgrader.models import DatastoreCredentials, DumpStatus, EngineKind
from moodleupgrader.services.backup import BackupManager


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class ScriptedCommandRunner:
    """Returns queued exit codes and records how credential files looked while in use."""

    def __init__(self, returncodes, missing=False):
        self.returncodes = list(returncodes)
        self.missing = missing
        self.calls = []
        self.credential_modes = []
        self.credential_contents = []

    def run(self, cmd, check=True, capture_output=False, env=None, stdout_path=None, **_kwargs):
        if self.missing:
            raise UpgraderError(f"Required command not found: {cmd[0]}")
        self.calls.append({"cmd": cmd, "env": env})

        credentials = None
        for arg in cmd:
            if arg.startswith("--defaults-file="):
                credentials = arg.split("=", 1)[1]
        if env and "PGPASSFILE" in env:
            credentials = env["PGPASSFILE"]
        if credentials:
            self.credential_modes.append(stat.S_IMODE(os.stat(credentials).st_mode))
            with open(credentials, "r", encoding="utf-8") as file_obj:
                self.credential_contents.append(file_obj.read())

        returncode = self.returncodes.pop(0)
        if stdout_path:
            with open(stdout_path, "w", encoding="utf-8") as file_obj:
                file_obj.write("-- dump\n")
        return subprocess.CompletedProcess(args=cmd, returncode=returncode, stdout="", stderr="")


def mysql_credentials():
    return DatastoreCredentials(
        engine_kind=EngineKind.MYSQL_FAMILY,
        host="localhost",
        port="3306",
        name="moodle",
        user="moodleuser",
        secret='pa"ss',
    )


def postgres_credentials():
    return DatastoreCredentials(
        engine_kind=EngineKind.POSTGRES,
        host="db",
        port="5432",
        name="moodle",
        user="postgres",
        secret="p:w",
    )


@pytest.fixture
def site(tmp_path):
    moodle = tmp_path / "moodle"
    moodle.mkdir()
    (moodle / "index.php").write_text("<?php\n", encoding="utf-8")
    (moodle / "config.php").write_text("<?php\n$CFG->dbtype = 'mysqli';\n", encoding="utf-8")

    data = moodle / "moodledata"
    (data / "cache").mkdir(parents=True)
    (data / "sessions").mkdir()
    (data / "filedir").mkdir()
    (data / "cache" / "item").write_text("cached", encoding="utf-8")
    return moodle, data, tmp_path / "backups"


def build_manager(backup_root, runner=None):
    return BackupManager(
        logger=DummyLogger(),
        console=Console(record=True),
        command_runner=runner or ScriptedCommandRunner([]),
        backup_root=str(backup_root),
    )


def test_create_snapshot_copies_code_config_and_essential_data(site):
    moodle, data, backups = site
    manager = build_manager(backups)

    bundle = manager.create_snapshot(str(moodle), str(data), bundle_id="20250101_120000")

    assert os.path.basename(bundle.root) == "moodle_backup_20250101_120000"
    assert stat.S_IMODE(os.stat(bundle.root).st_mode) == 0o700
    assert os.path.isfile(os.path.join(bundle.code_snapshot_path, "index.php"))
    assert not os.path.exists(os.path.join(bundle.code_snapshot_path, "moodledata"))
    assert open(bundle.config_snapshot, encoding="utf-8").read().startswith("<?php")
    assert bundle.data_subtree_snapshots == frozenset({"cache", "sessions"})
    assert os.path.isfile(os.path.join(bundle.root, "moodledata_essential", "cache", "item"))


def test_create_snapshot_never_reuses_a_bundle_directory(site):
    moodle, data, backups = site
    manager = build_manager(backups)

    first = manager.create_snapshot(str(moodle), str(data), bundle_id="same")
    second = manager.create_snapshot(str(moodle), str(data), bundle_id="same")

    assert first.root != second.root
    assert second.root.endswith("moodle_backup_same_1")


def test_dump_database_full_mysql_dump_with_private_credentials(site):
    moodle, data, backups = site
    runner = ScriptedCommandRunner([0])
    manager = build_manager(backups, runner)
    bundle = manager.create_snapshot(str(moodle), str(data))

    result = manager.dump_database(mysql_credentials(), bundle)

    assert result.status == DumpStatus.FULL
    assert result.path.endswith("database_backup.sql")
    assert runner.calls[0]["cmd"][0] == "mysqldump"
    assert "--single-transaction" in runner.calls[0]["cmd"]
    assert 'pa"ss' not in " ".join(runner.calls[0]["cmd"])
    assert runner.credential_modes == [0o600]
    assert 'password="pa\\"ss"' in runner.credential_contents[0]
    assert not os.path.exists(os.path.join(bundle.root, ".mysql_opts"))


def test_dump_database_falls_back_to_structure_only(site):
    moodle, data, backups = site
    runner = ScriptedCommandRunner([2, 0, 0])
    manager = build_manager(backups, runner)
    bundle = manager.create_snapshot(str(moodle), str(data))

    result = manager.dump_database(mysql_credentials(), bundle)

    assert result.status == DumpStatus.STRUCTURE_ONLY
    assert result.degraded is True
    assert "--no-data" in runner.calls[2]["cmd"]
    assert not os.path.exists(os.path.join(bundle.root, "database_backup.sql"))
    assert bundle.with_dump(result).database_structure_only is True


def test_dump_database_reports_failure_when_server_unreachable(site):
    moodle, data, backups = site
    manager = build_manager(backups, ScriptedCommandRunner([2, 1]))
    bundle = manager.create_snapshot(str(moodle), str(data))

    result = manager.dump_database(mysql_credentials(), bundle)

    assert result.status == DumpStatus.FAILED
    assert result.path is None


def test_dump_database_uses_pgpass_for_postgres(site):
    moodle, data, backups = site
    runner = ScriptedCommandRunner([0])
    manager = build_manager(backups, runner)
    bundle = manager.create_snapshot(str(moodle), str(data))

    result = manager.dump_database(postgres_credentials(), bundle)

    assert result.status == DumpStatus.FULL
    assert runner.calls[0]["cmd"][0] == "pg_dump"
    assert "--no-password" in runner.calls[0]["cmd"]
    assert runner.credential_contents == ["db:5432:moodle:postgres:p\\:w\n"]
    assert not os.path.exists(os.path.join(bundle.root, ".pgpass"))


def test_dump_database_skips_without_credentials_or_tools(site):
    moodle, data, backups = site
    manager = build_manager(backups, ScriptedCommandRunner([], missing=True))
    bundle = manager.create_snapshot(str(moodle), str(data))

    assert manager.dump_database(None, bundle).status == DumpStatus.SKIPPED
    assert manager.dump_database(mysql_credentials(), bundle).status == DumpStatus.SKIPPED
