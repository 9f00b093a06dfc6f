import sys

import pytest

from moodleupgrader.errors import UpgraderError
from moodleupgrader.services.command_runner import CommandRunner


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


def test_command_runner_raises_with_stderr():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(UpgraderError, match="boom"):
        runner.run(
            [sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(1)"],
            check=True,
            capture_output=True,
        )


def test_command_runner_returns_when_check_disabled():
    runner = CommandRunner(logger=DummyLogger())

    result = runner.run(
        [sys.executable, "-c", "import sys; sys.exit(1)"],
        check=False,
        capture_output=True,
    )

    assert result.returncode == 1


def test_command_runner_streams_stdout_into_file(tmp_path):
    runner = CommandRunner(logger=DummyLogger())
    dump_path = tmp_path / "database_backup.sql"

    result = runner.run(
        [sys.executable, "-c", "print('CREATE TABLE mdl_user (id INT);')"],
        stdout_path=str(dump_path),
    )

    assert result.returncode == 0
    assert "CREATE TABLE mdl_user" in dump_path.read_text(encoding="utf-8")


def test_command_runner_reports_missing_binary():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(UpgraderError, match="Required command not found"):
        runner.run(["definitely-not-a-real-binary-for-moodle"])


def test_command_runner_timeout_raises_error():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(UpgraderError, match="timed out"):
        runner.run(
            [sys.executable, "-c", "import time; time.sleep(2)"],
            check=True,
            capture_output=True,
            timeout=0.1,
        )
