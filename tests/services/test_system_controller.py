import subprocess

import pytest

import moodleupgrader.services.system_controller as controller_module
from moodleupgrader.errors import UpgraderError
from moodleupgrader.services.php_runtime import PhpRuntime
from moodleupgrader.services.system_controller import SystemController, SystemdController


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class RecordingRunner:
    def __init__(self, returncode=0, stdout=""):
        self.returncode = returncode
        self.stdout = stdout
        self.calls = []

    def run(self, cmd, check=True, capture_output=False, env=None, cwd=None, **_kwargs):
        self.calls.append({"cmd": cmd, "env": env, "cwd": cwd, "capture_output": capture_output})
        return subprocess.CompletedProcess(args=cmd, returncode=self.returncode, stdout=self.stdout, stderr="")


def test_install_packages_uses_noninteractive_apt(monkeypatch):
    monkeypatch.setattr(controller_module.shutil, "which", lambda name: "/usr/bin/apt-get")
    runner = RecordingRunner()

    SystemdController(runner, DummyLogger()).install_packages(["php8.3", "php8.3-cli"])

    assert runner.calls[0]["cmd"] == ["apt-get", "update"]
    assert runner.calls[1]["cmd"] == ["apt-get", "install", "-y", "php8.3", "php8.3-cli"]
    assert runner.calls[1]["env"]["DEBIAN_FRONTEND"] == "noninteractive"


def test_install_packages_requires_apt(monkeypatch):
    monkeypatch.setattr(controller_module.shutil, "which", lambda name: None)

    with pytest.raises(UpgraderError, match="apt-get"):
        SystemdController(RecordingRunner(), DummyLogger()).install_packages(["php8.3"])


def test_service_control_uses_systemctl():
    runner = RecordingRunner(returncode=3)
    controller = SystemdController(runner, DummyLogger())

    assert controller.is_service_active("nginx") is False
    controller.restart_service("apache2")

    assert runner.calls[0]["cmd"] == ["systemctl", "is-active", "--quiet", "nginx"]
    assert runner.calls[1]["cmd"] == ["systemctl", "restart", "apache2"]


def test_php_runtime_reads_version_and_runs_scripts_from_install_root(tmp_path):
    runner = RecordingRunner(stdout="8.3.6\n")
    php = PhpRuntime(runner, DummyLogger())

    assert php.version() == "8.3.6"
    php.run_script(str(tmp_path), "admin/cli/upgrade.php", ["--non-interactive"])

    last = runner.calls[-1]
    assert last["cmd"] == ["php", "admin/cli/upgrade.php", "--non-interactive"]
    assert last["cwd"] == str(tmp_path)
    assert last["capture_output"] is True


def test_php_runtime_returns_none_when_php_is_missing():
    class MissingRunner:
        def run(self, cmd, **_kwargs):
            raise UpgraderError("Required command not found: php")

    assert PhpRuntime(MissingRunner(), DummyLogger()).version() is None


def test_partial_controller_cannot_be_instantiated():
    class RestartOnlyController(SystemController):
        def restart_service(self, service):
            return None

    with pytest.raises(TypeError):
        RestartOnlyController()
