from click.testing import CliRunner

import moodleupgrader.cli as cli_module
from moodleupgrader.services.decisions import (
    AssumeYesPolicy,
    InteractivePolicy,
    ScriptedPolicy,
)


def install_fake_upgrader(monkeypatch, captured, exit_code=0):
    class FakeUpgrader:
        MIGRATION_MODES = cli_module.MoodleUpgrader.MIGRATION_MODES
        SWAP_STRATEGIES = cli_module.MoodleUpgrader.SWAP_STRATEGIES

        def __init__(self, **kwargs):
            captured.update(kwargs)

        def run(self):
            return exit_code

    monkeypatch.setattr(cli_module, "MoodleUpgrader", FakeUpgrader)


def test_cli_uses_config_and_allows_cli_override(tmp_path, monkeypatch):
    config_file = tmp_path / ".moodleupgrader.yml"
    config_file.write_text(
        "target_version: '4.5.2'\n"
        "migration_mode: skip\n"
        "download_timeout: 45\n"
        "feed_limit: 3\n",
        encoding="utf-8",
    )

    captured = {}
    install_fake_upgrader(monkeypatch, captured)

    runner = CliRunner()
    result = runner.invoke(
        cli_module.main,
        [
            "--config",
            str(config_file),
            "/var/www/moodle",
            "/var/moodledata",
            "5.0.1",
            "--migration-mode",
            "automatic",
            "--yes",
        ],
    )

    assert result.exit_code == 0
    assert captured["moodle_path"] == "/var/www/moodle"
    assert captured["moodledata_path"] == "/var/moodledata"
    assert captured["target_version"] == "5.0.1"
    assert captured["migration_mode"] == "automatic"
    assert captured["download_timeout"] == 45.0
    assert captured["feed_limit"] == 3
    assert isinstance(captured["decision_policy"], AssumeYesPolicy)


def test_cli_uses_default_config_file_when_present(tmp_path, monkeypatch):
    default_config = tmp_path / ".moodleupgrader.yml"
    default_config.write_text(
        "target_version: latest\n"
        "web_user: apache\n"
        "restart_web_server: false\n",
        encoding="utf-8",
    )

    captured = {}
    install_fake_upgrader(monkeypatch, captured)
    monkeypatch.chdir(tmp_path)

    runner = CliRunner()
    result = runner.invoke(cli_module.main, ["/var/www/moodle", "/var/moodledata"])

    assert result.exit_code == 0
    assert captured["target_version"] == "latest"
    assert captured["web_user"] == "apache"
    assert captured["restart_web_server"] is False
    assert captured["swap_strategy"] == "auto"
    assert isinstance(captured["decision_policy"], InteractivePolicy)


def test_cli_builds_scripted_policy_from_answers(tmp_path, monkeypatch):
    config_file = tmp_path / "answers.yml"
    config_file.write_text(
        "assume_no: true\n"
        "answers:\n"
        "  start_upgrade: true\n"
        "  replace_code: true\n",
        encoding="utf-8",
    )

    captured = {}
    install_fake_upgrader(monkeypatch, captured)

    runner = CliRunner()
    result = runner.invoke(
        cli_module.main,
        ["--config", str(config_file), "/var/www/moodle", "/var/moodledata", "5.0.1"],
    )

    assert result.exit_code == 0
    policy = captured["decision_policy"]
    assert isinstance(policy, ScriptedPolicy)
    assert policy.confirm("start_upgrade", "?") is True
    assert policy.confirm("restart_web_server", "?") is False


def test_cli_rejects_conflicting_answer_flags(monkeypatch):
    captured = {}
    install_fake_upgrader(monkeypatch, captured)

    runner = CliRunner()
    result = runner.invoke(cli_module.main, ["/var/www/moodle", "/var/moodledata", "--yes", "--no"])

    assert result.exit_code != 0
    assert "cannot be used together" in result.output
    assert captured == {}


def test_cli_reports_unknown_config_keys(tmp_path, monkeypatch):
    config_file = tmp_path / "bad.yml"
    config_file.write_text("dry_run: true\n", encoding="utf-8")

    captured = {}
    install_fake_upgrader(monkeypatch, captured)

    runner = CliRunner()
    result = runner.invoke(
        cli_module.main,
        ["--config", str(config_file), "/var/www/moodle", "/var/moodledata"],
    )

    assert result.exit_code != 0
    assert "Unknown configuration keys: dry_run" in result.output


def test_cli_propagates_upgrader_exit_code(monkeypatch):
    captured = {}
    install_fake_upgrader(monkeypatch, captured, exit_code=1)

    runner = CliRunner()
    result = runner.invoke(cli_module.main, ["/var/www/moodle", "/var/moodledata", "5.0.1"])

    assert result.exit_code == 1
