import pytest

from moodleupgrader.errors import UpgraderError
from moodleupgrader.services.config_loader import ConfigLoader


def test_config_loader_loads_yaml_mapping(tmp_path):
    config_file = tmp_path / ".moodleupgrader.yml"
    config_file.write_text(
        "target_version: '5.0.1'\nmigration_mode: automatic\nfeed_limit: 5\n",
        encoding="utf-8",
    )

    loader = ConfigLoader()
    loaded = loader.load(str(config_file))

    assert loaded["target_version"] == "5.0.1"
    assert loaded["migration_mode"] == "automatic"
    assert loaded["feed_limit"] == 5


def test_config_loader_rejects_unknown_keys(tmp_path):
    config_file = tmp_path / ".moodleupgrader.yml"
    config_file.write_text("unknown_key: true\n", encoding="utf-8")

    loader = ConfigLoader()

    with pytest.raises(UpgraderError, match="Unknown configuration keys"):
        loader.load(str(config_file))


def test_config_loader_validates_answers(tmp_path):
    config_file = tmp_path / ".moodleupgrader.yml"
    config_file.write_text("answers:\n  start_upgrade: true\n  replace_code: false\n", encoding="utf-8")

    loaded = ConfigLoader().load(str(config_file))

    assert loaded["answers"] == {"start_upgrade": True, "replace_code": False}


def test_config_loader_rejects_unknown_decision_names(tmp_path):
    config_file = tmp_path / ".moodleupgrader.yml"
    config_file.write_text("answers:\n  drop_database: true\n", encoding="utf-8")

    with pytest.raises(UpgraderError, match="Unknown decision names"):
        ConfigLoader().load(str(config_file))


def test_config_loader_rejects_non_boolean_answers(tmp_path):
    config_file = tmp_path / ".moodleupgrader.yml"
    config_file.write_text("answers:\n  start_upgrade: maybe\n", encoding="utf-8")

    with pytest.raises(UpgraderError, match="true or false"):
        ConfigLoader().load(str(config_file))


def test_config_loader_returns_empty_mapping_without_path():
    assert ConfigLoader().load(None) == {}
