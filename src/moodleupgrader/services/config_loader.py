"""Configuration loader for MoodleUpgrader."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from moodleupgrader.constants import DECISION_KEYS
from moodleupgrader.errors import UpgraderError


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {
        "target_version",
        "verbose",
        "log_file",
        "assume_yes",
        "assume_no",
        "migration_mode",
        "allow_runtime_override",
        "backup_root",
        "web_user",
        "swap_strategy",
        "feed_url",
        "feed_limit",
        "download_timeout",
        "release_sha256",
        "allow_insecure_http",
        "restart_web_server",
        "answers",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise UpgraderError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise UpgraderError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise UpgraderError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise UpgraderError(f"Unknown configuration keys: {unknown_list}")

        if "answers" in parsed:
            parsed["answers"] = self._validate_answers(parsed["answers"])

        return parsed

    def _validate_answers(self, answers: Any) -> Dict[str, bool]:
        if not isinstance(answers, dict):
            raise UpgraderError("Config key 'answers' must be a mapping of decision names to yes/no.")

        unknown = sorted(set(answers.keys()) - set(DECISION_KEYS))
        if unknown:
            raise UpgraderError(f"Unknown decision names in 'answers': {', '.join(unknown)}")

        invalid = sorted(key for key, value in answers.items() if not isinstance(value, bool))
        if invalid:
            raise UpgraderError(f"Answers must be true or false: {', '.join(invalid)}")

        return dict(answers)
