"""Reader for the Moodle site configuration file (config.php)."""

import os
import re
from typing import Dict, Optional

from moodleupgrader.constants import CONFIG_FILE
from moodleupgrader.models import DatastoreCredentials, EngineKind

SETTING_PATTERN = re.compile(
    r"""^\s*\$CFG->(?P<key>\w+)\s*=\s*"""
    r"""(?P<value>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*"|[^;\n]+?)\s*;""",
    re.MULTILINE,
)
ESCAPE_PATTERN = re.compile(r"\\(.)", re.DOTALL)
DBOPTIONS_PORT_PATTERN = re.compile(r"""['"]dbport['"]\s*=>\s*['"]?(?P<port>\d*)['"]?""")

ENGINE_KINDS = {
    "mysqli": EngineKind.MYSQL_FAMILY,
    "mariadb": EngineKind.MYSQL_FAMILY,
    "auroramysql": EngineKind.MYSQL_FAMILY,
    "pgsql": EngineKind.POSTGRES,
}
DEFAULT_PORTS = {
    EngineKind.MYSQL_FAMILY: "3306",
    EngineKind.POSTGRES: "5432",
}


def config_path(install_root: str) -> str:
    return os.path.join(install_root, CONFIG_FILE)


def _php_scalar(raw: str) -> str:
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        escapable = (raw[0], "\\", "$") if raw[0] == '"' else (raw[0], "\\")
        return ESCAPE_PATTERN.sub(
            lambda match: match.group(1) if match.group(1) in escapable else match.group(0),
            raw[1:-1],
        )
    return raw


class SiteConfigReader:
    """Reads declarations from config.php without executing it."""

    def __init__(self, logger):
        self.logger = logger

    def read_bytes(self, install_root: str) -> Optional[bytes]:
        path = config_path(install_root)
        if not os.path.isfile(path):
            return None
        with open(path, "rb") as file_obj:
            return file_obj.read()

    def read_settings(self, content: str) -> Dict[str, str]:
        settings: Dict[str, str] = {}
        for match in SETTING_PATTERN.finditer(content):
            settings[match.group("key")] = _php_scalar(match.group("value"))
        return settings

    def read_credentials(self, install_root: str) -> Optional[DatastoreCredentials]:
        blob = self.read_bytes(install_root)
        if blob is None:
            self.logger.warning("No config.php found - database settings unavailable")
            return None

        content = blob.decode("utf-8", errors="replace")
        settings = self.read_settings(content)

        dbtype = settings.get("dbtype", "")
        engine_kind = ENGINE_KINDS.get(dbtype)
        if engine_kind is None:
            self.logger.warning("Unknown database type: %s", dbtype or "<empty>")
            return None

        port = settings.get("dbport", "")
        if not port:
            options_match = DBOPTIONS_PORT_PATTERN.search(content)
            if options_match:
                port = options_match.group("port")

        credentials = DatastoreCredentials(
            engine_kind=engine_kind,
            host=settings.get("dbhost") or "localhost",
            port=port or DEFAULT_PORTS[engine_kind],
            name=settings.get("dbname", ""),
            user=settings.get("dbuser", ""),
            secret=settings.get("dbpass", ""),
        )

        self.logger.info("Database type: %s", dbtype)
        self.logger.info("Database host: %s", credentials.host)
        self.logger.info("Database name: %s", credentials.name)

        if not credentials.name or not credentials.user:
            self.logger.warning("Database settings incomplete")
            return None

        return credentials
