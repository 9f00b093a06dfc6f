"""CLI maintenance mode toggling for MoodleUpgrader."""

import os
import re
import shutil
import tempfile
from typing import List, Optional

from moodleupgrader.constants import MAINTENANCE_SNAPSHOT_SUFFIX
from moodleupgrader.services.site_config import config_path

FLAG_PATTERN = re.compile(r"^\s*\$CFG->maintenance_enabled\s*=\s*(?P<value>[^;]*);")
SETUP_INCLUDE_PATTERN = re.compile(r"^\s*require_once.*lib/setup\.php")
TRUTHY_VALUES = {"true", "1", "yes", "on"}


def flag_line(enabled: bool) -> str:
    return f"$CFG->maintenance_enabled = {'true' if enabled else 'false'};"


class MaintenanceGate:
    """Owns the `$CFG->maintenance_enabled` declaration in config.php."""

    def __init__(self, logger, console):
        self.logger = logger
        self.console = console

    def is_enabled(self, install_root: str) -> bool:
        lines = self._read_lines(config_path(install_root))
        if lines is None:
            return False

        enabled = False
        for line in lines:
            match = FLAG_PATTERN.match(line)
            if match:
                value = match.group("value").strip().strip("'\"").lower()
                enabled = value in TRUTHY_VALUES
        return enabled

    def enter(self, install_root: str) -> bool:
        path = config_path(install_root)
        if not os.path.isfile(path):
            self.logger.warning("config.php not found - maintenance mode could not be enabled")
            return False

        self.logger.info("Enabling maintenance mode...")
        self._rewrite(path, enabled=True)
        return True

    def exit(self, install_root: str) -> bool:
        """Disables maintenance mode; returns False when there was nothing to change."""
        path = config_path(install_root)
        if not os.path.isfile(path):
            self.logger.warning("config.php not found - maintenance mode could not be disabled")
            return False

        if not self.is_enabled(install_root):
            self.logger.debug("Maintenance mode already disabled in %s", path)
            return False

        self.logger.info("Disabling maintenance mode...")
        shutil.copy2(path, f"{path}{MAINTENANCE_SNAPSHOT_SUFFIX}")
        self._rewrite(path, enabled=False)
        self.console.print("[green]Maintenance mode disabled.[/green]")
        return True

    def verify(self, install_root: str) -> bool:
        return not self.is_enabled(install_root)

    @staticmethod
    def _read_lines(path: str) -> Optional[List[str]]:
        if not os.path.isfile(path):
            return None
        with open(path, "r", encoding="utf-8", errors="surrogateescape", newline="") as file_obj:
            return file_obj.read().splitlines(keepends=True)

    def _rewrite(self, path: str, enabled: bool):
        lines = self._read_lines(path) or []
        newline = "\n"
        for line in lines:
            if line.endswith("\r\n"):
                newline = "\r\n"
                break
            if line.endswith("\n"):
                break

        declarations = [index for index, line in enumerate(lines) if FLAG_PATTERN.match(line)]
        kept = [line for index, line in enumerate(lines) if index not in declarations]
        canonical = flag_line(enabled) + newline

        if declarations:
            position = declarations[0]
        else:
            position = next(
                (index for index, line in enumerate(kept) if SETUP_INCLUDE_PATTERN.match(line)),
                len(kept),
            )

        if position == len(kept) and kept and not kept[-1].endswith(("\n", "\r")):
            kept[-1] = kept[-1] + newline
        kept.insert(position, canonical)

        new_content = "".join(kept)
        if new_content == "".join(lines):
            return
        self._write_atomic(path, new_content)

    def _write_atomic(self, path: str, content: str):
        directory = os.path.dirname(path) or "."
        fd, temp_path = tempfile.mkstemp(prefix=".config-", suffix=".php", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as file_obj:
                file_obj.write(content)
            shutil.copymode(path, temp_path)
            if hasattr(os, "chown"):
                stat_result = os.stat(path)
                try:
                    os.chown(temp_path, stat_result.st_uid, stat_result.st_gid)
                except OSError as exc:
                    self.logger.debug("Could not preserve ownership of %s: %s", path, exc)
            os.replace(temp_path, path)
        finally:
            if os.path.exists(temp_path):
                os.remove(temp_path)
