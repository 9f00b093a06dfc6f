"""Database schema upgrade and post-upgrade housekeeping for MoodleUpgrader."""

import os
from typing import Optional

from moodleupgrader.constants import (
    HTACCESS_FILE,
    MIN_MAX_INPUT_VARS,
    PHP_FPM_POOL_CONF,
    PHP_FPM_SERVICE,
    PURGE_CACHES_SCRIPT,
    UPGRADE_SCRIPT,
)
from moodleupgrader.errors import MigrationFailedError, UpgraderError
from moodleupgrader.errors_catalog import actionable_error
from moodleupgrader.models import MigrationMode, MigrationOutcome

POOL_DIRECTIVE = "php_admin_value[max_input_vars]"
HTACCESS_DIRECTIVE = "php_value max_input_vars"


def _append_line(path: str, line: str):
    with open(path, "r+", encoding="utf-8", errors="surrogateescape") as file_obj:
        content = file_obj.read()
        prefix = "" if not content or content.endswith("\n") else "\n"
        file_obj.write(f"{prefix}{line}\n")


class SchemaMigrator:
    """Runs Moodle's own upgrade CLI and applies environment fixes around it."""

    def __init__(
        self,
        php_runtime,
        system_controller,
        logger,
        console,
        pool_conf_template: str = PHP_FPM_POOL_CONF,
    ):
        self.php_runtime = php_runtime
        self.system_controller = system_controller
        self.logger = logger
        self.console = console
        self.pool_conf_template = pool_conf_template

    def run_migration(self, install_root: str, mode: MigrationMode) -> MigrationOutcome:
        if mode == MigrationMode.SKIP:
            self.logger.info("Skipping automatic database upgrade")
            self.console.print(
                "[yellow]Warning:[/yellow] The database has NOT been upgraded. Complete it manually:\n"
                "  1. Via web interface: visit your Moodle site and follow the upgrade wizard\n"
                f"  2. Via CLI: cd {install_root} && php {UPGRADE_SCRIPT}"
            )
            return MigrationOutcome.SKIPPED

        script_path = os.path.join(install_root, UPGRADE_SCRIPT)
        if not os.path.isfile(script_path):
            raise MigrationFailedError(
                actionable_error("upgrade_script_missing", script_path=script_path)
            )

        if mode == MigrationMode.AUTOMATIC:
            self.console.print("[blue]Running automatic database upgrade...[/blue]")
            result = self.php_runtime.run_script(
                install_root,
                UPGRADE_SCRIPT,
                ["--non-interactive", "--allow-unstable"],
            )
        else:
            self.console.print("[blue]Running CLI upgrade...[/blue]")
            result = self.php_runtime.run_script(install_root, UPGRADE_SCRIPT, interactive=True)

        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            if output:
                self.logger.error("Upgrade output:\n%s", output[-4000:])
            raise MigrationFailedError(
                actionable_error(
                    "migration_failed",
                    returncode=str(result.returncode),
                    moodle_path=install_root,
                )
            )

        self.console.print("[green]Moodle upgrade completed successfully.[/green]")
        return MigrationOutcome.MIGRATED

    def purge_caches(self, install_root: str) -> bool:
        if not os.path.isfile(os.path.join(install_root, PURGE_CACHES_SCRIPT)):
            self.logger.debug("Cache purge script not present in %s", install_root)
            return False

        try:
            result = self.php_runtime.run_script(install_root, PURGE_CACHES_SCRIPT)
        except UpgraderError as exc:
            self.logger.warning("Cache purge failed: %s", exc)
            return False

        if result.returncode != 0:
            self.logger.warning("Cache purge failed with exit code %s", result.returncode)
            return False

        self.logger.info("Caches purged")
        return True

    def current_max_input_vars(self) -> Optional[int]:
        value = self.php_runtime.ini_get("max_input_vars")
        try:
            return int(value) if value is not None else None
        except ValueError:
            return None

    def ensure_max_input_vars(self, install_root: str) -> Optional[int]:
        """Raises max_input_vars through PHP-FPM and .htaccess when it is below the floor."""
        current = self.current_max_input_vars()
        if current is None:
            self.logger.warning("Could not determine max_input_vars")
            return None
        if current >= MIN_MAX_INPUT_VARS:
            return current

        self.logger.warning(
            "max_input_vars is %s, should be at least %s", current, MIN_MAX_INPUT_VARS
        )
        self._fix_fpm_pool()
        self._fix_htaccess(install_root)
        return current

    def _fix_fpm_pool(self):
        php_version = self.php_runtime.minor_version()
        if not php_version:
            return

        pool_conf = self.pool_conf_template.format(php_version=php_version)
        if not os.path.isfile(pool_conf):
            self.logger.debug("PHP-FPM pool config not found: %s", pool_conf)
            return

        try:
            with open(pool_conf, "r", encoding="utf-8", errors="surrogateescape") as file_obj:
                if POOL_DIRECTIVE in file_obj.read():
                    return
            _append_line(pool_conf, f"{POOL_DIRECTIVE} = {MIN_MAX_INPUT_VARS}")
        except OSError as exc:
            self.logger.warning("Could not update %s: %s", pool_conf, exc)
            return

        self.logger.info("Updated max_input_vars in PHP-FPM pool config")
        try:
            self.system_controller.reload_service(PHP_FPM_SERVICE.format(php_version=php_version))
        except UpgraderError as exc:
            self.logger.warning("Could not reload PHP-FPM: %s", exc)

    def _fix_htaccess(self, install_root: str):
        htaccess = os.path.join(install_root, HTACCESS_FILE)
        if not os.path.isfile(htaccess):
            return

        try:
            with open(htaccess, "r", encoding="utf-8", errors="surrogateescape") as file_obj:
                if HTACCESS_DIRECTIVE in file_obj.read():
                    return
            _append_line(htaccess, f"{HTACCESS_DIRECTIVE} {MIN_MAX_INPUT_VARS}")
            self.logger.info("Updated max_input_vars in %s", htaccess)
        except OSError as exc:
            self.logger.warning("Could not update %s: %s", htaccess, exc)
