"""Recovery bundle creation for MoodleUpgrader."""

import os
import shutil
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from moodleupgrader.constants import (
    BUNDLE_CODE_DIR,
    BUNDLE_CONFIG_FILE,
    BUNDLE_DATA_DIR,
    BUNDLE_DUMP_FILE,
    BUNDLE_PREFIX,
    BUNDLE_STRUCTURE_FILE,
    CONFIG_FILE,
    CREDENTIALS_MODE,
    ESSENTIAL_DATA_DIRS,
)
from moodleupgrader.errors import UpgraderError
from moodleupgrader.models import (
    BackupBundle,
    DatastoreCredentials,
    DumpResult,
    DumpStatus,
    EngineKind,
)


def _mysql_option_value(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _pgpass_field(value: str) -> str:
    return value.replace("\\", "\\\\").replace(":", "\\:")


class BackupManager:
    """Creates timestamped code, config, data and database backups."""

    def __init__(self, logger, console, command_runner, backup_root: str):
        self.logger = logger
        self.console = console
        self.command_runner = command_runner
        self.backup_root = backup_root

    def _allocate_bundle_root(self, bundle_id: str) -> str:
        os.makedirs(self.backup_root, exist_ok=True)
        candidate = os.path.join(self.backup_root, f"{BUNDLE_PREFIX}{bundle_id}")
        suffix = 1
        while True:
            try:
                os.mkdir(candidate, 0o700)
                return candidate
            except FileExistsError:
                candidate = os.path.join(self.backup_root, f"{BUNDLE_PREFIX}{bundle_id}_{suffix}")
                suffix += 1

    def create_snapshot(
        self,
        moodle_path: str,
        data_path: str,
        bundle_id: Optional[str] = None,
    ) -> BackupBundle:
        bundle_id = bundle_id or datetime.now().strftime("%Y%m%d_%H%M%S")
        bundle_root = self._allocate_bundle_root(bundle_id)

        self.console.print(f"[blue]Creating backup in {bundle_root}...[/blue]")
        self.logger.info("Creating backup in %s", bundle_root)

        code_dir = os.path.join(bundle_root, BUNDLE_CODE_DIR)
        excluded = {
            os.path.realpath(path) for path in (data_path, self.backup_root) if path
        }

        def ignore_nested(directory, names):
            return [
                name for name in names
                if os.path.realpath(os.path.join(directory, name)) in excluded
            ]

        self.logger.info("Backing up Moodle code...")
        try:
            shutil.copytree(moodle_path, code_dir, symlinks=True, ignore=ignore_nested)
        except (OSError, shutil.Error) as exc:
            raise UpgraderError(f"Backup of Moodle code failed: {exc}") from exc

        config_snapshot = None
        config_file = os.path.join(moodle_path, CONFIG_FILE)
        if os.path.isfile(config_file):
            config_snapshot = os.path.join(bundle_root, BUNDLE_CONFIG_FILE)
            try:
                shutil.copy2(config_file, config_snapshot)
            except OSError as exc:
                raise UpgraderError(f"Backup of config.php failed: {exc}") from exc

        self.logger.info("Backing up important moodledata directories...")
        data_dir = os.path.join(bundle_root, BUNDLE_DATA_DIR)
        os.makedirs(data_dir, exist_ok=True)
        copied = set()
        for name in ESSENTIAL_DATA_DIRS:
            source = os.path.join(data_path, name)
            if not os.path.isdir(source):
                self.logger.debug("moodledata/%s not present - skipped", name)
                continue
            try:
                shutil.copytree(source, os.path.join(data_dir, name), symlinks=True)
                copied.add(name)
            except (OSError, shutil.Error) as exc:
                self.logger.warning("Could not back up moodledata/%s: %s", name, exc)

        self.console.print(f"[green]Backup created: {bundle_root}[/green]")
        return BackupBundle(
            bundle_id=bundle_id,
            root=bundle_root,
            code_snapshot_path=code_dir,
            config_snapshot=config_snapshot,
            data_subtree_snapshots=frozenset(copied),
        )

    @contextmanager
    def _credentials_file(self, directory: str, name: str, content: str) -> Iterator[str]:
        path = os.path.join(directory, name)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, CREDENTIALS_MODE)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                file_obj.write(content)
            yield path
        finally:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass

    def dump_database(
        self, credentials: Optional[DatastoreCredentials], bundle: BackupBundle
    ) -> DumpResult:
        if credentials is None:
            message = "Database settings unavailable - database backup skipped"
            self.logger.warning(message)
            return DumpResult(status=DumpStatus.SKIPPED, message=message)

        self.console.print("[blue]Creating database backup...[/blue]")
        try:
            if credentials.engine_kind == EngineKind.POSTGRES:
                result = self._dump_postgres(credentials, bundle.root)
            else:
                result = self._dump_mysql(credentials, bundle.root)
        except UpgraderError as exc:
            result = DumpResult(
                status=DumpStatus.SKIPPED,
                message=f"Database backup skipped: {exc}",
            )

        if result.status == DumpStatus.FULL:
            size = os.path.getsize(result.path) if result.path else 0
            self.console.print(f"[green]Database backup created ({size} bytes).[/green]")
            self.logger.info("Database backup created: %s", result.path)
        else:
            self.console.print(f"[yellow]Warning:[/yellow] {result.message}")
            self.logger.warning(result.message)
        return result

    def _dump_mysql(self, credentials: DatastoreCredentials, bundle_root: str) -> DumpResult:
        dump_path = os.path.join(bundle_root, BUNDLE_DUMP_FILE)
        structure_path = os.path.join(bundle_root, BUNDLE_STRUCTURE_FILE)
        options = (
            "[client]\n"
            f"host={_mysql_option_value(credentials.host)}\n"
            f"port={credentials.port}\n"
            f"user={_mysql_option_value(credentials.user)}\n"
            f"password={_mysql_option_value(credentials.secret)}\n"
        )

        self.logger.info("Creating MySQL/MariaDB backup...")
        with self._credentials_file(bundle_root, ".mysql_opts", options) as opts_file:
            defaults = f"--defaults-file={opts_file}"
            result = self.command_runner.run(
                [
                    "mysqldump",
                    defaults,
                    "--single-transaction",
                    "--routines",
                    "--triggers",
                    "--quick",
                    "--add-drop-table",
                    credentials.name,
                ],
                check=False,
                stdout_path=dump_path,
            )
            if result.returncode == 0:
                return DumpResult(status=DumpStatus.FULL, path=dump_path)

            self._discard(dump_path)
            self.logger.warning("MySQL backup failed - check credentials and permissions")
            self.logger.info("Trying alternative backup method...")

            probe = self.command_runner.run(
                ["mysql", defaults, "-e", f"USE `{credentials.name}`; SHOW TABLES;"],
                check=False,
                capture_output=True,
            )
            if probe.returncode != 0:
                return DumpResult(
                    status=DumpStatus.FAILED,
                    message="Cannot connect to database - no database backup was created",
                )

            structure = self.command_runner.run(
                ["mysqldump", defaults, "--no-data", credentials.name],
                check=False,
                stdout_path=structure_path,
            )
            if structure.returncode == 0:
                return DumpResult(
                    status=DumpStatus.STRUCTURE_ONLY,
                    path=structure_path,
                    message="Only database structure backed up",
                )

            self._discard(structure_path)
            return DumpResult(
                status=DumpStatus.FAILED,
                message="MySQL backup failed - no database backup was created",
            )

    def _dump_postgres(self, credentials: DatastoreCredentials, bundle_root: str) -> DumpResult:
        dump_path = os.path.join(bundle_root, BUNDLE_DUMP_FILE)
        structure_path = os.path.join(bundle_root, BUNDLE_STRUCTURE_FILE)
        pgpass = ":".join(
            _pgpass_field(value)
            for value in (
                credentials.host,
                credentials.port,
                credentials.name,
                credentials.user,
                credentials.secret,
            )
        )

        self.logger.info("Creating PostgreSQL backup...")
        with self._credentials_file(bundle_root, ".pgpass", pgpass + "\n") as pgpass_file:
            env = dict(os.environ, PGPASSFILE=pgpass_file)
            base_cmd = [
                "pg_dump",
                "-h",
                credentials.host,
                "-p",
                credentials.port,
                "-U",
                credentials.user,
                "--no-password",
            ]
            result = self.command_runner.run(
                base_cmd + ["--clean", "--create", credentials.name],
                check=False,
                env=env,
                stdout_path=dump_path,
            )
            if result.returncode == 0:
                return DumpResult(status=DumpStatus.FULL, path=dump_path)

            self._discard(dump_path)
            self.logger.warning("PostgreSQL backup failed - check credentials and permissions")

            structure = self.command_runner.run(
                base_cmd + ["--schema-only", credentials.name],
                check=False,
                env=env,
                stdout_path=structure_path,
            )
            if structure.returncode == 0:
                return DumpResult(
                    status=DumpStatus.STRUCTURE_ONLY,
                    path=structure_path,
                    message="Only database structure backed up",
                )

            self._discard(structure_path)
            return DumpResult(
                status=DumpStatus.FAILED,
                message="PostgreSQL backup failed - no database backup was created",
            )

    @staticmethod
    def _discard(path: str):
        try:
            os.remove(path)
        except OSError:
            pass
