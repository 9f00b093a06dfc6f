import logging
import os
import tempfile
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests
from rich.console import Console
from rich.table import Table

from .constants import (
    CONFIG_FILE,
    DEFAULT_DOWNLOAD_TIMEOUT,
    DEFAULT_FEED_LIMIT,
    DEFAULT_WEB_USER,
    MIGRATION_MODES,
    MIN_MAX_INPUT_VARS,
    PHP_PACKAGE_SUFFIXES,
    RELEASE_ARCHIVE_URL,
    RELEASE_FEED_URL,
    REPORT_PREFIX,
    SWAP_STRATEGIES,
    UPGRADE_SCRIPT,
    WEB_SERVER_SERVICES,
)
from .errors import (
    DowngradeBlockedError,
    FetchFailedError,
    RuntimeBelowMinimumError,
    SwapFailedError,
    UpgradeCancelled,
    UpgraderError,
)
from .errors_catalog import actionable_error
from .models import (
    AdvisoryCode,
    Comparison,
    DatastoreCredentials,
    DumpStatus,
    EngineKind,
    GateResult,
    GateStatus,
    InstallationState,
    MigrationMode,
    MigrationOutcome,
    ReleaseVersion,
    TransactionState,
    UpgradeTransaction,
)
from .services.archive import ArchiveService
from .services.backup import BackupManager
from .services.command_runner import CommandRunner
from .services.compatibility import CompatibilityGate
from .services.decisions import DecisionPolicy, InteractivePolicy
from .services.download import DownloadService
from .services.filesystem import FileSystemService
from .services.installer import ReleaseInstaller
from .services.maintenance import MaintenanceGate
from .services.manifest import ManifestService
from .services.migration import SchemaMigrator
from .services.php_runtime import PhpRuntime
from .services.site_config import SiteConfigReader
from .services.system_controller import SystemController, SystemdController
from .services.validation import ValidationService
from .services.versions import VersionOracle

console = Console()
logger = logging.getLogger("moodleupgrader")

VERSIONS_SHOWN = 5


class MoodleUpgrader:
    MIGRATION_MODES = MIGRATION_MODES
    SWAP_STRATEGIES = SWAP_STRATEGIES

    def __init__(
        self,
        moodle_path: str,
        moodledata_path: str,
        target_version: Optional[str] = None,
        migration_mode: Optional[str] = None,
        allow_runtime_override: bool = False,
        backup_root: Optional[str] = None,
        web_user: Optional[str] = DEFAULT_WEB_USER,
        swap_strategy: str = "auto",
        feed_url: str = RELEASE_FEED_URL,
        feed_limit: int = DEFAULT_FEED_LIMIT,
        download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        release_sha256: Optional[str] = None,
        allow_insecure_http: bool = False,
        restart_web_server: Optional[bool] = None,
        archive_url_template: str = RELEASE_ARCHIVE_URL,
        decision_policy: Optional[DecisionPolicy] = None,
        system_controller: Optional[SystemController] = None,
        command_runner: Optional[CommandRunner] = None,
        php_runtime: Optional[PhpRuntime] = None,
    ):
        if migration_mode is not None and migration_mode not in self.MIGRATION_MODES:
            raise UpgraderError(
                f"Invalid migration mode '{migration_mode}'. "
                f"Supported modes: {', '.join(self.MIGRATION_MODES)}"
            )
        if swap_strategy not in self.SWAP_STRATEGIES:
            raise UpgraderError(
                f"Invalid swap strategy '{swap_strategy}'. "
                f"Supported strategies: {', '.join(self.SWAP_STRATEGIES)}"
            )
        if feed_limit < 1:
            raise UpgraderError("The release feed limit must be at least 1.")

        self.moodle_path = moodle_path
        self.moodledata_path = moodledata_path
        self.requested_target = target_version
        self.migration_mode = migration_mode
        self.allow_runtime_override = allow_runtime_override
        self.backup_root = os.path.abspath(backup_root or tempfile.gettempdir())
        self.web_user = web_user
        self.swap_strategy = swap_strategy
        self.feed_limit = feed_limit
        self.restart_web_server = restart_web_server

        self.validation_service = ValidationService(allow_insecure_http=allow_insecure_http)
        self.release_sha256 = self.validation_service.normalize_sha256(
            release_sha256, "--release-sha256"
        )

        self.run_id = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.report_file = os.path.join(self.backup_root, f"{REPORT_PREFIX}{self.run_id}.json")
        self.manifest_service = ManifestService(manifest_file=self.report_file, logger=logger)
        self.current_step_name: Optional[str] = None

        self.decision_policy = decision_policy or InteractivePolicy(console=console)
        self.command_runner = command_runner or CommandRunner(logger=logger)
        self.php_runtime = php_runtime or PhpRuntime(command_runner=self.command_runner, logger=logger)
        self.system_controller = system_controller or SystemdController(
            command_runner=self.command_runner,
            logger=logger,
        )

        self.filesystem_service = FileSystemService(logger=logger, console=console)
        self.archive_service = ArchiveService()
        self.version_oracle = VersionOracle(
            logger=logger,
            requests_module=requests,
            feed_url=feed_url,
            timeout=download_timeout,
        )
        self.compatibility_gate = CompatibilityGate(
            php_runtime=self.php_runtime,
            command_runner=self.command_runner,
            logger=logger,
        )
        self.site_config = SiteConfigReader(logger=logger)
        self.download_service = DownloadService(
            validation_service=self.validation_service,
            logger=logger,
            console=console,
            requests_module=requests,
            timeout=download_timeout,
        )
        self.backup_manager = BackupManager(
            logger=logger,
            console=console,
            command_runner=self.command_runner,
            backup_root=self.backup_root,
        )
        self.maintenance_gate = MaintenanceGate(logger=logger, console=console)
        self.installer = ReleaseInstaller(
            logger=logger,
            console=console,
            download_service=self.download_service,
            archive_service=self.archive_service,
            filesystem_service=self.filesystem_service,
            archive_url_template=archive_url_template,
        )
        self.migrator = SchemaMigrator(
            php_runtime=self.php_runtime,
            system_controller=self.system_controller,
            logger=logger,
            console=console,
        )

        self.transaction = UpgradeTransaction()
        self.installation: Optional[InstallationState] = None
        self.credentials: Optional[DatastoreCredentials] = None
        self.release_dir: Optional[str] = None
        self.swap_started = False
        self.paths_validated = False

    def _build_manifest_metadata(self) -> Dict[str, Any]:
        return {
            "moodle_path": self.moodle_path,
            "moodledata_path": self.moodledata_path,
            "requested_target": self.requested_target,
            "migration_mode": self.migration_mode,
            "swap_strategy": self.swap_strategy,
            "backup_root": self.backup_root,
            "release_sha256": self.release_sha256,
        }

    def _run_step(self, name: str, callback, *args, **kwargs):
        self.manifest_service.step_started(name)
        self.current_step_name = name

        try:
            result = callback(*args, **kwargs)
        except UpgradeCancelled as exc:
            self.manifest_service.step_finished(name, "cancelled", error=str(exc) or None)
            raise
        except (Exception, KeyboardInterrupt) as exc:
            self.manifest_service.step_finished(name, "failed", error=str(exc))
            raise

        self.manifest_service.step_finished(name, "success")
        self.current_step_name = None
        return result

    def _advance(self, state: TransactionState):
        self.transaction.advance(state)
        self.manifest_service.set_state(state.value)
        logger.debug("Transaction state: %s", state.value)

    def _advise(self, code: AdvisoryCode, message: str):
        self.transaction.add_advisory(code, message)
        self.manifest_service.add_advisory(code.value, message)
        logger.warning(message)
        console.print(f"[yellow]Warning:[/yellow] {message}")

    def _confirm(self, key: str, question: str) -> bool:
        answer = self.decision_policy.confirm(key, question)
        logger.info("Decision '%s': %s", key, "yes" if answer else "no")
        return answer

    def validate_paths(self):
        console.print("[blue]Validating installation paths...[/blue]")
        self.moodle_path = self.validation_service.validate_directory(self.moodle_path, "Moodle path")
        self.moodledata_path = self.validation_service.validate_directory(
            self.moodledata_path,
            "Moodledata path",
        )
        self.validation_service.validate_backup_root(self.backup_root, self.moodle_path)
        self.paths_validated = True

        for warning in self.validation_service.privilege_warnings(
            [self.moodle_path, self.moodledata_path]
        ):
            logger.warning(warning)
            console.print(f"[yellow]Warning:[/yellow] {warning}")

        logger.info("Moodle path: %s", self.moodle_path)
        logger.info("Moodledata path: %s", self.moodledata_path)

    def read_installation(self) -> InstallationState:
        current = self.version_oracle.current_version(self.moodle_path)
        self.installation = InstallationState(
            moodle_path=self.moodle_path,
            moodledata_path=self.moodledata_path,
            current_version=current,
            config_blob=self.site_config.read_bytes(self.moodle_path),
        )
        self.transaction.current_version = current
        console.print(f"[bold blue]Current Moodle version: {current}[/bold blue]")
        logger.info("Current Moodle version: %s", current)
        return self.installation

    def resolve_target(self) -> ReleaseVersion:
        requested = (self.requested_target or "").strip()
        if requested and requested.lower() != "latest":
            target = self.validation_service.parse_target_version(requested)
            logger.info("Target version given explicitly: %s", target)
            return target

        self.validation_service.enforce_https_policy(
            self.version_oracle.feed_url,
            "Release feed",
            logger,
            console,
        )
        console.print("[blue]Loading available Moodle versions...[/blue]")
        candidates: List[ReleaseVersion] = list(
            self.version_oracle.candidate_versions(limit=self.feed_limit)
        )
        if not candidates:
            raise UpgraderError(
                "No Moodle releases found in the release feed. Pass an explicit target version."
            )

        latest = candidates[0]
        console.print(f"[green]Latest available version: {latest}[/green]")
        console.print("Available versions:")
        for candidate in candidates[:VERSIONS_SHOWN]:
            console.print(f"  - {candidate}")

        if requested:
            return latest

        choice = self.decision_policy.choose_version(candidates, latest)
        if not choice or not choice.strip():
            return latest
        return self.validation_service.parse_target_version(choice.strip())

    def check_version_gate(self, current: ReleaseVersion, target: ReleaseVersion):
        comparison = self.version_oracle.compare(current, target)

        if comparison == Comparison.GREATER:
            raise DowngradeBlockedError(
                actionable_error(
                    "downgrade_blocked",
                    current_version=str(current),
                    target_version=str(target),
                )
            )

        if comparison == Comparison.EQUAL:
            console.print("[yellow]Target version is identical to current version.[/yellow]")
            if not self._confirm("proceed_same_version", "Continue anyway?"):
                raise UpgradeCancelled("Target version is already installed.")

        if comparison == Comparison.INCOMPARABLE:
            console.print(
                "[yellow]Warning:[/yellow] Current version could not be determined; "
                "the downgrade check is skipped."
            )
            if not self._confirm(
                "proceed_unknown_version",
                f"Install Moodle {target} over an installation of unknown version?",
            ):
                raise UpgradeCancelled("Current version is unknown.")

    def check_compatibility(self, target: ReleaseVersion) -> List[GateResult]:
        console.print("[blue]Checking PHP and database compatibility...[/blue]")
        runtime = self.compatibility_gate.check_runtime(target)

        if runtime.status == GateStatus.BELOW_MINIMUM:
            console.print(
                f"[bold red]PHP {runtime.current} is too old! "
                f"Moodle {target} requires at least PHP {runtime.minimum}.[/bold red]"
            )
            runtime = self._offer_runtime_install(target, runtime)

        if runtime.status == GateStatus.BELOW_MINIMUM:
            self._override_runtime_or_abort(target, runtime)
        elif runtime.status == GateStatus.BELOW_RECOMMENDED:
            self._advise(
                AdvisoryCode.RUNTIME_BELOW_RECOMMENDED,
                f"PHP {runtime.current} works, but PHP {runtime.recommended} is recommended "
                f"for Moodle {target}.",
            )
        elif runtime.status == GateStatus.UNDETERMINED:
            self._advise(
                AdvisoryCode.RUNTIME_UNDETERMINED,
                f"PHP version could not be determined; Moodle {target} requires at least "
                f"PHP {runtime.minimum}.",
            )
        else:
            console.print(f"[green]PHP version {runtime.current} is compatible.[/green]")
        self.transaction.gate_results.append(runtime)

        self.credentials = self.site_config.read_credentials(self.moodle_path)
        engine_kind = self.credentials.engine_kind if self.credentials else None
        datastore = self.compatibility_gate.check_datastore(engine_kind)
        if datastore.status == GateStatus.BELOW_MINIMUM:
            self._advise(
                AdvisoryCode.DATASTORE_BELOW_MINIMUM,
                f"{datastore.component} {datastore.current} is below the recommended "
                f"minimum {datastore.minimum}.",
            )
        elif datastore.status == GateStatus.SATISFIED:
            console.print(
                f"[green]{datastore.component} version {datastore.current} is compatible.[/green]"
            )
        else:
            logger.info("Database server version could not be checked")
        self.transaction.gate_results.append(datastore)
        return self.transaction.gate_results

    def _offer_runtime_install(self, target: ReleaseVersion, runtime: GateResult) -> GateResult:
        recommended = runtime.recommended or runtime.minimum
        if not self._confirm(
            "install_runtime",
            f"Should we try to install PHP {recommended} automatically?",
        ):
            return runtime

        packages = [f"php{recommended}{suffix}" for suffix in PHP_PACKAGE_SUFFIXES]
        console.print(f"[blue]Installing PHP {recommended}...[/blue]")
        try:
            self.system_controller.install_packages(packages)
        except UpgraderError as exc:
            logger.error("PHP installation failed: %s", exc)
            console.print(f"[bold red]PHP installation failed:[/bold red] {exc}")
            return runtime

        rechecked = self.compatibility_gate.check_runtime(target)
        logger.info("PHP version after installation: %s", rechecked.current or "unknown")
        return rechecked

    def _override_runtime_or_abort(self, target: ReleaseVersion, runtime: GateResult):
        if self.allow_runtime_override and self._confirm(
            "override_runtime",
            f"Continue with PHP {runtime.current} although Moodle {target} requires "
            f"PHP {runtime.minimum}?",
        ):
            self._advise(
                AdvisoryCode.RUNTIME_BELOW_MINIMUM_OVERRIDDEN,
                f"Operator override: continuing with PHP {runtime.current} below the "
                f"minimum {runtime.minimum} for Moodle {target}.",
            )
            return

        self.transaction.gate_results.append(runtime)
        raise RuntimeBelowMinimumError(
            actionable_error(
                "runtime_below_minimum",
                runtime_version=str(runtime.current),
                target_version=str(target),
                minimum=str(runtime.minimum),
                recommended=str(runtime.recommended or runtime.minimum),
            )
        )

    def create_backup(self):
        bundle = self.backup_manager.create_snapshot(
            self.moodle_path,
            self.moodledata_path,
            bundle_id=self.run_id,
        )
        self.transaction.backup_bundle = bundle
        self.manifest_service.add_artifact("backup_bundle", bundle.root)

        dump = self.backup_manager.dump_database(self.credentials, bundle)
        self.transaction.dump_result = dump
        self.transaction.backup_bundle = bundle.with_dump(dump)
        self.manifest_service.add_artifact("database_dump", dump.path)
        if dump.degraded:
            self._advise(AdvisoryCode.BACKUP_DEGRADED, dump.message or "Database backup is incomplete.")

        console.print(f"[green]Backup completed: {bundle.root}[/green]")

    def prepare_release(self, target: ReleaseVersion) -> str:
        bundle_path = self.transaction.backup_bundle.root if self.transaction.backup_bundle else "-"
        try:
            artifact = self.installer.fetch(target, expected_sha256=self.release_sha256)
            self.release_dir = self.installer.stage(artifact)
        except FetchFailedError as exc:
            raise FetchFailedError(
                actionable_error(
                    "fetch_failed",
                    target_version=str(target),
                    reason=str(exc),
                    bundle_path=bundle_path,
                )
            ) from exc
        logger.info("Release %s staged in %s", target, self.release_dir)
        return self.release_dir

    def enter_maintenance(self):
        self.transaction.maintenance_entered = self.maintenance_gate.enter(self.moodle_path)
        if self.transaction.maintenance_entered:
            console.print("[green]Maintenance mode enabled.[/green]")

    def install_release(self) -> str:
        self.swap_started = True
        bundle_path = self.transaction.backup_bundle.root if self.transaction.backup_bundle else "-"
        try:
            strategy = self.installer.swap(
                self.release_dir,
                self.moodle_path,
                data_path=self.moodledata_path,
                strategy=self.swap_strategy,
            )
        except SwapFailedError as exc:
            raise SwapFailedError(
                actionable_error(
                    "swap_failed",
                    moodle_path=self.moodle_path,
                    reason=str(exc),
                    bundle_path=bundle_path,
                )
            ) from exc

        self.transaction.install_committed = True
        self.manifest_service.add_artifact("swap_strategy", strategy)
        console.print(
            f"[green]Moodle {self.transaction.target_version} code installed ({strategy}).[/green]"
        )
        return strategy

    def _resolve_migration_mode(self) -> MigrationMode:
        if self.migration_mode:
            return MigrationMode(self.migration_mode)

        if self._confirm(
            "automatic_migration",
            "Do you want the script to automatically upgrade the database?",
        ):
            return MigrationMode.AUTOMATIC

        console.print(
            "You can upgrade the database manually:\n"
            "  1. Via web interface: visit your Moodle site and follow the upgrade wizard\n"
            f"  2. Via CLI: cd {self.moodle_path} && php {UPGRADE_SCRIPT}"
        )
        if self._confirm("interactive_migration", "Do you want to run the upgrade now via CLI?"):
            return MigrationMode.INTERACTIVE
        return MigrationMode.SKIP

    def migrate(self) -> MigrationOutcome:
        self.migrator.ensure_max_input_vars(self.moodle_path)
        mode = self._resolve_migration_mode()
        outcome = self.migrator.run_migration(self.moodle_path, mode)
        self.transaction.migration_outcome = outcome
        self.transaction.migration_committed = outcome == MigrationOutcome.MIGRATED

        if self.transaction.migration_committed:
            self.migrator.purge_caches(self.moodle_path)
        return outcome

    def normalize_permissions(self):
        console.print("[blue]Fixing file permissions...[/blue]")
        self.installer.normalize_permissions(self.moodle_path, self.web_user, self.moodledata_path)

    def exit_maintenance(self):
        self.maintenance_gate.exit(self.moodle_path)
        if not self.maintenance_gate.verify(self.moodle_path):
            self._advise(
                AdvisoryCode.MAINTENANCE_FLAG_MISMATCH,
                f"Maintenance mode is still enabled in {os.path.join(self.moodle_path, CONFIG_FILE)}.",
            )

    def restart_services(self):
        restart = self.restart_web_server
        if restart is None:
            restart = self._confirm("restart_web_server", "Restart the web server now?")
        if not restart:
            return

        for service in WEB_SERVER_SERVICES:
            if not self.system_controller.is_service_active(service):
                continue
            try:
                self.system_controller.restart_service(service)
            except UpgraderError as exc:
                logger.warning("Could not restart %s: %s", service, exc)
                console.print(f"[yellow]Warning:[/yellow] Could not restart {service}.")
                return
            console.print(f"[green]{service} restarted.[/green]")
            return
        logger.warning("No running web server found among: %s", ", ".join(WEB_SERVER_SERVICES))

    def report_success(self):
        target = self.transaction.target_version
        installed = self.version_oracle.current_version(self.moodle_path)
        if installed.is_unknown or self.version_oracle.compare(installed, target) != Comparison.EQUAL:
            logger.warning("Installed version reads as %s, expected %s", installed, target)

        console.print(f"[bold green]Moodle update to {target} completed![/bold green]")
        console.print(
            "Post-upgrade checklist:\n"
            "  1. Log in as administrator and open Site administration > Notifications\n"
            "  2. Check that installed plugins are compatible with the new release\n"
            "  3. Review the site theme and custom settings"
        )
        console.print(self._status_table(installed))

    def _status_table(self, installed: ReleaseVersion) -> Table:
        transaction = self.transaction
        table = Table(title="Environment status")
        table.add_column("Item", style="cyan")
        table.add_column("Value")

        table.add_row("Installed version", str(installed))
        for result in transaction.gate_results:
            table.add_row(
                f"{result.component} version",
                f"{result.current or 'unknown'} ({result.status.value})",
            )

        max_input_vars = self.migrator.current_max_input_vars()
        table.add_row(
            "max_input_vars",
            f"{max_input_vars if max_input_vars is not None else 'unknown'} "
            f"(minimum {MIN_MAX_INPUT_VARS})",
        )
        table.add_row(
            "Maintenance mode",
            "enabled" if self.maintenance_gate.is_enabled(self.moodle_path) else "disabled",
        )
        if transaction.backup_bundle:
            table.add_row("Backup bundle", transaction.backup_bundle.root)
        if transaction.dump_result:
            table.add_row("Database backup", transaction.dump_result.status.value)
        if transaction.migration_outcome:
            table.add_row("Database upgrade", transaction.migration_outcome.value)
        for advisory in transaction.advisories:
            table.add_row("Advisory", advisory.message)
        return table

    def _abort(self):
        if not self.transaction.is_terminal:
            self._advance(TransactionState.ABORTED)

    def _recover(self):
        """Leaves the site in the least surprising state after an aborted run.

        A half-finished code swap keeps maintenance mode on. In every other case
        the site is unlocked: either the old code is untouched, or the new code is
        installed and Moodle itself redirects visitors to its upgrade page.
        """
        transaction = self.transaction
        if transaction.maintenance_entered:
            if self.swap_started and not transaction.install_committed:
                logger.warning("Code swap did not complete; maintenance mode stays enabled")
            else:
                if transaction.install_committed:
                    self._best_effort(self.normalize_permissions)
                self._best_effort(self.maintenance_gate.exit, self.moodle_path)

        self._print_recovery_summary()

    @staticmethod
    def _best_effort(callback, *args):
        try:
            callback(*args)
        except (OSError, UpgraderError) as exc:
            logger.error("Recovery action failed: %s", exc)

    def _restore_commands(self) -> List[str]:
        bundle = self.transaction.backup_bundle
        if bundle is None:
            return []

        root = self.moodle_path
        excludes = " ".join(
            f"--exclude /{name}"
            for name in sorted(self.installer.preserved_entries(root, self.moodledata_path))
        )
        commands = [
            f"rsync -a --delete {excludes} {bundle.code_snapshot_path}/ {root}/",
        ]
        if bundle.config_snapshot:
            commands.append(f"cp {bundle.config_snapshot} {os.path.join(root, CONFIG_FILE)}")

        dump = self.transaction.dump_result
        if bundle.database_dump_path and dump and dump.status == DumpStatus.FULL and self.credentials:
            if self.credentials.engine_kind == EngineKind.POSTGRES:
                commands.append(
                    f"psql -h {self.credentials.host} -U {self.credentials.user} "
                    f"-d postgres -f {bundle.database_dump_path}"
                )
            else:
                commands.append(
                    f"mysql -h {self.credentials.host} -u {self.credentials.user} -p "
                    f"{self.credentials.name} < {bundle.database_dump_path}"
                )
        return commands

    def _print_recovery_summary(self):
        transaction = self.transaction
        if not self.paths_validated:
            return

        maintenance = self.maintenance_gate.is_enabled(self.moodle_path)
        reached = transaction.aborted_from or transaction.state
        console.print(f"[bold]Upgrade stopped after state:[/bold] {reached.value}")
        console.print(
            f"Maintenance mode: {'[red]ENABLED[/red]' if maintenance else '[green]disabled[/green]'}"
        )

        if transaction.install_committed and not transaction.migration_committed:
            console.print(
                "The new code is installed but the database is not upgraded. Run:\n"
                f"  cd {self.moodle_path} && php {UPGRADE_SCRIPT}"
            )

        bundle = transaction.backup_bundle
        if bundle is not None and (self.swap_started or maintenance):
            console.print(f"Backup bundle: {bundle.root}")
            console.print("To restore the previous installation:")
            for command in self._restore_commands():
                console.print(f"  {command}")

        if maintenance:
            console.print(
                "Disable maintenance mode once the site is healthy by setting "
                f"$CFG->maintenance_enabled = false; in {os.path.join(self.moodle_path, CONFIG_FILE)}"
            )

    def cleanup(self):
        logger.info("Cleaning up temporary files...")
        self.installer.cleanup()

    def run(self) -> int:
        exit_code = 1
        manifest_status = "failed"
        manifest_error: Optional[str] = None

        try:
            logger.info("Starting MoodleUpgrader...")
            self.manifest_service.start_run(
                run_id=self.run_id,
                metadata=self._build_manifest_metadata(),
            )

            self._run_step("validate_paths", self.validate_paths)
            installation = self._run_step("read_installation", self.read_installation)
            target = self._run_step("resolve_target", self.resolve_target)
            self.transaction.target_version = target
            self.manifest_service.set_versions(
                current=str(installation.current_version),
                target=str(target),
            )
            console.print(f"[bold blue]Target Moodle version: {target}[/bold blue]")
            self._advance(TransactionState.VERSION_RESOLVED)

            self._run_step(
                "check_version",
                self.check_version_gate,
                installation.current_version,
                target,
            )
            self._run_step("check_compatibility", self.check_compatibility, target)
            self._advance(TransactionState.GATE_CHECKED)

            console.print(
                "[yellow]A backup will be created automatically, but keep a complete "
                "system backup at hand.[/yellow]"
            )
            if not self._confirm(
                "start_upgrade",
                f"Update Moodle from {installation.current_version} to {target}?",
            ):
                raise UpgradeCancelled("Update cancelled before backup.")
            self._run_step("create_backup", self.create_backup)
            self._advance(TransactionState.BACKED_UP)

            self._run_step("prepare_release", self.prepare_release, target)
            if self.transaction.dump_result and self.transaction.dump_result.degraded:
                console.print(
                    "[bold yellow]The database backup is incomplete; a failed upgrade may "
                    "not be fully recoverable.[/bold yellow]"
                )
            if not self._confirm(
                "replace_code",
                f"Replace the code in {self.moodle_path} with Moodle {target} now?",
            ):
                raise UpgradeCancelled("Update cancelled before the code was replaced.")

            self._run_step("enter_maintenance", self.enter_maintenance)
            self._advance(TransactionState.MAINTENANCE_ON)

            self._run_step("install_release", self.install_release)
            self._advance(TransactionState.INSTALLED)

            self._run_step("migrate", self.migrate)
            self._advance(TransactionState.MIGRATED)

            self._run_step("normalize_permissions", self.normalize_permissions)
            self._run_step("exit_maintenance", self.exit_maintenance)
            self._advance(TransactionState.MAINTENANCE_OFF)

            self._run_step("restart_services", self.restart_services)
            self._advance(TransactionState.DONE)
            self.report_success()

            manifest_status = "success"
            manifest_error = None
            exit_code = 0
            return exit_code

        except UpgradeCancelled as exc:
            console.print(f"[yellow]{exc or 'Update cancelled.'}[/yellow]")
            logger.info("Update cancelled: %s", exc)
            self._abort()
            if self.transaction.mutated:
                self._recover()
            manifest_status = "cancelled"
            manifest_error = str(exc) or "Cancelled by operator."
            exit_code = 1 if self.transaction.mutated else 0
            return exit_code
        except KeyboardInterrupt as exc:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            self._abort()
            self._recover()
            manifest_status = "aborted"
            manifest_error = "Operation cancelled by user."
            exit_code = 1
            return exit_code
        except UpgraderError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            self._abort()
            self._recover()
            manifest_status = "failed"
            manifest_error = str(exc)
            exit_code = 1
            return exit_code
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            self._abort()
            self._recover()
            manifest_status = "failed"
            manifest_error = str(exc)
            exit_code = 1
            return exit_code
        finally:
            self.manifest_service.set_state(self.transaction.state.value)
            maintenance_enabled = (
                self.maintenance_gate.is_enabled(self.moodle_path) if self.paths_validated else None
            )
            self.manifest_service.finalize(
                manifest_status,
                error=manifest_error,
                maintenance_enabled=maintenance_enabled,
            )
            self.cleanup()
