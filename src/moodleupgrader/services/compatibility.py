"""Runtime and datastore compatibility checks for MoodleUpgrader."""

import re
from typing import Optional, Tuple

from packaging import version

from moodleupgrader.errors import UpgraderError
from moodleupgrader.models import (
    EngineKind,
    GateResult,
    GateStatus,
    ReleaseVersion,
    RuntimeRequirement,
)

# (lowest release, first release no longer covered, requirement); newest range first.
RUNTIME_REQUIREMENTS = (
    ("4.4", None, RuntimeRequirement(minimum="8.1", recommended="8.3")),
    ("4.2", "4.4", RuntimeRequirement(minimum="8.0", recommended="8.2")),
    ("4.0", "4.2", RuntimeRequirement(minimum="7.4", recommended="8.1")),
)

DATASTORE_MINIMUMS = {
    "mariadb": "10.11.0",
    "mysql": "8.0.0",
}

NUMERIC_PREFIX_PATTERN = re.compile(r"\d+(?:\.\d+)*")
CLIENT_VERSION_PATTERN = re.compile(r"\d+\.\d+\.\d+")


def _numeric_version(text: Optional[str]) -> Optional[version.Version]:
    if not text:
        return None
    match = NUMERIC_PREFIX_PATTERN.search(text)
    if not match:
        return None
    return version.Version(match.group(0))


class CompatibilityGate:
    """Decides whether PHP and the database server can run a target release."""

    def __init__(self, php_runtime, command_runner, logger):
        self.php_runtime = php_runtime
        self.command_runner = command_runner
        self.logger = logger

    def required_runtime(self, target: ReleaseVersion) -> RuntimeRequirement:
        newest = RUNTIME_REQUIREMENTS[0][2]
        if target.is_unknown:
            return newest

        for lowest, upper, requirement in RUNTIME_REQUIREMENTS:
            if target.parsed < version.Version(lowest):
                continue
            if upper is not None and target.parsed >= version.Version(upper):
                continue
            return requirement

        return newest

    def evaluate(self, current: Optional[str], required: RuntimeRequirement) -> GateStatus:
        current_version = _numeric_version(current)
        if current_version is None:
            return GateStatus.UNDETERMINED
        if current_version < version.Version(required.minimum):
            return GateStatus.BELOW_MINIMUM
        if current_version < version.Version(required.recommended):
            return GateStatus.BELOW_RECOMMENDED
        return GateStatus.SATISFIED

    def evaluate_datastore(self, engine: str, current: Optional[str]) -> GateStatus:
        minimum = DATASTORE_MINIMUMS.get(engine)
        current_version = _numeric_version(current)
        if minimum is None or current_version is None:
            return GateStatus.UNDETERMINED
        if current_version < version.Version(minimum):
            return GateStatus.BELOW_MINIMUM
        return GateStatus.SATISFIED

    def check_runtime(self, target: ReleaseVersion) -> GateResult:
        required = self.required_runtime(target)
        current = self.php_runtime.version()
        status = self.evaluate(current, required)

        self.logger.info("Current PHP version: %s", current or "unknown")
        self.logger.info("Minimum PHP version for Moodle %s: %s", target, required.minimum)
        self.logger.info("Recommended PHP version: %s", required.recommended)

        return GateResult(
            component="php",
            status=status,
            current=current,
            minimum=required.minimum,
            recommended=required.recommended,
        )

    def probe_datastore(self, engine_kind: Optional[EngineKind] = None) -> Tuple[str, Optional[str]]:
        """Returns the local database server flavour and version from its client binary."""
        if engine_kind == EngineKind.POSTGRES:
            output = self._client_version(["psql", "--version"])
            match = NUMERIC_PREFIX_PATTERN.search(output or "")
            return "postgresql", match.group(0) if match else None

        output = self._client_version(["mysql", "--version"])
        if output is None:
            return "mysql", None

        engine = "mariadb" if "mariadb" in output.lower() else "mysql"
        match = CLIENT_VERSION_PATTERN.search(output)
        return engine, match.group(0) if match else None

    def check_datastore(self, engine_kind: Optional[EngineKind] = None) -> GateResult:
        engine, current = self.probe_datastore(engine_kind)
        status = self.evaluate_datastore(engine, current)
        self.logger.info("Current database: %s %s", engine, current or "unknown")
        return GateResult(
            component=engine,
            status=status,
            current=current,
            minimum=DATASTORE_MINIMUMS.get(engine),
        )

    def _client_version(self, cmd) -> Optional[str]:
        try:
            result = self.command_runner.run(cmd, check=False, capture_output=True)
        except UpgraderError as exc:
            self.logger.warning("Database client not found: %s", exc)
            return None
        if result.returncode != 0:
            return None
        return (result.stdout or "").strip() or None
