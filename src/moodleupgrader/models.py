"""Shared domain models for MoodleUpgrader."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import FrozenSet, List, Optional

from packaging import version

from .errors import UpgraderError


@dataclass(frozen=True)
class ReleaseVersion:
    """A `major.minor[.patch]` release number, or the unknown version."""

    text: str
    parsed: Optional[version.Version] = None

    @property
    def is_unknown(self) -> bool:
        return self.parsed is None

    def __str__(self) -> str:
        return self.text if self.parsed is not None else "unknown"


UNKNOWN_VERSION = ReleaseVersion(text="unknown", parsed=None)


class Comparison(str, Enum):
    LESS = "less"
    EQUAL = "equal"
    GREATER = "greater"
    INCOMPARABLE = "incomparable"


class GateStatus(str, Enum):
    SATISFIED = "satisfied"
    BELOW_MINIMUM = "below_minimum"
    BELOW_RECOMMENDED = "below_recommended"
    UNDETERMINED = "undetermined"


@dataclass(frozen=True)
class RuntimeRequirement:
    minimum: str
    recommended: str


@dataclass(frozen=True)
class GateResult:
    """Outcome of one compatibility check."""

    component: str
    status: GateStatus
    current: Optional[str]
    minimum: Optional[str]
    recommended: Optional[str] = None


class EngineKind(str, Enum):
    MYSQL_FAMILY = "mysql-family"
    POSTGRES = "postgres"


@dataclass(frozen=True)
class DatastoreCredentials:
    """Database connection settings read from config.php."""

    engine_kind: EngineKind
    host: str
    port: str
    name: str
    user: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class InstallationState:
    moodle_path: str
    moodledata_path: str
    current_version: ReleaseVersion
    config_blob: Optional[bytes] = field(default=None, repr=False)


class DumpStatus(str, Enum):
    FULL = "full"
    STRUCTURE_ONLY = "structure_only"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class DumpResult:
    status: DumpStatus
    path: Optional[str] = None
    message: str = ""

    @property
    def degraded(self) -> bool:
        return self.status != DumpStatus.FULL


@dataclass(frozen=True)
class BackupBundle:
    """Recovery artifact created before any destructive step."""

    bundle_id: str
    root: str
    code_snapshot_path: str
    config_snapshot: Optional[str]
    data_subtree_snapshots: FrozenSet[str] = frozenset()
    database_dump_path: Optional[str] = None
    database_structure_only: bool = False

    def with_dump(self, result: DumpResult) -> "BackupBundle":
        return replace(
            self,
            database_dump_path=result.path,
            database_structure_only=result.status == DumpStatus.STRUCTURE_ONLY,
        )


class MigrationMode(str, Enum):
    AUTOMATIC = "automatic"
    INTERACTIVE = "interactive"
    SKIP = "skip"


class MigrationOutcome(str, Enum):
    MIGRATED = "migrated"
    SKIPPED = "skipped"


class TransactionState(str, Enum):
    START = "start"
    VERSION_RESOLVED = "version_resolved"
    GATE_CHECKED = "gate_checked"
    BACKED_UP = "backed_up"
    MAINTENANCE_ON = "maintenance_on"
    INSTALLED = "installed"
    MIGRATED = "migrated"
    MAINTENANCE_OFF = "maintenance_off"
    DONE = "done"
    ABORTED = "aborted"


TRANSACTION_ORDER = (
    TransactionState.START,
    TransactionState.VERSION_RESOLVED,
    TransactionState.GATE_CHECKED,
    TransactionState.BACKED_UP,
    TransactionState.MAINTENANCE_ON,
    TransactionState.INSTALLED,
    TransactionState.MIGRATED,
    TransactionState.MAINTENANCE_OFF,
    TransactionState.DONE,
)


class AdvisoryCode(str, Enum):
    RUNTIME_BELOW_RECOMMENDED = "runtime_below_recommended"
    RUNTIME_BELOW_MINIMUM_OVERRIDDEN = "runtime_below_minimum_overridden"
    RUNTIME_UNDETERMINED = "runtime_undetermined"
    DATASTORE_BELOW_MINIMUM = "datastore_below_minimum"
    BACKUP_DEGRADED = "backup_degraded"
    MAINTENANCE_FLAG_MISMATCH = "maintenance_flag_mismatch"


@dataclass(frozen=True)
class Advisory:
    code: AdvisoryCode
    message: str


@dataclass
class UpgradeTransaction:
    """State of a single upgrade attempt."""

    current_version: ReleaseVersion = UNKNOWN_VERSION
    target_version: Optional[ReleaseVersion] = None
    state: TransactionState = TransactionState.START
    gate_results: List[GateResult] = field(default_factory=list)
    backup_bundle: Optional[BackupBundle] = None
    dump_result: Optional[DumpResult] = None
    maintenance_entered: bool = False
    install_committed: bool = False
    migration_committed: bool = False
    migration_outcome: Optional[MigrationOutcome] = None
    advisories: List[Advisory] = field(default_factory=list)
    aborted_from: Optional[TransactionState] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (TransactionState.DONE, TransactionState.ABORTED)

    @property
    def mutated(self) -> bool:
        return self.maintenance_entered or self.install_committed

    def advance(self, new_state: TransactionState):
        if self.is_terminal:
            raise UpgraderError(f"Transaction already finished in state '{self.state.value}'.")

        current_index = TRANSACTION_ORDER.index(self.state)
        if new_state == TransactionState.ABORTED:
            self.aborted_from = self.state
            self.state = new_state
            return

        if (
            new_state in TRANSACTION_ORDER
            and TRANSACTION_ORDER.index(new_state) == current_index + 1
        ):
            self.state = new_state
            return

        raise UpgraderError(
            f"Illegal transition from '{self.state.value}' to '{new_state.value}'."
        )

    def add_advisory(self, code: AdvisoryCode, message: str):
        self.advisories.append(Advisory(code=code, message=message))

    def has_advisory(self, code: AdvisoryCode) -> bool:
        return any(advisory.code == code for advisory in self.advisories)
