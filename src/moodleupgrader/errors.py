"""Domain errors for MoodleUpgrader."""


class UpgraderError(RuntimeError):
    """Raised when the upgrade cannot continue safely."""


class PathInvalidError(UpgraderError):
    """Install or data path is missing or not a directory."""


class DowngradeBlockedError(UpgraderError):
    """Target version is older than the installed version."""


class RuntimeBelowMinimumError(UpgraderError):
    """PHP runtime is below the minimum required by the target release."""


class FeedUnavailableError(UpgraderError):
    """The release feed could not be queried or parsed."""


class FetchFailedError(UpgraderError):
    """The release archive could not be downloaded or staged."""


class SwapFailedError(UpgraderError):
    """Replacing the application code failed part-way."""


class MigrationFailedError(UpgraderError):
    """The Moodle database upgrade entry point reported a failure."""


class UpgradeCancelled(Exception):
    """Raised when the operator declines a confirmation prompt."""
