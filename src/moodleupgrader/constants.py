"""Shared constants for MoodleUpgrader."""

DIR_MODE = 0o755
FILE_MODE = 0o644
SCRIPT_MODE = 0o755
CONFIG_MODE = 0o600
CREDENTIALS_MODE = 0o600

CONFIG_FILE = "config.php"
VERSION_FILE = "version.php"
DATA_MOUNT_NAME = "moodledata"
HTACCESS_FILE = ".htaccess"
MAINTENANCE_SNAPSHOT_SUFFIX = ".maintenance_backup"

UPGRADE_SCRIPT = "admin/cli/upgrade.php"
PURGE_CACHES_SCRIPT = "admin/cli/purge_caches.php"

BUNDLE_PREFIX = "moodle_backup_"
BUNDLE_CODE_DIR = "moodle_code"
BUNDLE_CONFIG_FILE = "config.php.backup"
BUNDLE_DATA_DIR = "moodledata_essential"
BUNDLE_DUMP_FILE = "database_backup.sql"
BUNDLE_STRUCTURE_FILE = "database_structure.sql"
ESSENTIAL_DATA_DIRS = ("cache", "sessions", "temp", "trashdir")
REPORT_PREFIX = "moodle_upgrade_"

RELEASE_FEED_URL = "https://api.github.com/repos/moodle/moodle/tags"
RELEASE_ARCHIVE_URL = "https://github.com/moodle/moodle/archive/v{version}.tar.gz"
DEFAULT_FEED_LIMIT = 10
DEFAULT_DOWNLOAD_TIMEOUT = 60.0

DEFAULT_WEB_USER = "www-data"
WEB_SERVER_SERVICES = ("apache2", "nginx")

MIN_MAX_INPUT_VARS = 5000
PHP_FPM_POOL_CONF = "/etc/php/{php_version}/fpm/pool.d/www.conf"
PHP_FPM_SERVICE = "php{php_version}-fpm"
PHP_PACKAGE_SUFFIXES = (
    "",
    "-cli",
    "-fpm",
    "-mysql",
    "-pgsql",
    "-xml",
    "-mbstring",
    "-curl",
    "-zip",
    "-gd",
    "-intl",
    "-ldap",
    "-soap",
)

MIGRATION_MODES = ("automatic", "interactive", "skip")
SWAP_STRATEGIES = ("auto", "in-place")

DECISION_KEYS = (
    "proceed_same_version",
    "proceed_unknown_version",
    "install_runtime",
    "override_runtime",
    "start_upgrade",
    "replace_code",
    "automatic_migration",
    "interactive_migration",
    "restart_web_server",
)
