from moodleupgrader.models import EngineKind
from moodleupgrader.services.site_config import SiteConfigReader


class DummyLogger:
    def __init__(self):
        self.warnings = []

    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *args, **_kwargs):
        self.warnings.append(args)


def write_config(root, body):
    (root / "config.php").write_text("<?php\n" + body + "require_once(__DIR__ . '/lib/setup.php');\n", encoding="utf-8")


def test_read_credentials_for_mysql_family(tmp_path):
    write_config(
        tmp_path,
        "$CFG->dbtype    = 'mariadb';\n"
        "$CFG->dbhost    = 'db.internal';\n"
        "$CFG->dbname    = 'moodle';\n"
        "$CFG->dbuser    = 'moodle';\n"
        "$CFG->dbpass    = 'it\\'s secret';\n",
    )

    credentials = SiteConfigReader(DummyLogger()).read_credentials(str(tmp_path))

    assert credentials.engine_kind == EngineKind.MYSQL_FAMILY
    assert credentials.host == "db.internal"
    assert credentials.port == "3306"
    assert credentials.secret == "it's secret"
    assert "secret" not in repr(credentials)


def test_read_credentials_keeps_semicolons_and_escapes_inside_quotes(tmp_path):
    write_config(
        tmp_path,
        "$CFG->dbtype    = 'mysqli';\n"
        "$CFG->dbname    = 'moodle';\n"
        "$CFG->dbuser    = \"moodle;admin\";\n"
        "$CFG->dbpass    = 'pa;ss\\'w\\\\ord';  // trailing; comment\n",
    )

    credentials = SiteConfigReader(DummyLogger()).read_credentials(str(tmp_path))

    assert credentials.user == "moodle;admin"
    assert credentials.secret == "pa;ss'w\\ord"


def test_read_settings_handles_unquoted_values():
    settings = SiteConfigReader(DummyLogger()).read_settings(
        "<?php\n$CFG->dbport = 3307;\n$CFG->directorypermissions = 02777;\n"
    )

    assert settings["dbport"] == "3307"
    assert settings["directorypermissions"] == "02777"


def test_read_credentials_uses_dboptions_port(tmp_path):
    write_config(
        tmp_path,
        "$CFG->dbtype    = 'pgsql';\n"
        "$CFG->dbhost    = 'localhost';\n"
        "$CFG->dbname    = 'moodle';\n"
        "$CFG->dbuser    = 'postgres';\n"
        "$CFG->dbpass    = 'pw';\n"
        "$CFG->dboptions = array('dbpersist' => 0, 'dbport' => '6432');\n",
    )

    credentials = SiteConfigReader(DummyLogger()).read_credentials(str(tmp_path))

    assert credentials.engine_kind == EngineKind.POSTGRES
    assert credentials.port == "6432"


def test_read_credentials_defaults_postgres_port(tmp_path):
    write_config(
        tmp_path,
        "$CFG->dbtype = 'pgsql';\n$CFG->dbname = 'moodle';\n$CFG->dbuser = 'postgres';\n",
    )

    credentials = SiteConfigReader(DummyLogger()).read_credentials(str(tmp_path))

    assert credentials.port == "5432"
    assert credentials.host == "localhost"


def test_read_credentials_rejects_unknown_engine(tmp_path):
    write_config(tmp_path, "$CFG->dbtype = 'sqlsrv';\n$CFG->dbname = 'moodle';\n$CFG->dbuser = 'sa';\n")
    logger = DummyLogger()

    assert SiteConfigReader(logger).read_credentials(str(tmp_path)) is None
    assert logger.warnings


def test_read_credentials_without_config_file(tmp_path):
    assert SiteConfigReader(DummyLogger()).read_credentials(str(tmp_path)) is None


def test_read_bytes_returns_exact_content(tmp_path):
    content = b"<?php\r\n$CFG->wwwroot = 'https://lms.example';\r\n"
    (tmp_path / "config.php").write_bytes(content)

    assert SiteConfigReader(DummyLogger()).read_bytes(str(tmp_path)) == content
