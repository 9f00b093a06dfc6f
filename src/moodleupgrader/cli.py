import logging
import os

import click
from rich.logging import RichHandler

from .constants import DEFAULT_DOWNLOAD_TIMEOUT, DEFAULT_FEED_LIMIT, DEFAULT_WEB_USER, RELEASE_FEED_URL
from .core import MoodleUpgrader, UpgraderError, console
from .services.config_loader import ConfigLoader
from .services.decisions import (
    AssumeNoPolicy,
    AssumeYesPolicy,
    InteractivePolicy,
    ScriptedPolicy,
)


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


def _build_policy(assume_yes: bool, assume_no: bool, answers):
    if assume_yes and assume_no:
        raise click.ClickException("--yes and --no cannot be used together.")

    if assume_yes:
        fallback = AssumeYesPolicy()
    elif assume_no:
        fallback = AssumeNoPolicy()
    else:
        fallback = InteractivePolicy(console=console)

    if answers:
        return ScriptedPolicy(answers, fallback=fallback)
    return fallback


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.command()
@click.argument("moodle_path", type=click.Path())
@click.argument("moodledata_path", type=click.Path())
@click.argument("target_version", required=False)
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help="Path to a YAML configuration file. Defaults to .moodleupgrader.yml if present.",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.option(
    "--yes",
    "assume_yes",
    is_flag=True,
    default=None,
    help="Answer yes to every confirmation (unattended run).",
)
@click.option(
    "--no",
    "assume_no",
    is_flag=True,
    default=None,
    help="Answer no to every confirmation; stops before anything is changed.",
)
@click.option(
    "--migration-mode",
    required=False,
    type=click.Choice(MoodleUpgrader.MIGRATION_MODES),
    help="How to upgrade the database: automatic, interactive or skip.",
)
@click.option(
    "--allow-runtime-override",
    is_flag=True,
    default=None,
    help="Allow continuing with a PHP version below the minimum after confirmation.",
)
@click.option(
    "--backup-root",
    required=False,
    type=click.Path(),
    help="Directory for backup bundles and run reports (default: system temp directory).",
)
@click.option(
    "--web-user",
    required=False,
    help=f"Owner of the installed code (default: {DEFAULT_WEB_USER}).",
)
@click.option(
    "--swap-strategy",
    required=False,
    type=click.Choice(MoodleUpgrader.SWAP_STRATEGIES),
    help="Replace the code by directory rename when possible (auto) or always in place.",
)
@click.option(
    "--feed-url",
    required=False,
    help="Release tag feed used to list available Moodle versions.",
)
@click.option(
    "--feed-limit",
    required=False,
    type=int,
    default=None,
    help=f"Number of release candidates to consider (default: {DEFAULT_FEED_LIMIT}).",
)
@click.option(
    "--download-timeout",
    required=False,
    type=float,
    default=None,
    help="HTTP timeout in seconds.",
)
@click.option(
    "--release-sha256",
    required=False,
    help="Expected SHA-256 checksum of the release archive.",
)
@click.option(
    "--allow-insecure-http",
    is_flag=True,
    default=None,
    help="Allow HTTP URLs (insecure). By default only HTTPS URLs are accepted.",
)
@click.option(
    "--restart-web-server/--no-restart-web-server",
    default=None,
    help="Restart the web server after the upgrade (asks when omitted).",
)
def main(
    moodle_path,
    moodledata_path,
    target_version,
    config,
    verbose,
    log_file,
    assume_yes,
    assume_no,
    migration_mode,
    allow_runtime_override,
    backup_root,
    web_user,
    swap_strategy,
    feed_url,
    feed_limit,
    download_timeout,
    release_sha256,
    allow_insecure_http,
    restart_web_server,
):
    """Upgrade the Moodle installation in MOODLE_PATH in place.

    TARGET_VERSION is a release such as 4.5.2, or `latest`. When omitted the
    available releases are listed and you are asked to pick one.
    """
    logger = logging.getLogger("moodleupgrader")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), ".moodleupgrader.yml")
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc

    target_version = _resolve_option(target_version, config_values, "target_version")
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")
    assume_yes = bool(_resolve_option(assume_yes, config_values, "assume_yes", default=False))
    assume_no = bool(_resolve_option(assume_no, config_values, "assume_no", default=False))
    migration_mode = _resolve_option(migration_mode, config_values, "migration_mode")
    allow_runtime_override = bool(
        _resolve_option(
            allow_runtime_override,
            config_values,
            "allow_runtime_override",
            default=False,
        )
    )
    backup_root = _resolve_option(backup_root, config_values, "backup_root")
    web_user = _resolve_option(web_user, config_values, "web_user", default=DEFAULT_WEB_USER)
    swap_strategy = _resolve_option(swap_strategy, config_values, "swap_strategy", default="auto")
    feed_url = _resolve_option(feed_url, config_values, "feed_url", default=RELEASE_FEED_URL)
    feed_limit = int(
        _resolve_option(feed_limit, config_values, "feed_limit", default=DEFAULT_FEED_LIMIT)
    )
    download_timeout = float(
        _resolve_option(
            download_timeout,
            config_values,
            "download_timeout",
            default=DEFAULT_DOWNLOAD_TIMEOUT,
        )
    )
    release_sha256 = _resolve_option(release_sha256, config_values, "release_sha256")
    allow_insecure_http = bool(
        _resolve_option(allow_insecure_http, config_values, "allow_insecure_http", default=False)
    )
    restart_web_server = _resolve_option(restart_web_server, config_values, "restart_web_server")
    answers = config_values.get("answers") or {}

    if target_version is not None:
        target_version = str(target_version)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    decision_policy = _build_policy(assume_yes, assume_no, answers)

    try:
        upgrader = MoodleUpgrader(
            moodle_path=moodle_path,
            moodledata_path=moodledata_path,
            target_version=target_version,
            migration_mode=migration_mode,
            allow_runtime_override=allow_runtime_override,
            backup_root=backup_root,
            web_user=web_user,
            swap_strategy=swap_strategy,
            feed_url=feed_url,
            feed_limit=feed_limit,
            download_timeout=download_timeout,
            release_sha256=release_sha256,
            allow_insecure_http=allow_insecure_http,
            restart_web_server=restart_web_server,
            decision_policy=decision_policy,
        )
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(upgrader.run())


if __name__ == "__main__":
    main()
