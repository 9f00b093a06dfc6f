"""Actionable error catalog for MoodleUpgrader."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "path_invalid": {
        "what": "{label} does not exist or is not a directory: {path}",
        "next": "Pass the Moodle code directory and the moodledata directory as arguments.",
    },
    "backup_root_inside_install": {
        "what": "Backup directory {backup_root} is inside the Moodle code directory {moodle_path}.",
        "next": "Pass a `--backup-root` outside {moodle_path}; the code swap replaces everything in it.",
    },
    "invalid_target_version": {
        "what": "Invalid target version `{target_version}`.",
        "next": "Use a release number such as `4.5.2`, `5.0` or the keyword `latest`.",
    },
    "downgrade_blocked": {
        "what": "Downgrade from {current_version} to {target_version} is not allowed.",
        "next": "Restore an older backup bundle instead of installing an older release.",
    },
    "runtime_below_minimum": {
        "what": "PHP {runtime_version} is too old for Moodle {target_version} (minimum {minimum}).",
        "next": "Upgrade PHP to at least {minimum} (recommended {recommended}) and run again.",
    },
    "feed_unavailable": {
        "what": "Could not load available Moodle versions: {reason}",
        "next": "Check network access to {feed_url} or pass an explicit target version.",
    },
    "insecure_http": {
        "what": "{label} uses insecure HTTP.",
        "next": "Switch to HTTPS or use `--allow-insecure-http` only for trusted endpoints.",
    },
    "fetch_failed": {
        "what": "Download of Moodle {target_version} failed: {reason}",
        "next": "Nothing was installed. Check network access and retry; the backup is in {bundle_path}.",
    },
    "swap_failed": {
        "what": "Replacing the Moodle code in {moodle_path} failed: {reason}",
        "next": (
            "The site stays in maintenance mode. Restore the previous code from the backup "
            "bundle {bundle_path} with the recovery commands below."
        ),
    },
    "migration_failed": {
        "what": "Moodle database upgrade failed (exit code {returncode}).",
        "next": "Run the upgrade manually: `cd {moodle_path} && php admin/cli/upgrade.php`.",
    },
    "upgrade_script_missing": {
        "what": "Upgrade script not found: {script_path}",
        "next": "The installed release is incomplete. Reinstall it or restore the code from the backup bundle.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
