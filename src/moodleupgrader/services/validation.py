"""Input, privilege and URL validation helpers for MoodleUpgrader."""

import os
from typing import List, Optional
from urllib.parse import urlparse

from moodleupgrader.errors import PathInvalidError, UpgraderError
from moodleupgrader.errors_catalog import actionable_error
from moodleupgrader.models import ReleaseVersion
from moodleupgrader.services.versions import parse_version


class ValidationService:
    """Validates paths, operator input and protocol policy."""

    def __init__(self, allow_insecure_http: bool = False):
        self.allow_insecure_http = allow_insecure_http

    def is_url(self, location: str) -> bool:
        scheme = urlparse(location).scheme.lower()
        return scheme in {"http", "https"}

    def enforce_https_policy(self, location: str, label: str, logger, console):
        if not self.is_url(location):
            return

        scheme = urlparse(location).scheme.lower()
        if scheme == "http" and not self.allow_insecure_http:
            raise UpgraderError(actionable_error("insecure_http", label=label))

        if scheme == "http" and self.allow_insecure_http:
            logger.warning("Insecure HTTP enabled for %s: %s", label, location)
            console.print(
                f"[yellow]Warning:[/yellow] Using insecure HTTP for {label}. "
                "Prefer HTTPS whenever possible."
            )

    def validate_directory(self, path: str, label: str) -> str:
        if not path or not os.path.isdir(path):
            raise PathInvalidError(actionable_error("path_invalid", label=label, path=path))
        return os.path.abspath(path)

    @staticmethod
    def is_within(path: str, root: str) -> bool:
        real_path = os.path.realpath(path)
        real_root = os.path.realpath(root)
        try:
            return os.path.commonpath([real_path, real_root]) == real_root
        except ValueError:
            return False

    def validate_backup_root(self, backup_root: str, moodle_path: str):
        if self.is_within(backup_root, moodle_path):
            raise PathInvalidError(
                actionable_error(
                    "backup_root_inside_install",
                    backup_root=backup_root,
                    moodle_path=moodle_path,
                )
            )

    def privilege_warnings(self, paths: List[str]) -> List[str]:
        warnings: List[str] = []
        if hasattr(os, "geteuid") and os.geteuid() != 0:
            warnings.append("Script is not running as root. Some operations might fail.")

        for path in paths:
            if not os.access(path, os.W_OK | os.X_OK):
                warnings.append(f"No write permission on {path}. Some operations might fail.")
        return warnings

    def parse_target_version(self, value: str) -> ReleaseVersion:
        target = parse_version(value)
        if target.is_unknown:
            raise UpgraderError(actionable_error("invalid_target_version", target_version=value))
        return target

    def normalize_sha256(self, value: Optional[str], option_name: str) -> Optional[str]:
        if value is None:
            return None

        clean_value = value.strip().lower()
        if len(clean_value) != 64 or any(c not in "0123456789abcdef" for c in clean_value):
            raise UpgraderError(
                f"{option_name} must be a valid SHA-256 hash (64 hexadecimal characters)."
            )
        return clean_value
