"""Archive extraction helpers for MoodleUpgrader."""

import os
import tarfile
from pathlib import Path

from moodleupgrader.errors import FetchFailedError


class ArchiveService:
    """Encapsulates safe release archive extraction logic."""

    def is_within_dir(self, base_dir: Path, candidate: Path) -> bool:
        try:
            return os.path.commonpath([str(base_dir), str(candidate)]) == str(base_dir)
        except ValueError:
            return False

    def safe_extract_tar(self, archive_path: str, destination_dir: str):
        base = Path(destination_dir).resolve()

        try:
            with tarfile.open(archive_path, "r:*") as tar_ref:
                members = tar_ref.getmembers()
                for member in members:
                    target_path = (base / member.name).resolve()

                    if not self.is_within_dir(base, target_path):
                        raise FetchFailedError(
                            f"Unsafe archive entry detected: `{member.name}`. "
                            "Archive extraction aborted to prevent path traversal."
                        )

                    if member.issym() or member.islnk():
                        link_target = (target_path.parent / member.linkname).resolve()
                        if member.islnk():
                            link_target = (base / member.linkname).resolve()
                        if not self.is_within_dir(base, link_target):
                            raise FetchFailedError(
                                f"Unsafe archive entry detected: `{member.name}` links outside the archive."
                            )

                    if member.isdev():
                        raise FetchFailedError(
                            f"Unsafe archive entry detected: `{member.name}` is a device file."
                        )

                extract_options = {"filter": "data"} if hasattr(tarfile, "data_filter") else {}
                for member in members:
                    if member.isdir():
                        (base / member.name).mkdir(parents=True, exist_ok=True)
                        continue
                    tar_ref.extract(member, str(base), set_attrs=False, **extract_options)
        except tarfile.TarError as exc:
            raise FetchFailedError(f"Invalid release archive: {archive_path} ({exc})") from exc
        except OSError as exc:
            raise FetchFailedError(f"Could not extract release archive {archive_path}: {exc}") from exc

    def single_root(self, destination_dir: str) -> str:
        """Returns the wrapper directory of an extracted GitHub archive (moodle-<version>/)."""
        entries = [entry for entry in os.listdir(destination_dir) if not entry.startswith(".")]
        if len(entries) == 1 and os.path.isdir(os.path.join(destination_dir, entries[0])):
            return os.path.join(destination_dir, entries[0])
        return destination_dir
