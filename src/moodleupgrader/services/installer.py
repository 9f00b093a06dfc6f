"""Release download and code replacement for MoodleUpgrader."""

import os
import shutil
import tempfile
from datetime import datetime
from typing import List, Optional, Set

from moodleupgrader.constants import (
    CONFIG_FILE,
    CONFIG_MODE,
    DATA_MOUNT_NAME,
    DIR_MODE,
    FILE_MODE,
    RELEASE_ARCHIVE_URL,
    SCRIPT_MODE,
    VERSION_FILE,
)
from moodleupgrader.errors import FetchFailedError, SwapFailedError, UpgraderError
from moodleupgrader.models import ReleaseVersion

SWAP_BY_RENAME = "rename"
SWAP_IN_PLACE = "in-place"


class ReleaseInstaller:
    """Fetches a Moodle release and swaps it into the install root."""

    def __init__(
        self,
        logger,
        console,
        download_service,
        archive_service,
        filesystem_service,
        archive_url_template: str = RELEASE_ARCHIVE_URL,
    ):
        self.logger = logger
        self.console = console
        self.download_service = download_service
        self.archive_service = archive_service
        self.filesystem_service = filesystem_service
        self.archive_url_template = archive_url_template
        self.scratch_dirs: List[str] = []

    def fetch(self, target: ReleaseVersion, expected_sha256: Optional[str] = None) -> str:
        scratch_dir = tempfile.mkdtemp(prefix="moodle_download_")
        self.scratch_dirs.append(scratch_dir)
        artifact_path = os.path.join(scratch_dir, f"moodle-{target}.tar.gz")
        url = self.archive_url_template.format(version=target)

        self.console.print(f"[blue]Downloading Moodle version {target}...[/blue]")
        self.download_service.download_file(
            url,
            artifact_path,
            description=f"Moodle {target}",
            expected_sha256=expected_sha256,
        )
        return artifact_path

    def stage(self, artifact_path: str) -> str:
        """Extracts the archive next to it and returns the release tree root."""
        extract_dir = os.path.join(os.path.dirname(artifact_path), "extract")
        os.makedirs(extract_dir, exist_ok=True)

        self.logger.info("Extracting Moodle...")
        self.archive_service.safe_extract_tar(artifact_path, extract_dir)
        release_dir = self.archive_service.single_root(extract_dir)

        if not os.path.isfile(os.path.join(release_dir, VERSION_FILE)):
            raise FetchFailedError(
                f"Downloaded archive does not contain a Moodle release ({VERSION_FILE} missing)."
            )
        return release_dir

    def preserved_entries(self, install_root: str, data_path: Optional[str]) -> Set[str]:
        preserved = {CONFIG_FILE, DATA_MOUNT_NAME}
        if data_path:
            data_parent = os.path.dirname(os.path.realpath(data_path))
            if data_parent == os.path.realpath(install_root):
                preserved.add(os.path.basename(os.path.realpath(data_path)))
        return preserved

    def can_swap_by_rename(self, install_root: str, data_path: Optional[str]) -> bool:
        if os.path.ismount(install_root):
            return False

        for name in self.preserved_entries(install_root, data_path) - {CONFIG_FILE}:
            if os.path.lexists(os.path.join(install_root, name)):
                return False

        parent = os.path.dirname(os.path.abspath(install_root))
        return os.access(parent, os.W_OK | os.X_OK)

    def swap(
        self,
        release_dir: str,
        install_root: str,
        data_path: Optional[str] = None,
        strategy: str = "auto",
    ) -> str:
        """Replaces the code in ``install_root``; returns the strategy that was used."""
        config_file = os.path.join(install_root, CONFIG_FILE)
        preserved_config: Optional[bytes] = None
        if os.path.isfile(config_file):
            with open(config_file, "rb") as file_obj:
                preserved_config = file_obj.read()

        self.console.print("[blue]Installing new Moodle version...[/blue]")
        try:
            if strategy == "auto" and self.can_swap_by_rename(install_root, data_path):
                if self._swap_by_rename(release_dir, install_root):
                    return SWAP_BY_RENAME
                self.logger.warning(
                    "Atomic directory swap is not possible for %s. Falling back to in-place replacement.",
                    install_root,
                )
            self._swap_in_place(release_dir, install_root, data_path)
            return SWAP_IN_PLACE
        except UpgraderError:
            raise
        except (OSError, shutil.Error) as exc:
            raise SwapFailedError(str(exc)) from exc
        finally:
            self._restore_config(config_file, preserved_config)

    def _swap_by_rename(self, release_dir: str, install_root: str) -> bool:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        root = os.path.abspath(install_root).rstrip(os.sep)
        staging = f"{root}.staging-{stamp}"
        retired = f"{root}.previous-{stamp}"

        self.logger.info("Staging new release in %s", staging)
        try:
            shutil.copytree(release_dir, staging, symlinks=True)
            config_file = os.path.join(root, CONFIG_FILE)
            if os.path.isfile(config_file):
                shutil.copy2(config_file, os.path.join(staging, CONFIG_FILE))
            shutil.copystat(root, staging)
            if hasattr(os, "chown"):
                stat_result = os.stat(root)
                try:
                    os.chown(staging, stat_result.st_uid, stat_result.st_gid)
                except OSError as exc:
                    self.logger.debug("Could not copy ownership to %s: %s", staging, exc)
        except (OSError, shutil.Error):
            self.filesystem_service.cleanup_dir(staging)
            raise

        try:
            os.rename(root, retired)
        except OSError as exc:
            self.logger.debug("Rename of %s failed: %s", root, exc)
            self.filesystem_service.cleanup_dir(staging)
            return False

        try:
            os.rename(staging, root)
        except OSError:
            os.rename(retired, root)
            self.filesystem_service.cleanup_dir(staging)
            raise

        self.filesystem_service.cleanup_dir(retired)
        self.logger.info("Swapped %s to the new release by directory rename", root)
        return True

    def _swap_in_place(self, release_dir: str, install_root: str, data_path: Optional[str]):
        preserved = self.preserved_entries(install_root, data_path)

        self.logger.info("Removing old Moodle code (except %s)...", ", ".join(sorted(preserved)))
        for entry in os.listdir(install_root):
            if entry in preserved:
                continue
            self.filesystem_service.remove_entry(os.path.join(install_root, entry))

        self.logger.info("Copying new Moodle code...")
        for entry in os.listdir(release_dir):
            if entry in preserved:
                continue
            source = os.path.join(release_dir, entry)
            destination = os.path.join(install_root, entry)
            if os.path.isdir(source) and not os.path.islink(source):
                shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
            else:
                shutil.copy2(source, destination, follow_symlinks=False)

    def _restore_config(self, config_file: str, preserved: Optional[bytes]):
        if preserved is None:
            return

        current = None
        if os.path.isfile(config_file):
            with open(config_file, "rb") as file_obj:
                current = file_obj.read()
        if current == preserved:
            return

        self.logger.warning("Restoring preserved config.php in %s", os.path.dirname(config_file))
        with open(config_file, "wb") as file_obj:
            file_obj.write(preserved)

    def normalize_permissions(
        self,
        install_root: str,
        web_user: Optional[str],
        data_path: Optional[str] = None,
    ):
        preserved = self.preserved_entries(install_root, data_path) - {CONFIG_FILE}

        if web_user:
            if self.filesystem_service.set_tree_owner(install_root, web_user, skip=preserved):
                self.logger.info("Ownership of %s set to %s", install_root, web_user)

        self.filesystem_service.set_tree_permissions(
            install_root,
            dir_mode=DIR_MODE,
            file_mode=FILE_MODE,
            script_mode=SCRIPT_MODE,
            skip=preserved,
        )
        config_file = os.path.join(install_root, CONFIG_FILE)
        if os.path.isfile(config_file):
            self.filesystem_service.set_permissions(config_file, CONFIG_MODE)
        self.logger.info("File permissions fixed")

    def cleanup(self):
        while self.scratch_dirs:
            self.filesystem_service.cleanup_dir(self.scratch_dirs.pop())
