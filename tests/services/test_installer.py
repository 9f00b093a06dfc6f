import io
import os
import stat
import tarfile

import pytest
from rich.console import Console

from moodleupgrader.errors import FetchFailedError, SwapFailedError
from moodleupgrader.services.archive import ArchiveService
from moodleupgrader.services.filesystem import FileSystemService
from moodleupgrader.services.installer import SWAP_BY_RENAME, SWAP_IN_PLACE, ReleaseInstaller
from moodleupgrader.services.versions import parse_version


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class FakeDownloadService:
    def __init__(self, files):
        self.files = files
        self.urls = []

    def download_file(self, url, dest_path, description="", expected_sha256=None):
        self.urls.append(url)
        with tarfile.open(dest_path, "w:gz") as tar:
            for name, content in self.files.items():
                data = content.encode("utf-8")
                info = tarfile.TarInfo(name)
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))


RELEASE_FILES = {
    "moodle-5.0.1/version.php": "<?php\n$release = '5.0.1 (Build: 20250609)';\n",
    "moodle-5.0.1/index.php": "<?php // new\n",
    "moodle-5.0.1/config-dist.php": "<?php // template\n",
}


def build_installer(files=None):
    console = Console(record=True)
    return ReleaseInstaller(
        logger=DummyLogger(),
        console=console,
        download_service=FakeDownloadService(files or RELEASE_FILES),
        archive_service=ArchiveService(),
        filesystem_service=FileSystemService(logger=DummyLogger(), console=console),
    )


@pytest.fixture
def install_root(tmp_path):
    root = tmp_path / "moodle"
    root.mkdir()
    (root / "index.php").write_text("<?php // old\n", encoding="utf-8")
    (root / "obsolete.php").write_text("<?php // removed upstream\n", encoding="utf-8")
    (root / "config.php").write_bytes(b"<?php\r\n$CFG->dbtype = 'mysqli'; // keep me\r\n")
    return root


def test_fetch_and_stage_release(tmp_path):
    installer = build_installer()

    artifact = installer.fetch(parse_version("5.0.1"))
    release_dir = installer.stage(artifact)

    assert installer.download_service.urls == ["https://github.com/moodle/moodle/archive/v5.0.1.tar.gz"]
    assert os.path.basename(release_dir) == "moodle-5.0.1"
    assert os.path.isfile(os.path.join(release_dir, "version.php"))

    installer.cleanup()
    assert not os.path.exists(artifact)


def test_stage_rejects_archive_without_version_file():
    installer = build_installer({"moodle-5.0.1/index.php": "<?php\n"})
    artifact = installer.fetch(parse_version("5.0.1"))

    with pytest.raises(FetchFailedError, match="version.php missing"):
        installer.stage(artifact)

    installer.cleanup()


def test_swap_by_rename_replaces_code_and_keeps_config(install_root):
    installer = build_installer()
    release_dir = installer.stage(installer.fetch(parse_version("5.0.1")))
    config_before = (install_root / "config.php").read_bytes()

    strategy = installer.swap(release_dir, str(install_root), data_path=None)

    assert strategy == SWAP_BY_RENAME
    assert (install_root / "index.php").read_text(encoding="utf-8") == "<?php // new\n"
    assert not (install_root / "obsolete.php").exists()
    assert (install_root / "config.php").read_bytes() == config_before
    leftovers = [name for name in os.listdir(install_root.parent) if name.startswith("moodle.")]
    assert leftovers == []
    installer.cleanup()


def test_swap_in_place_keeps_nested_moodledata(install_root):
    data = install_root / "moodledata"
    (data / "filedir").mkdir(parents=True)
    (data / "filedir" / "blob").write_bytes(b"user content")
    installer = build_installer()
    release_dir = installer.stage(installer.fetch(parse_version("5.0.1")))

    strategy = installer.swap(release_dir, str(install_root), data_path=str(data))

    assert strategy == SWAP_IN_PLACE
    assert (data / "filedir" / "blob").read_bytes() == b"user content"
    assert (install_root / "index.php").read_text(encoding="utf-8") == "<?php // new\n"
    assert not (install_root / "obsolete.php").exists()
    installer.cleanup()


def test_swap_in_place_strategy_is_honoured(install_root):
    installer = build_installer()
    release_dir = installer.stage(installer.fetch(parse_version("5.0.1")))

    assert installer.swap(release_dir, str(install_root), strategy="in-place") == SWAP_IN_PLACE
    assert (install_root / "config-dist.php").exists()
    installer.cleanup()


def test_swap_failure_is_reported_and_config_restored(install_root, monkeypatch):
    installer = build_installer()
    release_dir = installer.stage(installer.fetch(parse_version("5.0.1")))
    config_before = (install_root / "config.php").read_bytes()

    def broken_copy(*_args, **_kwargs):
        (install_root / "config.php").write_text("clobbered", encoding="utf-8")
        raise OSError("No space left on device")

    monkeypatch.setattr("moodleupgrader.services.installer.shutil.copy2", broken_copy)

    with pytest.raises(SwapFailedError, match="No space left"):
        installer.swap(release_dir, str(install_root), strategy="in-place")

    assert (install_root / "config.php").read_bytes() == config_before
    installer.cleanup()


def test_normalize_permissions_locks_down_config(install_root):
    installer = build_installer()

    installer.normalize_permissions(str(install_root), web_user=None)

    assert stat.S_IMODE(os.stat(install_root / "config.php").st_mode) == 0o600
    assert stat.S_IMODE(os.stat(install_root / "index.php").st_mode) == 0o644


def test_preserved_entries_include_data_directory_inside_root(install_root):
    installer = build_installer()
    data = install_root / "sitedata"
    data.mkdir()

    preserved = installer.preserved_entries(str(install_root), str(data))

    assert preserved == {"config.php", "moodledata", "sitedata"}
