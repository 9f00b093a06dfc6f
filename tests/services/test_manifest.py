import json

from moodleupgrader.services.manifest import ManifestService


class DummyLogger:
    def warning(self, *_args, **_kwargs):
        return None


def test_manifest_service_writes_run_metadata(tmp_path):
    manifest_file = tmp_path / "moodle_upgrade_20250101_120000.json"
    service = ManifestService(str(manifest_file), logger=DummyLogger())

    service.start_run("20250101_120000", {"moodle_path": "/var/www/moodle"})
    service.set_versions("4.5.0", "5.0.1")
    service.set_state("backed_up")
    service.step_started("create_backup")
    service.step_finished("create_backup", "success")
    service.add_advisory("backup_degraded", "Only database structure backed up")
    service.add_artifact("backup_bundle", "/tmp/moodle_backup_20250101_120000")
    service.finalize("failed", error="boom", maintenance_enabled=True)

    data = json.loads(manifest_file.read_text(encoding="utf-8"))

    assert data["run_id"] == "20250101_120000"
    assert data["status"] == "failed"
    assert data["state"] == "backed_up"
    assert data["versions"] == {"current": "4.5.0", "target": "5.0.1"}
    assert data["artifacts"]["backup_bundle"] == "/tmp/moodle_backup_20250101_120000"
    assert data["advisories"][0]["code"] == "backup_degraded"
    assert data["steps"][0]["name"] == "create_backup"
    assert data["steps"][0]["status"] == "success"
    assert data["maintenance_enabled"] is True
    assert data["error"] == "boom"


def test_manifest_service_warns_when_directory_is_unwritable(tmp_path):
    warnings = []

    class RecordingLogger:
        def warning(self, *args, **_kwargs):
            warnings.append(args)

    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", encoding="utf-8")
    service = ManifestService(str(blocker / "report.json"), logger=RecordingLogger())

    service.write()

    assert warnings
