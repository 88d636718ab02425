"""Tests for artifact resolution, integrity checks and the restore flow."""

import datetime
import os
import shutil
from pathlib import Path
from unittest.mock import patch

import pytest

from archon_ops.modules.backup.index import BackupEngine
from archon_ops.modules.restore.index import ResolvedArtifact, RestoreEngine, confirm_interactively
from archon_ops.modules.restore.safety import validate_target_path
from archon_ops.utils.errors import (
    DecryptionFailed,
    InsufficientStorage,
    IntegrityCheckFailed,
    NoBackupFound,
    UnsafeTargetPath,
)
from archon_ops.utils.state_manager import StateManager

from conftest import StepClock, make_config, read_tree, write_tree


def _backup(config, controller, notifier, mode="full", start=None):
    clock = StepClock(start or datetime.datetime(2026, 3, 1, 12, 0, 0))
    ref = BackupEngine(config, controller, notifier, clock=clock, sleep=lambda s: None).create_backup(mode)
    controller.calls.clear()
    return ref


def _restorer(config, controller, notifier, **kwargs):
    return RestoreEngine(config, controller, notifier, sleep=lambda s: None,
                         clock=StepClock(datetime.datetime(2026, 3, 2, 9, 0, 0)), **kwargs)


def _damage_live(layout):
    (layout["appdata"] / "server" / "state.db").write_bytes(b"half-written garbage")
    (layout["appdata"] / "server" / "junk.tmp").write_text("stray")
    shutil.rmtree(layout["data"] / "docs" / "guide")


class TestRoundTrip:
    def test_restore_latest_reproduces_backed_up_trees(self, config, controller, notifier, layout):
        expected_app = read_tree(layout["appdata"])
        expected_docs = read_tree(layout["data"])
        _backup(config, controller, notifier, "incremental")
        _damage_live(layout)

        outcome = _restorer(config, controller, notifier).restore("latest")

        assert outcome.status == "verified"
        assert outcome.success
        assert outcome.storage_form == "snapshot"
        assert read_tree(layout["appdata"]) == expected_app
        assert read_tree(layout["data"]) == expected_docs
        assert controller.calls == ["down", "start_all"]
        assert all(controller.running.values())
        assert "Archon Restore Complete" in notifier.subjects()

    def test_restore_latest_after_linked_incremental(self, config, controller, notifier, layout):
        first = _backup(config, controller, notifier, "full", start=datetime.datetime(2026, 3, 1, 1, 0, 0))
        (layout["data"] / "docs" / "guide" / "intro.md").write_text("intro v2, rewritten\n")
        (layout["data"] / "docs" / "notes.md").write_text("added after the full backup\n")
        expected_app = read_tree(layout["appdata"])
        expected_docs = read_tree(layout["data"])
        second = _backup(config, controller, notifier, "incremental", start=datetime.datetime(2026, 3, 1, 2, 0, 0))
        db = Path("appdata") / "server" / "state.db"
        assert os.stat(Path(second.snapshot_path) / db).st_ino == os.stat(Path(first.snapshot_path) / db).st_ino
        _damage_live(layout)

        outcome = _restorer(config, controller, notifier).restore("latest")

        assert outcome.status == "verified"
        assert outcome.artifact == second.name
        assert read_tree(layout["appdata"]) == expected_app
        assert read_tree(layout["data"]) == expected_docs
        assert os.stat(layout["appdata"] / "server" / "state.db").st_ino != \
            os.stat(Path(second.snapshot_path) / db).st_ino

    def test_safety_snapshot_discarded_after_verification(self, config, controller, notifier):
        _backup(config, controller, notifier)

        _restorer(config, controller, notifier).restore("latest")

        assert list(config.safety_path.iterdir()) == []
        assert StateManager(config.backup_path).get_safety_record() is None

    def test_restore_from_compressed_archive(self, config, controller, notifier, layout):
        expected_docs = read_tree(layout["data"])
        ref = _backup(config, controller, notifier)
        shutil.rmtree(ref.snapshot_path)
        _damage_live(layout)

        outcome = _restorer(config, controller, notifier).restore("latest")

        assert outcome.status == "verified"
        assert outcome.storage_form == "compressed"
        assert read_tree(layout["data"]) == expected_docs
        assert not (config.scratch_path / ref.name).exists()

    def test_restore_from_encrypted_archive(self, layout, controller, notifier):
        config = make_config(layout, BACKUP_ENCRYPTION="true", BACKUP_ENCRYPTION_KEY="passphrase")
        expected_app = read_tree(layout["appdata"])
        ref = _backup(config, controller, notifier)
        shutil.rmtree(ref.snapshot_path)
        _damage_live(layout)

        outcome = _restorer(config, controller, notifier).restore(ref.name)

        assert outcome.storage_form == "encrypted"
        assert outcome.status == "verified"
        assert read_tree(layout["appdata"]) == expected_app

    def test_prompted_passphrase_used_when_key_not_configured(self, layout, controller, notifier):
        backup_config = make_config(layout, BACKUP_ENCRYPTION="true", BACKUP_ENCRYPTION_KEY="passphrase")
        ref = _backup(backup_config, controller, notifier)
        shutil.rmtree(ref.snapshot_path)

        outcome = _restorer(make_config(layout), controller, notifier,
                            passphrase_prompt=lambda: "passphrase").restore("latest")

        assert outcome.status == "verified"

    def test_wrong_passphrase_fails_before_services_stop(self, layout, controller, notifier):
        backup_config = make_config(layout, BACKUP_ENCRYPTION="true", BACKUP_ENCRYPTION_KEY="passphrase")
        ref = _backup(backup_config, controller, notifier)
        shutil.rmtree(ref.snapshot_path)
        _damage_live(layout)
        damaged = read_tree(layout["appdata"])

        with pytest.raises(DecryptionFailed):
            _restorer(make_config(layout), controller, notifier,
                      passphrase_prompt=lambda: "guess").restore("latest")

        assert controller.calls == []
        assert read_tree(layout["appdata"]) == damaged


class TestConfigurationMerge:
    def test_backup_settings_with_host_credentials(self, config, controller, notifier, layout):
        _backup(config, controller, notifier)
        env_file = layout["deploy"] / ".env"
        env_file.write_text(
            "SUPABASE_URL=https://example.supabase.co\n"
            "SUPABASE_SERVICE_KEY=rotated-key\n"
            "LOG_LEVEL=debug\n"
        )

        _restorer(config, controller, notifier).restore("latest")

        merged = env_file.read_text()
        assert "LOG_LEVEL=info" in merged
        assert "LOG_LEVEL=debug" not in merged
        assert "SUPABASE_SERVICE_KEY=rotated-key" in merged
        assert "super-secret" not in merged
        assert "LOG_LEVEL=debug" in (layout["deploy"] / ".env.backup").read_text()

    def test_operator_local_files_survive_restore(self, config, controller, notifier, layout):
        write_tree(layout["appdata"], {"server/settings.json": '{"theme": "backup"}'})
        _backup(config, controller, notifier)
        write_tree(layout["appdata"], {
            "server/settings.json": '{"theme": "local"}',
            "server/certs/tls.pem": "-----BEGIN CERTIFICATE-----",
        })

        _restorer(config, controller, notifier).restore("latest")

        assert (layout["appdata"] / "server" / "settings.json").read_text() == '{"theme": "local"}'
        assert (layout["appdata"] / "server" / "certs" / "tls.pem").is_file()


class TestPreflightChecks:
    def test_tampered_snapshot_is_rejected_before_any_change(self, config, controller, notifier, layout):
        ref = _backup(config, controller, notifier)
        with open(Path(ref.snapshot_path) / "documents" / "docs" / "readme.md", "a") as f:
            f.write("tampered\n")
        _damage_live(layout)
        damaged = read_tree(layout["appdata"])

        with pytest.raises(IntegrityCheckFailed):
            _restorer(config, controller, notifier).restore("latest")

        assert controller.calls == []
        assert read_tree(layout["appdata"]) == damaged
        assert not config.safety_path.exists()

    def test_malformed_sidecar_is_rejected(self, config, controller, notifier):
        ref = _backup(config, controller, notifier)
        Path(ref.snapshot_path + ".sha256").write_text("not-a-digest\n")

        with pytest.raises(IntegrityCheckFailed):
            _restorer(config, controller, notifier).restore("latest")
        assert controller.calls == []

    def test_unsafe_target_is_rejected_before_any_change(self, config, controller, notifier, layout):
        _backup(config, controller, notifier)
        unsafe = make_config(layout, ARCHON_ALLOWED_BASES=str(layout["deploy"]))
        before = read_tree(layout["appdata"])

        with pytest.raises(UnsafeTargetPath):
            _restorer(unsafe, controller, notifier).restore("latest")

        assert controller.calls == []
        assert read_tree(layout["appdata"]) == before

    def test_ram_backed_safety_location_is_rejected(self, config, controller, notifier, layout):
        _backup(config, controller, notifier)
        _damage_live(layout)
        damaged = read_tree(layout["appdata"])

        def fs_type(path):
            return "tmpfs" if str(path).startswith(str(config.safety_path)) else "ext4"

        with patch("archon_ops.modules.restore.safety.filesystem_type", side_effect=fs_type):
            with pytest.raises(InsufficientStorage, match="RAM-backed"):
                _restorer(config, controller, notifier).restore("latest")

        assert controller.calls == []
        assert read_tree(layout["appdata"]) == damaged
        assert not config.safety_path.exists()

    def test_ram_backed_scratch_is_rejected_for_archives(self, config, controller, notifier):
        ref = _backup(config, controller, notifier)
        shutil.rmtree(ref.snapshot_path)

        def fs_type(path):
            return "ramfs" if str(path).startswith(str(config.scratch_path)) else "xfs"

        with patch("archon_ops.modules.restore.safety.filesystem_type", side_effect=fs_type):
            with pytest.raises(InsufficientStorage):
                _restorer(config, controller, notifier).restore("latest")

        assert controller.calls == []
        assert not config.scratch_path.exists()

    def test_cancelled_confirmation_changes_nothing(self, config, controller, notifier, layout):
        _backup(config, controller, notifier)
        _damage_live(layout)
        damaged = read_tree(layout["appdata"])

        outcome = _restorer(config, controller, notifier).restore("latest", confirm=lambda artifact: False)

        assert outcome.status == "cancelled"
        assert controller.calls == []
        assert read_tree(layout["appdata"]) == damaged

    def test_interactive_confirmation_needs_phrase_and_yes(self, config):
        artifact = ResolvedArtifact("archon_backup_20260301_120000", config.snapshots_dir, "snapshot")

        def confirm(*answers):
            replies = iter(answers)
            return confirm_interactively(config, prompt=lambda text: next(replies))(artifact)

        assert confirm("RESTORE", "yes") is True
        assert confirm("restore", "yes") is False
        assert confirm("RESTORE", "no") is False


class TestResolution:
    def test_latest_prefers_pointer(self, config, controller, notifier):
        ref = _backup(config, controller, notifier)

        resolved = _restorer(config, controller, notifier).resolve("latest")

        assert resolved.form == "snapshot"
        assert resolved.path == Path(ref.snapshot_path)

    def test_latest_without_pointer_uses_newest_archive(self, config, controller, notifier):
        _backup(config, controller, notifier, start=datetime.datetime(2026, 2, 27, 1, 0, 0))
        newer = _backup(config, controller, notifier, start=datetime.datetime(2026, 2, 28, 1, 0, 0))
        StateManager(config.backup_path).clear_latest()

        resolved = _restorer(config, controller, notifier).resolve("latest")

        assert resolved.form == "compressed"
        assert resolved.path == Path(newer.path)
        assert resolved.name == newer.name

    def test_latest_falls_back_to_newest_snapshot(self, layout, controller, notifier):
        config = make_config(layout, BACKUP_COMPRESSION="false")
        _backup(config, controller, notifier, start=datetime.datetime(2026, 2, 27, 1, 0, 0))
        newer = _backup(config, controller, notifier, start=datetime.datetime(2026, 2, 28, 1, 0, 0))
        StateManager(config.backup_path).clear_latest()

        resolved = _restorer(config, controller, notifier).resolve("latest")

        assert resolved.form == "snapshot"
        assert resolved.name == newer.name

    def test_named_backup_prefers_snapshot_then_archive(self, config, controller, notifier):
        ref = _backup(config, controller, notifier)
        restorer = _restorer(config, controller, notifier)

        assert restorer.resolve(ref.name).form == "snapshot"
        shutil.rmtree(ref.snapshot_path)
        assert restorer.resolve(ref.name).path == Path(ref.path)
        assert restorer.resolve(ref.path).form == "compressed"

    def test_nothing_to_restore(self, config, controller, notifier):
        restorer = _restorer(config, controller, notifier)

        with pytest.raises(NoBackupFound):
            restorer.resolve("latest")
        with pytest.raises(NoBackupFound):
            restorer.resolve("archon_backup_20200101_000000")


class TestPathSafety:
    def test_accepts_path_below_allowed_base(self, layout):
        assert validate_target_path(layout["appdata"], [str(layout["base"])]) == layout["appdata"]

    def test_rejects_filesystem_root(self):
        with pytest.raises(UnsafeTargetPath):
            validate_target_path("/", ["/"])

    def test_rejects_the_base_itself(self, layout):
        with pytest.raises(UnsafeTargetPath):
            validate_target_path(layout["base"], [str(layout["base"])])

    def test_rejects_missing_and_empty_paths(self, layout):
        with pytest.raises(UnsafeTargetPath):
            validate_target_path(layout["base"] / "missing", [str(layout["base"])])
        with pytest.raises(UnsafeTargetPath):
            validate_target_path("", [str(layout["base"])])

    def test_rejects_symlink_escaping_base(self, layout):
        link = layout["base"] / "escape"
        os.symlink(str(layout["deploy"]), str(link))

        with pytest.raises(UnsafeTargetPath):
            validate_target_path(link, [str(layout["base"])])
