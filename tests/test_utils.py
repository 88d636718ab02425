"""Tests for notifications, signal guards, checksums and atomic writes."""

import datetime
import os
import signal
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from archon_ops.utils.errors import OperationInterrupted, RollbackFailed, UnsafeTargetPath
from archon_ops.utils.index import (
    atomic_write_text,
    calculate_checksum,
    filesystem_type,
    format_size,
    read_checksum_sidecar,
    timestamp,
    write_checksum_sidecar,
)
from archon_ops.utils.notifier import Notifier
from archon_ops.utils.signals import interruption_guard, signals_shielded


class TestNotifier:
    @patch("archon_ops.utils.notifier.subprocess.run")
    @patch("archon_ops.utils.notifier.shutil.which", return_value="/usr/local/emhttp/webGui/scripts/notify")
    def test_error_maps_to_alert(self, mock_which, mock_run):
        mock_run.return_value = subprocess.CompletedProcess([], 0, "", "")

        assert Notifier().send("Archon Backup Failed", "disk full", "error") is True

        args = mock_run.call_args[0][0]
        assert args == ["/usr/local/emhttp/webGui/scripts/notify", "-s", "Archon Backup Failed",
                        "-d", "disk full", "-i", "alert"]

    @patch("archon_ops.utils.notifier.subprocess.run")
    @patch("archon_ops.utils.notifier.shutil.which", return_value=None)
    def test_missing_tool_only_logs(self, mock_which, mock_run):
        assert Notifier().send("subject", "message") is False
        mock_run.assert_not_called()

    @patch("archon_ops.utils.notifier.subprocess.run")
    def test_disabled_notifier_never_delivers(self, mock_run):
        assert Notifier(enabled=False).send("subject", "message", "critical") is False
        mock_run.assert_not_called()

    @patch("archon_ops.utils.notifier.subprocess.run",
           side_effect=subprocess.TimeoutExpired(cmd="notify", timeout=15))
    @patch("archon_ops.utils.notifier.shutil.which", return_value="/usr/bin/notify")
    def test_delivery_failure_is_swallowed(self, mock_which, mock_run):
        assert Notifier().send("subject", "message", "warning") is False


class TestSignals:
    def test_guard_turns_sigterm_into_exception(self):
        previous = signal.getsignal(signal.SIGTERM)

        with pytest.raises(OperationInterrupted) as excinfo:
            with interruption_guard():
                os.kill(os.getpid(), signal.SIGTERM)

        assert excinfo.value.signum == signal.SIGTERM
        assert excinfo.value.severity == "warning"
        assert signal.getsignal(signal.SIGTERM) == previous

    def test_shield_ignores_sigint(self):
        previous = signal.getsignal(signal.SIGINT)
        completed = MagicMock()

        with signals_shielded():
            os.kill(os.getpid(), signal.SIGINT)
            completed()

        completed.assert_called_once()
        assert signal.getsignal(signal.SIGINT) == previous


class TestChecksums:
    def test_directory_digest_is_order_independent(self, tmp_path):
        first = tmp_path / "a"
        second = tmp_path / "b"
        for root, order in ((first, ("x", "y")), (second, ("y", "x"))):
            for name in order:
                (root / name).mkdir(parents=True)
                (root / name / "file.txt").write_text(name)

        assert calculate_checksum(first) == calculate_checksum(second)

    def test_renamed_file_changes_digest(self, tmp_path):
        tree = tmp_path / "tree"
        tree.mkdir()
        (tree / "one.txt").write_text("same")
        before = calculate_checksum(tree)
        (tree / "one.txt").rename(tree / "two.txt")

        assert calculate_checksum(tree) != before

    def test_sidecar_round_trip(self, tmp_path):
        artifact = tmp_path / "compressed" / "archon_backup_20260301_120000.tar.gz"
        artifact.parent.mkdir()
        artifact.write_bytes(b"archive bytes")

        digest, sidecar = write_checksum_sidecar(artifact, tmp_path)

        assert sidecar.name == "archon_backup_20260301_120000.tar.gz.sha256"
        assert read_checksum_sidecar(sidecar) == (digest, "compressed/archon_backup_20260301_120000.tar.gz")

    def test_malformed_sidecar(self, tmp_path):
        sidecar = tmp_path / "x.sha256"
        sidecar.write_text("zz  x\n")

        with pytest.raises(ValueError):
            read_checksum_sidecar(sidecar)

    def test_repointed_symlink_changes_digest(self, tmp_path):
        tree = tmp_path / "tree"
        tree.mkdir()
        (tree / "a.txt").write_text("a")
        (tree / "b.txt").write_text("a")
        os.symlink("a.txt", tree / "current")
        before = calculate_checksum(tree)
        os.unlink(tree / "current")
        os.symlink("b.txt", tree / "current")

        assert calculate_checksum(tree) != before

    def test_empty_directory_changes_digest(self, tmp_path):
        tree = tmp_path / "tree"
        tree.mkdir()
        (tree / "file.txt").write_text("x")
        before = calculate_checksum(tree)
        (tree / "uploads").mkdir()

        assert calculate_checksum(tree) != before

    def test_missing_path_has_empty_digest(self, tmp_path):
        assert calculate_checksum(tmp_path / "missing") == ""


class TestFilesystemType:
    @pytest.fixture
    def mounts(self, tmp_path):
        base = Path(os.path.realpath(str(tmp_path)))
        for sub in ("disk1", "user/appdata", "user/scratch space", "user/scratch spacer"):
            (base / sub).mkdir(parents=True)
        scratch = str(base / "user" / "scratch space").replace(" ", "\\040")
        mounts = base / "mounts"
        mounts.write_text(
            "rootfs / rootfs rw 0 0\n"
            f"/dev/md1 {base / 'disk1'} xfs rw,noatime 0 0\n"
            f"shfs {base / 'user'} fuse.shfs rw 0 0\n"
            f"tmpfs {scratch} tmpfs rw 0 0\n"
        )
        return base, str(mounts)

    def test_longest_mount_point_wins(self, mounts):
        base, table = mounts

        assert filesystem_type(base / "user" / "appdata", table) == "fuse.shfs"
        assert filesystem_type(base / "disk1" / "not-yet-created", table) == "xfs"
        assert filesystem_type(base, table) == "rootfs"

    def test_escaped_mount_point(self, mounts):
        base, table = mounts

        assert filesystem_type(base / "user" / "scratch space" / "restore", table) == "tmpfs"
        assert filesystem_type(base / "user" / "scratch spacer", table) == "fuse.shfs"

    def test_unreadable_mounts_file(self, tmp_path):
        assert filesystem_type(tmp_path, str(tmp_path / "missing")) == ""


def test_atomic_write_replaces_content(tmp_path):
    target = tmp_path / "state" / "latest.json"

    atomic_write_text(target, "one")
    atomic_write_text(target, "two")

    assert target.read_text() == "two"
    assert os.listdir(target.parent) == ["latest.json"]


def test_formatting_helpers():
    assert timestamp(datetime.datetime(2026, 3, 1, 7, 5, 9)) == "20260301_070509"
    assert format_size(512) == "512B"
    assert format_size(1536) == "1.5K"
    assert format_size(3 * 1024 ** 3) == "3.0G"


def test_errors_carry_context():
    error = UnsafeTargetPath("outside allowed bases", path="/etc")

    assert error.path == "/etc"
    assert error.to_dict() == {
        "error": "UnsafeTargetPath",
        "message": "outside allowed bases",
        "severity": "error",
        "context": {"path": "/etc"},
    }
    assert RollbackFailed("x").severity == "critical"
