"""Tests for maintenance task discovery, modes and the individual tasks."""

import os
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from archon_ops.modules.maintenance.index import MAINTENANCE_MODES, main, run_maintenance
from archon_ops.modules.maintenance.maintenance import GB, MB
from archon_ops.utils.maintenanceRunner import MaintenanceRunner

from conftest import make_config


@pytest.fixture(autouse=True)
def plenty_of_disk():
    with patch("archon_ops.modules.maintenance.maintenance.free_space", return_value=50 * GB):
        yield


@pytest.fixture
def runner(config, controller, notifier):
    return MaintenanceRunner(config, controller, notifier)


class TestDiscovery:
    def test_all_tasks_discovered(self, runner):
        assert runner.available_tasks() == [
            "database", "docker", "health", "logs", "performance", "security", "storage", "update",
        ]

    def test_every_mode_maps_to_known_tasks(self, runner):
        for mode, tasks in MAINTENANCE_MODES.items():
            assert set(tasks) <= set(runner.available_tasks()), mode

    def test_unknown_task_is_skipped(self, runner):
        results = runner.run_tasks(["logs", "defrag"])

        assert runner.run_task("defrag") is None
        assert results["summary"]["skipped"] == 1
        assert results["tasks"]["defrag"]["skipped"] is True

    def test_crashing_task_is_reported_as_failed(self, runner):
        class ExplodingMaintenance:
            task_name = "explode"

            def __init__(self, config, controller, notifier):
                pass

            def run_maintenance(self):
                raise RuntimeError("kaboom")

        runner.maintenance_registry["explode"] = {"class": ExplodingMaintenance, "module": "test"}

        results = runner.run_tasks(["explode"])

        assert results["success"] is False
        assert results["tasks"]["explode"]["crashed"] is True
        assert results["summary"]["failed"] == 1


class TestModes:
    def test_quick_mode_reports_and_notifies(self, config, controller, notifier, layout):
        results = run_maintenance(config, "quick", controller, notifier)

        assert results["success"] is True
        assert results["all_running"] is True
        assert list(results["tasks"]) == ["health", "logs", "storage"]
        assert results["summary"]["total_tasks"] == 3
        report = Path(results["report_path"])
        assert report.parent == layout["logs"]
        assert "Mode: quick" in report.read_text()
        assert notifier.sent[-1][0] == "Archon Maintenance Complete"

    def test_stopped_service_produces_warning(self, config, controller, notifier):
        controller.running["archon-agents"] = False

        results = run_maintenance(config, "health", controller, notifier)

        assert results["success"] is False
        assert results["all_running"] is False
        assert notifier.sent[-1][0] == "Archon Maintenance Warning"

    def test_invalid_mode(self, config, controller, notifier):
        with pytest.raises(ValueError):
            run_maintenance(config, "weekly", controller, notifier)
        assert main(["weekly"])["success"] is False


class TestTasks:
    def test_old_logs_removed_recent_kept(self, runner, layout):
        log_dir = layout["logs"] / "server"
        log_dir.mkdir()
        old = log_dir / "old.log"
        old.write_text("old\n")
        month_ago = time.time() - 30 * 86400
        os.utime(old, (month_ago, month_ago))
        recent = log_dir / "recent.log"
        recent.write_text("recent\n")

        result = runner.run_task("logs")

        assert result["success"]
        assert not old.exists()
        assert recent.exists()

    def test_oversized_log_keeps_its_tail(self, runner, layout):
        log_dir = layout["logs"] / "mcp"
        log_dir.mkdir()
        big = log_dir / "mcp.log"
        with open(big, "wb") as f:
            f.truncate(101 * MB)
            f.seek(-7, os.SEEK_END)
            f.write(b"\xff\xfelast\n")
        os.chmod(big, 0o644)
        inode = big.stat().st_ino

        with open(big, "ab") as writer:
            result = runner.run_task("logs")
            writer.write(b"after truncate\n")

        assert str(big) in result["truncated"]
        assert big.stat().st_ino == inode
        assert big.stat().st_mode & 0o777 == 0o644
        assert big.stat().st_size == 10 * MB + len(b"after truncate\n")
        assert big.read_bytes().endswith(b"\xff\xfelast\nafter truncate\n")

    def test_docker_cleanup(self, runner, controller):
        result = runner.run_task("docker")

        assert result["success"]
        assert controller.calls == ["remove_exited", "prune_images", "prune_networks"]

    def test_docker_cleanup_disabled(self, layout, controller, notifier):
        runner = MaintenanceRunner(make_config(layout, DOCKER_PRUNE="false"), controller, notifier)

        result = runner.run_task("docker")

        assert result["skipped"] is True
        assert controller.calls == []

    def test_update_disabled_by_default(self, runner, controller):
        assert runner.run_task("update")["skipped"] is True

    def test_update_backs_up_then_recreates(self, layout, controller, notifier):
        config = make_config(layout, AUTO_UPDATE="true")
        controller.image_id = MagicMock(side_effect=["old", "new"] * 4)

        result = MaintenanceRunner(config, controller, notifier).run_task("update")

        assert result["success"]
        assert len(result["updated"]) == 4
        assert result["backup"].startswith("archon_backup_")
        assert (config.snapshots_dir / result["backup"]).is_dir()
        assert result["ready"] == ["archon-server", "archon-mcp", "archon-agents", "archon-frontend"]
        assert controller.calls[-1] == ("force_recreate", None)
        assert "Archon Updated" in notifier.subjects()

    def test_update_reports_service_that_does_not_come_back(self, layout, controller, notifier):
        config = make_config(layout, AUTO_UPDATE="true")
        controller.image_id = MagicMock(side_effect=["old", "new"] * 4)
        controller.failing_probe = {"archon-agents"}

        result = MaintenanceRunner(config, controller, notifier).run_task("update")

        assert result["success"] is False
        assert "archon-agents" not in result["ready"]
        assert any("archon-agents" in error for error in result["errors"])
        assert notifier.sent[-1][0] == "Archon Updated"
        assert notifier.sent[-1][2] == "warning"

    def test_update_without_new_images_does_nothing(self, layout, controller, notifier):
        config = make_config(layout, AUTO_UPDATE="true")

        result = MaintenanceRunner(config, controller, notifier).run_task("update")

        assert result["updated"] == []
        assert "backup" not in result

    def test_health_task_restarts_unhealthy(self, runner, controller):
        controller.unhealthy = {"archon-server"}

        result = runner.run_task("health")

        assert result["services"]["archon-server"] == "restarted"
        assert ("restart", "archon-server") in controller.calls
        assert result["success"]

    def test_health_task_restarts_service_failing_its_check(self, runner, controller):
        controller.failing_probe = {"archon-frontend"}

        result = runner.run_task("health")

        assert result["services"]["archon-frontend"] == "restarted"
        assert result["services"]["archon-mcp"] == "running-healthy"
        assert controller.calls == [("restart", "archon-frontend")]

    def test_database_task_counts_connections(self, runner):
        result = runner.run_task("database")

        assert result["connections"] == {"archon-server": 1, "archon-agents": 1}

    def test_low_storage_alerts(self, runner, notifier):
        with patch("archon_ops.modules.maintenance.maintenance.free_space", return_value=100 * MB):
            result = runner.run_task("storage")

        assert result["low_space"] is True
        assert result["success"] is False
        assert notifier.sent[-1][0] == "Archon Low Disk Space"

    def test_security_audit(self, runner, layout):
        (layout["logs"] / "server").mkdir()
        (layout["logs"] / "server" / "server.log").write_text("config loaded api_key=sk-123\nok\n")

        result = runner.run_task("security")

        assert len(result["exposed"]) == 4
        assert result["sensitive_logs"] == {str(layout["logs"] / "server" / "server.log"): 1}

    def test_performance_task(self, runner):
        result = runner.run_task("performance")

        assert result["services"]["archon-server"]["cpu_percent"] == 1.5
        assert result["warnings"] == []
