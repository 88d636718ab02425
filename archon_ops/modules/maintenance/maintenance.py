"""
HOMESERVER Archon Housekeeping Maintenance

Housekeeping tasks run by the maintenance command: log rotation, Docker
cleanup, image updates, database connection accounting, storage and
security audits. Each task returns a result dict with at least "success".
"""

import os
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List

from ...utils.errors import ArchonOpsError
from ...utils.index import CHUNK_SIZE, directory_size, format_size, free_space, log_message
from ...utils.permissions import OwnershipManager
from ..backup.index import BackupEngine

MB = 1024 * 1024
GB = 1024 * MB
LOG_TRUNCATE_THRESHOLD = 100 * MB
LOG_KEEP_BYTES = 10 * MB
LOG_SERVICE_DIRS = ("server", "mcp", "agents", "frontend")
UPDATE_READY_TIMEOUT = 120
SENSITIVE_LOG_PATTERN = re.compile(r"(api[_-]?key|password|secret|token)\s*[=:]\s*\S+", re.IGNORECASE)


class _Task:
    task_name = ""

    def __init__(self, config, controller, notifier):
        self.config = config
        self.controller = controller
        self.notifier = notifier

    def _result(self, **extra) -> Dict[str, Any]:
        result = {
            "task": self.task_name,
            "success": True,
            "timestamp": datetime.now().isoformat(),
            "errors": [],
        }
        result.update(extra)
        return result


class LogMaintenance(_Task):
    """Expire old application logs and cap oversized ones."""

    task_name = "logs"

    def run_maintenance(self) -> Dict[str, Any]:
        results = self._result(removed=[], truncated=[])
        cutoff = datetime.now() - timedelta(days=self.config.log_retention_days)

        for name in LOG_SERVICE_DIRS:
            log_dir = self.config.log_path / name
            if not log_dir.is_dir():
                continue
            for entry in sorted(log_dir.iterdir()):
                if not entry.is_file() or ".log" not in entry.name:
                    continue
                try:
                    if datetime.fromtimestamp(entry.stat().st_mtime) < cutoff:
                        entry.unlink()
                        results["removed"].append(str(entry))
                    elif entry.name.endswith(".log") and entry.stat().st_size > LOG_TRUNCATE_THRESHOLD:
                        self._keep_tail(entry)
                        results["truncated"].append(str(entry))
                except OSError as e:
                    results["errors"].append(f"{entry}: {e}")

        for service in self.controller.services:
            log_path = self.controller.log_path(service)
            if not log_path or not os.path.isfile(log_path):
                continue
            try:
                if os.path.getsize(log_path) > LOG_TRUNCATE_THRESHOLD:
                    log_message(f"Truncating Docker log for {service.name}")
                    os.truncate(log_path, 0)
                    results["truncated"].append(log_path)
            except OSError as e:
                results["errors"].append(f"{log_path}: {e}")

        log_message(f"Log cleanup: {len(results['removed'])} removed, {len(results['truncated'])} truncated")
        results["success"] = not results["errors"]
        return results

    @staticmethod
    def _keep_tail(path: Path) -> None:
        """Shift the last LOG_KEEP_BYTES to the front and cut the file there, in place."""
        with open(path, "r+b") as f:
            size = f.seek(0, os.SEEK_END)
            read_pos = max(size - LOG_KEEP_BYTES, 0)
            write_pos = 0
            while read_pos < size:
                f.seek(read_pos)
                chunk = f.read(min(CHUNK_SIZE, size - read_pos))
                if not chunk:
                    break
                f.seek(write_pos)
                f.write(chunk)
                read_pos += len(chunk)
                write_pos += len(chunk)
            f.truncate(write_pos)


class DockerMaintenance(_Task):
    """Remove exited containers and prune dangling images and networks."""

    task_name = "docker"

    def run_maintenance(self) -> Dict[str, Any]:
        if not self.config.docker_prune:
            log_message("Docker cleanup disabled")
            return self._result(skipped=True)

        results = self._result()
        try:
            results["containers_removed"] = self.controller.remove_exited_containers()
            results["images"] = self.controller.prune_images()
            results["networks"] = self.controller.prune_networks()
        except ArchonOpsError as e:
            results["success"] = False
            results["errors"].append(e.message)
        return results


class UpdateMaintenance(_Task):
    """Pull newer images; back up and recreate the stack when any changed."""

    task_name = "update"

    def run_maintenance(self) -> Dict[str, Any]:
        if not self.config.auto_update:
            log_message("Automatic updates disabled")
            return self._result(skipped=True)

        results = self._result(updated=[])
        for service in self.controller.services:
            before = self.controller.image_id(service.image)
            if not self.controller.pull(service.image):
                results["errors"].append(f"pull failed for {service.image}")
                continue
            if self.controller.image_id(service.image) != before:
                log_message(f"New image available for {service.name}")
                results["updated"].append(service.name)

        if results["updated"]:
            try:
                ref = BackupEngine(self.config, self.controller, self.notifier).create_backup("incremental")
                results["backup"] = ref.name
                self.controller.force_recreate()
                results["ready"] = []
                for service in self.controller.services:
                    if self.controller.wait_until_ready(service, timeout=UPDATE_READY_TIMEOUT):
                        results["ready"].append(service.name)
                    else:
                        results["errors"].append(f"{service.name} did not come back after the update")
                self.notifier.send("Archon Updated", f"Updated: {', '.join(results['updated'])}",
                                   "warning" if results["errors"] else "success")
            except (ArchonOpsError, OSError) as e:
                results["errors"].append(str(e))
        else:
            log_message("All images are up to date")

        results["success"] = not results["errors"]
        return results


class DatabaseMaintenance(_Task):
    """Count database connection events reported by the backend services."""

    task_name = "database"

    def run_maintenance(self) -> Dict[str, Any]:
        results = self._result(connections={})
        for service in self.controller.services:
            if service.short_name not in ("server", "agents") or not self.controller.is_running(service):
                continue
            logs = self.controller.recent_logs(service, "24h")
            count = sum(1 for line in logs.splitlines() if "database connection" in line.lower())
            results["connections"][service.name] = count
        return results


class StorageMaintenance(_Task):
    """Report tree sizes and alert on low free space."""

    task_name = "storage"

    def run_maintenance(self) -> Dict[str, Any]:
        sizes = {
            "appdata": directory_size(self.config.appdata_path),
            "data": directory_size(self.config.data_path),
            "backups": directory_size(self.config.backup_path),
        }
        available = free_space(self.config.appdata_path)
        for label, size in sizes.items():
            log_message(f"{label}: {format_size(size)}")
        log_message(f"Available: {format_size(available)}")

        results = self._result(sizes=sizes, available=available, low_space=available < GB)
        if results["low_space"]:
            self.notifier.send("Archon Low Disk Space", f"Only {format_size(available)} available", "warning")
            results["success"] = False
            results["errors"].append("less than 1GB free")
        return results


class SecurityMaintenance(_Task):
    """Audit exposed ports, file ownership and secrets leaking into logs."""

    task_name = "security"

    def run_maintenance(self) -> Dict[str, Any]:
        results = self._result(exposed=[], foreign_owned=0, sensitive_logs={})

        for service in self.controller.services:
            for binding in self.controller.port_bindings(service):
                if "0.0.0.0" in binding:
                    results["exposed"].append(f"{service.name}: {binding}")
        if results["exposed"]:
            log_message(f"Services bound on all interfaces: {len(results['exposed'])}", "WARNING")

        manager = OwnershipManager(self.config.puid, self.config.pgid)
        foreign: List[str] = manager.foreign_owned(self.config.appdata_path)
        results["foreign_owned"] = len(foreign)
        if foreign:
            log_message(f"{len(foreign)} paths under {self.config.appdata_path} have unexpected ownership",
                        "WARNING")
            if self.config.apply_ownership:
                if not manager.apply(manager.targets_for([self.config.appdata_path])):
                    results["success"] = False
                    results["errors"].append("ownership fix failed")

        if self.config.log_path.is_dir():
            for log_file in sorted(self.config.log_path.rglob("*.log")):
                try:
                    text = log_file.read_text(errors="replace")
                except OSError:
                    continue
                hits = len(SENSITIVE_LOG_PATTERN.findall(text))
                if hits:
                    results["sensitive_logs"][str(log_file)] = hits
                    log_message(f"Possible secrets in {log_file} ({hits} matches)", "WARNING")
        return results
