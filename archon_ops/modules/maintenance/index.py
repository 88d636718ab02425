"""
HOMESERVER Archon Operations
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import datetime
from typing import Any, Dict, Optional

from ...utils.config import ArchonConfig, load_config
from ...utils.index import atomic_write_text, log_message, timestamp
from ...utils.maintenanceRunner import MaintenanceRunner
from ...utils.notifier import Notifier
from ...utils.services import ServiceController

MAINTENANCE_MODES = {
    "full": ("health", "logs", "docker", "update", "database", "storage", "security", "performance"),
    "quick": ("health", "logs", "storage"),
    "health": ("health",),
    "cleanup": ("logs", "docker"),
    "update": ("update",),
    "security": ("security",),
}


def run_maintenance(config: ArchonConfig, mode: str = "full",
                    controller: Optional[ServiceController] = None,
                    notifier: Optional[Notifier] = None,
                    runner: Optional[MaintenanceRunner] = None) -> Dict[str, Any]:
    """Run the tasks for mode, write a report and send the final notification."""
    if mode not in MAINTENANCE_MODES:
        raise ValueError(f"Invalid maintenance mode: {mode}")

    controller = controller or ServiceController(config)
    notifier = notifier or Notifier()
    runner = runner or MaintenanceRunner(config, controller, notifier)

    started = datetime.datetime.now()
    log_message(f"Starting {mode} maintenance")
    results = runner.run_tasks(MAINTENANCE_MODES[mode])
    results["mode"] = mode

    running = [controller.is_running(service) for service in controller.services]
    results["all_running"] = all(running)
    results["report_path"] = _write_report(config, results, started)

    if results["all_running"] and results["success"]:
        notifier.send("Archon Maintenance Complete", f"{mode} maintenance completed, all services healthy",
                      "success")
    else:
        failed = [name for name, r in results["tasks"].items() if not r.get("success") and not r.get("skipped")]
        notifier.send("Archon Maintenance Warning",
                      f"{mode} maintenance finished with issues: "
                      f"{', '.join(failed) or 'services not running'}", "warning")
    return results


def _write_report(config: ArchonConfig, results: Dict[str, Any], started: datetime.datetime) -> str:
    report = config.log_path / f"maintenance_{timestamp(started)}.txt"
    summary = results["summary"]
    lines = [
        "Archon Maintenance Report",
        "=" * 40,
        f"Timestamp: {started.isoformat(timespec='seconds')}",
        f"Mode: {results['mode']}",
        f"Tasks: {summary['successful']} successful, {summary['failed']} failed, {summary['skipped']} skipped",
        f"All services running: {'yes' if results['all_running'] else 'no'}",
        "",
    ]
    for name, task in results["tasks"].items():
        state = "skipped" if task.get("skipped") else ("ok" if task.get("success") else "FAILED")
        lines.append(f"  {name}: {state}")
        for error in task.get("errors", []) or ([task["error"]] if task.get("error") else []):
            lines.append(f"    - {error}")
    try:
        atomic_write_text(report, "\n".join(lines) + "\n")
    except OSError as e:
        log_message(f"Could not write maintenance report {report}: {e}", "WARNING")
        return ""
    log_message(f"Maintenance report written to {report}")
    return str(report)


def main(args=None):
    """Entry point: maintenance [full|quick|health|cleanup|update|security]."""
    args = list(args or [])
    mode = args[0] if args else "full"
    if mode not in MAINTENANCE_MODES:
        log_message(f"Invalid maintenance mode: {mode} (expected one of {', '.join(MAINTENANCE_MODES)})", "ERROR")
        return {"success": False, "error": f"invalid mode {mode}"}

    results = run_maintenance(load_config(), mode)
    return results
