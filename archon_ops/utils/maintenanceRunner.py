"""
HOMESERVER Archon Operations
Copyright (C) 2024 HOMESERVER LLC

Maintenance Runner Utility

Discovers maintenance tasks from every operation module that ships a
maintenance.py and runs the ones a maintenance mode asks for. A task is any
class whose name ends in "Maintenance" and which has a task_name and a
run_maintenance() method.
"""

import importlib
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from .index import log_message

MODULES_PACKAGE = "archon_ops.modules"
MODULES_PATH = Path(__file__).resolve().parent.parent / "modules"


class MaintenanceRunner:
    """Discovers and runs maintenance tasks by name."""

    def __init__(self, config, controller, notifier, modules_path: Path = MODULES_PATH,
                 package: str = MODULES_PACKAGE):
        self.config = config
        self.controller = controller
        self.notifier = notifier
        self.modules_path = Path(modules_path)
        self.package = package
        self.maintenance_registry: Dict[str, Dict[str, Any]] = {}
        self._discover_maintenance_modules()

    def _discover_maintenance_modules(self) -> None:
        """Discover all available maintenance tasks."""
        log_message("Discovering maintenance tasks...", "DEBUG")

        if not self.modules_path.exists():
            log_message("No modules directory found", "WARNING")
            return

        for item in sorted(os.listdir(self.modules_path)):
            item_path = self.modules_path / item
            if not item_path.is_dir() or not (item_path / "maintenance.py").exists():
                continue

            module_path = f"{self.package}.{item}.maintenance"
            try:
                maintenance_module = importlib.import_module(module_path)
            except ImportError as e:
                log_message(f"Failed to import maintenance for {item}: {e}", "WARNING")
                continue

            for attr_name in dir(maintenance_module):
                attr = getattr(maintenance_module, attr_name)
                if (isinstance(attr, type) and
                        attr.__module__ == maintenance_module.__name__ and
                        attr_name.endswith('Maintenance') and
                        hasattr(attr, 'run_maintenance') and
                        getattr(attr, 'task_name', None)):
                    self.maintenance_registry[attr.task_name] = {
                        "class": attr,
                        "module": item,
                    }
                    log_message(f"Found maintenance task: {attr.task_name} ({item})", "DEBUG")

        log_message(f"Discovered {len(self.maintenance_registry)} maintenance tasks", "DEBUG")

    def available_tasks(self):
        return sorted(self.maintenance_registry)

    def run_task(self, task_name: str) -> Optional[Dict[str, Any]]:
        """Run one task; crashes are reported as failed results."""
        if task_name not in self.maintenance_registry:
            log_message(f"No maintenance task named {task_name}", "WARNING")
            return None

        task_class = self.maintenance_registry[task_name]["class"]
        try:
            log_message(f"Running maintenance task: {task_name}...")
            instance = task_class(self.config, self.controller, self.notifier)
            result = instance.run_maintenance()
        except Exception as e:
            log_message(f"✗ Maintenance task {task_name} crashed: {e}", "ERROR")
            return {"success": False, "error": str(e), "crashed": True}

        if result.get("success", False):
            log_message(f"✓ Maintenance task {task_name} completed", "SUCCESS")
        else:
            log_message(f"✗ Maintenance task {task_name} failed: {result.get('error', 'see task output')}", "ERROR")
        return result

    def run_tasks(self, task_names: Iterable[str]) -> Dict[str, Any]:
        task_names = list(task_names)
        results = {
            "success": True,
            "tasks": {},
            "summary": {
                "total_tasks": len(task_names),
                "successful": 0,
                "failed": 0,
                "skipped": 0
            }
        }

        for task_name in task_names:
            task_result = self.run_task(task_name)
            if task_result is None:
                results["summary"]["skipped"] += 1
                results["tasks"][task_name] = {"success": False, "skipped": True}
                continue
            results["tasks"][task_name] = task_result
            if task_result.get("skipped"):
                results["summary"]["skipped"] += 1
            elif task_result.get("success", False):
                results["summary"]["successful"] += 1
            else:
                results["summary"]["failed"] += 1

        results["success"] = results["summary"]["failed"] == 0
        log_message(f"Maintenance completed: {results['summary']['successful']} successful, "
                    f"{results['summary']['failed']} failed, {results['summary']['skipped']} skipped")
        return results
