"""
HOMESERVER Archon Health Maintenance

Maintenance tasks that look at the running services: restart containers
that are unhealthy or fail their probe, and flag high CPU or slow responses.
"""

from datetime import datetime
from typing import Any, Dict

from ...utils.index import log_message
from ...utils.services import ServiceState
from .index import CPU_WARNING_PERCENT, cpu_percent

SLOW_RESPONSE_SECONDS = 2.0


class ServiceHealthMaintenance:
    """Restart running containers that are unhealthy or fail their health check."""

    task_name = "health"

    def __init__(self, config, controller, notifier):
        self.config = config
        self.controller = controller
        self.notifier = notifier

    def run_maintenance(self) -> Dict[str, Any]:
        results = {
            "task": self.task_name,
            "success": True,
            "services": {},
            "timestamp": datetime.now().isoformat(),
            "errors": []
        }

        for service in self.controller.services:
            state = self.controller.service_state(service, self.config.quick_check_timeout)
            if state in (ServiceState.STOPPED, ServiceState.UNKNOWN):
                log_message(f"{service.name} is not running", "ERROR")
                results["services"][service.name] = "down"
                results["success"] = False
                results["errors"].append(f"{service.name} not running")
            elif state == ServiceState.RUNNING_UNHEALTHY:
                log_message(f"{service.name} is unhealthy, restarting...", "WARNING")
                if self.controller.restart(service):
                    results["services"][service.name] = "restarted"
                else:
                    results["services"][service.name] = "unhealthy"
                    results["success"] = False
                    results["errors"].append(f"{service.name} restart failed")
            else:
                results["services"][service.name] = state.value

        results["all_healthy"] = results["success"]
        return results


class PerformanceMaintenance:
    """Report CPU usage and response times, warning past thresholds."""

    task_name = "performance"

    def __init__(self, config, controller, notifier):
        self.config = config
        self.controller = controller
        self.notifier = notifier

    def run_maintenance(self) -> Dict[str, Any]:
        results = {
            "task": self.task_name,
            "success": True,
            "services": {},
            "warnings": [],
            "timestamp": datetime.now().isoformat(),
        }

        for service in self.controller.services:
            if not self.controller.is_running(service):
                continue
            cpu = cpu_percent(self.controller.stats(service))
            probe = self.controller.probe(service, self.config.health_check_timeout)
            results["services"][service.name] = {
                "cpu_percent": cpu,
                "response_time": probe.response_time,
                "http_code": probe.status_code,
            }
            if cpu > CPU_WARNING_PERCENT:
                results["warnings"].append(f"{service.name} CPU {cpu:.1f}%")
                log_message(f"{service.name}: high CPU usage {cpu:.1f}%", "WARNING")
            if probe.response_time is not None and probe.response_time > SLOW_RESPONSE_SECONDS:
                results["warnings"].append(f"{service.name} response {probe.response_time:.2f}s")
                log_message(f"{service.name}: slow response {probe.response_time:.2f}s", "WARNING")

        return results
