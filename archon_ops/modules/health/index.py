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

"""
Health Monitor

quick          running state and one short liveness probe per service
comprehensive  quick plus container state, resource usage, log scan, disk
               space and bounded recovery of failing services
monitor        quick with recovery, repeated on an interval until cancelled
report         comprehensive data collection written as JSON, no recovery
"""

import datetime
import re
import sys
import time
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ...utils.config import ArchonConfig, load_config
from ...utils.errors import ArchonOpsError, OperationInterrupted, RecoveryFailed
from ...utils.index import atomic_write_json, disk_usage_percent, free_space, log_message, timestamp
from ...utils.notifier import Notifier
from ...utils.retry import retry_until
from ...utils.services import ManagedService, ServiceController
from ...utils.signals import interruption_guard

HEALTH_MODES = ("quick", "comprehensive", "monitor", "report")
MODE_ALIASES = {"full": "comprehensive", "continuous": "monitor"}
ERROR_MARKERS = re.compile(r"error|exception|fatal|panic", re.IGNORECASE)
CPU_WARNING_PERCENT = 80.0
DISK_WARNING_PERCENT = 90
GB = 1024 ** 3
RESTART_WAIT_SECONDS = 10
RECREATE_WAIT_SECONDS = 15
DOCKER_ROOT = "/var/lib/docker"


@dataclass
class ServiceHealth:
    name: str
    status: str = "down"
    running: bool = False
    container_status: str = ""
    docker_health: str = ""
    http_code: Optional[int] = None
    response_time: Optional[float] = None
    stats: Dict[str, str] = field(default_factory=dict)
    error_count: int = 0
    recent_errors: List[str] = field(default_factory=list)
    recovery_attempts: int = 0
    error: str = ""

    @property
    def passed(self) -> bool:
        return self.status in ("healthy", "recovered")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["passed"] = self.passed
        return data


@dataclass
class DiskHealth:
    path: str
    free_gb: float
    percent_used: int
    minimum_gb: float

    @property
    def passed(self) -> bool:
        return self.free_gb >= self.minimum_gb

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["passed"] = self.passed
        return data


@dataclass
class HealthReport:
    mode: str
    timestamp: str
    services: Dict[str, ServiceHealth] = field(default_factory=dict)
    disk: List[DiskHealth] = field(default_factory=list)
    report_path: str = ""

    @property
    def healthy(self) -> bool:
        return all(s.passed for s in self.services.values()) and all(d.passed for d in self.disk)

    def failing(self) -> List[str]:
        return [name for name, s in self.services.items() if not s.passed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "mode": self.mode,
            "healthy": self.healthy,
            "services": {name: s.to_dict() for name, s in self.services.items()},
            "disk": [d.to_dict() for d in self.disk],
        }


def cpu_percent(stats: Dict[str, str]) -> float:
    try:
        return float(stats.get("cpu", "").rstrip("%") or 0)
    except ValueError:
        return 0.0


class HealthMonitor:
    """Polls the managed services and recovers failing ones."""

    def __init__(self, config: ArchonConfig,
                 controller: Optional[ServiceController] = None,
                 notifier: Optional[Notifier] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], datetime.datetime] = datetime.datetime.now,
                 clear_screen: Optional[Callable[[], None]] = None):
        self.config = config
        self.controller = controller or ServiceController(config)
        self.notifier = notifier or Notifier(enabled=config.alert_on_failure)
        self.sleep = sleep
        self.clock = clock
        self.clear_screen = clear_screen or self._clear_terminal

    @staticmethod
    def _clear_terminal() -> None:
        if sys.stdout.isatty():
            sys.stdout.write("\033[2J\033[H")
            sys.stdout.flush()

    def _new_report(self, mode: str) -> HealthReport:
        return HealthReport(mode=mode, timestamp=self.clock().isoformat(timespec="seconds"))

    # Per-service checks

    def quick_check(self, service: ManagedService) -> ServiceHealth:
        health = ServiceHealth(name=service.name)
        health.running = self.controller.is_running(service)
        if not health.running:
            health.status = "down"
            health.error = "container not running"
            return health
        probe = self.controller.probe(service, self.config.quick_check_timeout)
        health.http_code = probe.status_code
        health.response_time = probe.response_time
        health.status = "healthy" if probe.ok else "running"
        if not probe.ok:
            health.error = probe.error or f"HTTP {probe.status_code}"
        return health

    def container_check(self, service: ManagedService) -> ServiceHealth:
        health = ServiceHealth(name=service.name)
        health.running = self.controller.is_running(service)
        if not health.running:
            health.error = "container not running"
            return health
        state = self.controller.inspect_state(service)
        health.container_status = state.get("status", "")
        health.docker_health = state.get("health", "")
        if health.container_status != "running":
            health.status = "down"
            health.error = f"container state {health.container_status}"
            return health
        health.status = "running"
        if health.docker_health == "unhealthy":
            health.error = "docker reports unhealthy"
            return health
        probe = self.controller.probe(service, self.config.health_check_timeout)
        health.http_code = probe.status_code
        health.response_time = probe.response_time
        if probe.ok:
            health.status = "healthy"
        else:
            health.error = probe.error or f"HTTP {probe.status_code}"
        return health

    def collect_details(self, service: ManagedService, health: ServiceHealth) -> None:
        if not health.running:
            return
        health.stats = self.controller.stats(service)
        cpu = cpu_percent(health.stats)
        if cpu > CPU_WARNING_PERCENT:
            log_message(f"{service.name}: high CPU usage {cpu:.1f}%", "WARNING")
        errors = [line for line in self.controller.recent_logs(service, "5m").splitlines()
                  if ERROR_MARKERS.search(line)]
        health.error_count = len(errors)
        health.recent_errors = errors[-3:]
        if errors:
            log_message(f"{service.name}: {len(errors)} error lines in the last 5 minutes", "WARNING")

    def check_disk(self) -> List[DiskHealth]:
        checks = [
            (self.config.appdata_path, 1.0),
            (self.config.data_path, 1.0),
            (Path(DOCKER_ROOT), 5.0),
        ]
        results = []
        for path, minimum in checks:
            if not Path(path).exists():
                log_message(f"Disk check skipped, {path} does not exist", "DEBUG")
                continue
            disk = DiskHealth(str(path), round(free_space(path) / GB, 2), disk_usage_percent(path), minimum)
            if not disk.passed:
                log_message(f"Low disk space at {path}: {disk.free_gb}GB free, need {minimum}GB", "ERROR")
            elif disk.percent_used > DISK_WARNING_PERCENT:
                log_message(f"Disk usage at {path} is {disk.percent_used}%", "WARNING")
            results.append(disk)
        return results

    # Recovery

    def recover(self, service: ManagedService, check: Callable[[ManagedService], ServiceHealth]) -> ServiceHealth:
        """
        Restart, then force-recreate, re-checking after each attempt.

        Raises RecoveryFailed when every attempt is exhausted.
        """
        attempts = {"n": 0}

        def _attempt() -> ServiceHealth:
            attempts["n"] += 1
            if attempts["n"] == 1:
                log_message(f"Recovery attempt 1 for {service.name}: restart")
                self.controller.restart(service)
                self.sleep(RESTART_WAIT_SECONDS)
            else:
                log_message(f"Recovery attempt {attempts['n']} for {service.name}: force recreate")
                try:
                    self.controller.force_recreate(service)
                except ArchonOpsError as e:
                    log_message(f"Recreate of {service.name} failed: {e}", "ERROR")
                self.sleep(RECREATE_WAIT_SECONDS)
            return check(service)

        result = retry_until(_attempt, predicate=lambda h: h.passed,
                             max_attempts=self.config.health_check_retries,
                             backoff=0, sleep=self.sleep)
        result.recovery_attempts = attempts["n"]
        if not result.passed:
            raise RecoveryFailed(f"{service.name} could not be recovered after {attempts['n']} attempts",
                                 service=service.name, attempts=attempts["n"])
        result.status = "recovered"
        return result

    def _recover_into(self, report: HealthReport, service: ManagedService,
                      check: Callable[[ManagedService], ServiceHealth]) -> None:
        try:
            report.services[service.name] = self.recover(service, check)
            self.notifier.send("Archon Service Recovered",
                               f"{service.name} has been recovered successfully", "success")
        except RecoveryFailed as e:
            failed = report.services[service.name]
            failed.status = "recovery_failed"
            failed.error = e.message
            failed.recovery_attempts = self.config.health_check_retries
            self.notifier.send("Archon Service Failed", f"{service.name} could not be recovered", "error")

    # Modes

    def quick(self, recover: bool = False) -> HealthReport:
        report = self._new_report("quick")
        for service in self.controller.services:
            health = self.quick_check(service)
            report.services[service.name] = health
            level = "SUCCESS" if health.passed else "ERROR"
            log_message(f"{service.name}: {health.status}"
                        f"{' (' + health.error + ')' if health.error else ''}", level)
            if recover and not health.passed and self.config.auto_recovery:
                self._recover_into(report, service, self.quick_check)
        return report

    def comprehensive(self, recover: bool = True) -> HealthReport:
        report = self._new_report("comprehensive" if recover else "report")
        for service in self.controller.services:
            health = self.container_check(service)
            report.services[service.name] = health
            self.collect_details(service, health)
            if health.passed:
                log_message(f"{service.name}: healthy ({health.response_time}s)", "SUCCESS")
                continue
            log_message(f"{service.name}: {health.status} ({health.error})", "ERROR")
            if recover and self.config.auto_recovery:
                self._recover_into(report, service, self.container_check)
        report.disk = self.check_disk()
        return report

    def monitor(self, max_iterations: Optional[int] = None) -> HealthReport:
        """Repeat quick checks with recovery until cancelled or max_iterations."""
        log_message(f"Monitoring every {self.config.health_check_interval}s (Ctrl+C to stop)")
        report = self._new_report("monitor")
        iterations = 0
        try:
            with interruption_guard():
                while max_iterations is None or iterations < max_iterations:
                    self.clear_screen()
                    report = self.quick(recover=True)
                    report.mode = "monitor"
                    iterations += 1
                    status = "all services healthy" if report.healthy else f"failing: {', '.join(report.failing())}"
                    log_message(f"[{report.timestamp}] {status}")
                    if max_iterations is not None and iterations >= max_iterations:
                        break
                    self.sleep(self.config.health_check_interval)
        except (OperationInterrupted, KeyboardInterrupt):
            log_message("Monitoring stopped")
        return report

    def write_report(self, report: HealthReport) -> str:
        path = self.config.log_path / f"health_{timestamp(self.clock())}.json"
        atomic_write_json(path, report.to_dict())
        report.report_path = str(path)
        log_message(f"Health report written to {path}")
        return str(path)

    def check(self, mode: str = "comprehensive", max_iterations: Optional[int] = None) -> HealthReport:
        mode = MODE_ALIASES.get(mode, mode)
        if mode not in HEALTH_MODES:
            raise ValueError(f"Invalid health check mode: {mode}")
        if mode == "quick":
            return self.quick()
        if mode == "monitor":
            return self.monitor(max_iterations)
        report = self.comprehensive(recover=(mode == "comprehensive"))
        self.write_report(report)
        return report


def main(args=None):
    """Entry point: health [quick|comprehensive|monitor|report]."""
    args = list(args or [])
    mode = MODE_ALIASES.get(args[0], args[0]) if args else "comprehensive"
    if mode not in HEALTH_MODES:
        log_message(f"Invalid health check mode: {mode} (expected one of {', '.join(HEALTH_MODES)})", "ERROR")
        return {"success": False, "error": f"invalid mode {mode}"}

    config = load_config()
    monitor = HealthMonitor(config)
    try:
        report = monitor.check(mode)
    except OSError as e:
        log_message(f"Health check failed: {e}", "ERROR")
        return {"success": False, "error": str(e)}

    if mode == "monitor":
        return {"success": True, "report": report.to_dict()}
    if report.healthy:
        log_message("All health checks passed", "SUCCESS")
    else:
        log_message(f"Health checks failed: {', '.join(report.failing()) or 'disk space'}", "ERROR")
    return {"success": report.healthy, "report": report.to_dict()}
