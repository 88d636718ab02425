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
Managed Services and the Service Controller

The four Archon containers are driven as a unit through docker compose and
queried individually through the docker CLI. Liveness probes go over HTTP.
"""

import gzip
import shutil
import subprocess
import time
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from .config import ArchonConfig
from .errors import ArchonOpsError, ServiceStartFailed
from .index import CHUNK_SIZE, log_message
from .retry import retry_until


class ServiceState(Enum):
    UNKNOWN = "unknown"
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING_UNHEALTHY = "running-unhealthy"
    RUNNING_HEALTHY = "running-healthy"


@dataclass(frozen=True)
class ManagedService:
    """One long-running container under lifecycle control."""
    name: str
    port: int
    path: str
    image: str

    @property
    def short_name(self) -> str:
        return self.name.replace("archon-", "", 1)

    def url(self, host: str = "localhost", path: Optional[str] = None) -> str:
        return f"http://{host}:{self.port}{path if path is not None else self.path}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_services(config: ArchonConfig) -> List[ManagedService]:
    registry = config.image_registry
    return [
        ManagedService("archon-server", config.server_port, "/health", f"{registry}/archon-server:latest"),
        ManagedService("archon-mcp", config.mcp_port, "/health", f"{registry}/archon-mcp:latest"),
        ManagedService("archon-agents", config.agents_port, "/health", f"{registry}/archon-agents:latest"),
        ManagedService("archon-frontend", config.frontend_port, "/", f"{registry}/archon-frontend:latest"),
    ]


@dataclass
class ProbeResult:
    ok: bool
    status_code: Optional[int] = None
    response_time: Optional[float] = None
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def probe_liveness(service: ManagedService, timeout: float, host: str = "localhost",
                   path: Optional[str] = None) -> ProbeResult:
    """Single HTTP liveness probe; 200 and 204 count as alive."""
    url = service.url(host, path)
    started = time.monotonic()
    try:
        r = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        return ProbeResult(ok=False, error=str(e))
    elapsed = round(time.monotonic() - started, 3)
    return ProbeResult(ok=r.status_code in (200, 204), status_code=r.status_code, response_time=elapsed)


def wait_for_http(url: str, timeout: int = 120, interval: int = 2,
                  sleep: Callable[[float], None] = time.sleep) -> bool:
    """Poll url until it answers 200/204 or timeout seconds have passed."""
    def _attempt() -> bool:
        try:
            return requests.get(url, timeout=interval).status_code in (200, 204)
        except requests.RequestException:
            return False

    attempts = max(1, timeout // max(1, interval))
    return retry_until(_attempt, max_attempts=attempts, backoff=interval, sleep=sleep,
                       description=f"Waiting for {url}")


class ServiceController:
    """Starts, stops and inspects the managed services."""

    def __init__(self, config: ArchonConfig, runner: Callable[..., Any] = subprocess.run):
        self.config = config
        self.services = build_services(config)
        self._run = runner

    def _compose_cmd(self, *args: str) -> List[str]:
        cmd = ["docker", "compose"]
        present = [p for p in self.config.compose_paths() if p.exists()]
        for compose_file in present or self.config.compose_paths()[:1]:
            cmd.extend(["-f", str(compose_file)])
        cmd.extend(args)
        return cmd

    def _exec(self, cmd: List[str], timeout: int = 300, check: bool = False):
        log_message(f"Running: {' '.join(cmd)}", "DEBUG")
        try:
            return self._run(cmd, capture_output=True, text=True, timeout=timeout,
                             cwd=str(self.config.deploy_dir) if self.config.deploy_dir.exists() else None,
                             check=check)
        except FileNotFoundError as e:
            raise ArchonOpsError(f"Command not available: {cmd[0]}", command=" ".join(cmd)) from e
        except subprocess.TimeoutExpired as e:
            raise ArchonOpsError(f"Command timed out after {timeout}s: {' '.join(cmd)}") from e

    def _docker_out(self, *args: str, timeout: int = 60) -> str:
        result = self._exec(["docker", *args], timeout=timeout)
        if result.returncode != 0:
            return ""
        return (result.stdout or "").strip()

    def service(self, name: str) -> ManagedService:
        for svc in self.services:
            if svc.name == name or svc.short_name == name:
                return svc
        raise KeyError(name)

    # Stack lifecycle

    def stop_all(self) -> None:
        log_message("Stopping Archon services...")
        result = self._exec(self._compose_cmd("stop"))
        if result.returncode != 0:
            raise ServiceStartFailed(f"Failed to stop services: {(result.stderr or '').strip()}")

    def down(self) -> None:
        log_message("Taking Archon services down...")
        result = self._exec(self._compose_cmd("down"))
        if result.returncode != 0:
            raise ServiceStartFailed(f"Failed to take services down: {(result.stderr or '').strip()}")

    def start_all(self) -> None:
        log_message("Starting Archon services...")
        result = self._exec(self._compose_cmd("up", "-d"))
        if result.returncode != 0:
            raise ServiceStartFailed(f"Failed to start services: {(result.stderr or '').strip()}")

    def force_recreate(self, service: Optional[ManagedService] = None) -> None:
        args = ["up", "-d", "--force-recreate"]
        if service is not None:
            args.append(service.name)
        result = self._exec(self._compose_cmd(*args))
        if result.returncode != 0:
            target = service.name if service else "stack"
            raise ServiceStartFailed(f"Failed to recreate {target}: {(result.stderr or '').strip()}")

    def restart(self, service: ManagedService) -> bool:
        log_message(f"Restarting {service.name}...")
        return self._exec(["docker", "restart", service.name], timeout=120).returncode == 0

    # Container queries

    def is_running(self, service: ManagedService) -> bool:
        names = self._docker_out("ps", "--filter", f"name=^{service.name}$", "--format", "{{.Names}}")
        return service.name in names.splitlines()

    def inspect_state(self, service: ManagedService) -> Dict[str, str]:
        out = self._docker_out(
            "inspect", "--format",
            "{{.State.Status}}|{{if .State.Health}}{{.State.Health.Status}}{{end}}",
            service.name,
        )
        status, _, health = out.partition("|")
        return {"status": status or "missing", "health": health}

    def service_state(self, service: ManagedService, timeout: float = 2) -> ServiceState:
        state = self.inspect_state(service)
        if state["status"] == "missing":
            return ServiceState.UNKNOWN
        if state["status"] in ("created", "restarting"):
            return ServiceState.STARTING
        if state["status"] != "running":
            return ServiceState.STOPPED
        if state["health"] == "starting":
            return ServiceState.STARTING
        if state["health"] == "unhealthy":
            return ServiceState.RUNNING_UNHEALTHY
        probe = self.probe(service, timeout)
        return ServiceState.RUNNING_HEALTHY if probe.ok else ServiceState.RUNNING_UNHEALTHY

    def probe(self, service: ManagedService, timeout: float, path: Optional[str] = None) -> ProbeResult:
        return probe_liveness(service, timeout, self.config.service_host, path)

    def wait_until_ready(self, service: ManagedService, timeout: int = 120,
                         sleep: Callable[[float], None] = time.sleep) -> bool:
        return wait_for_http(service.url(self.config.service_host), timeout=timeout, sleep=sleep)

    def stats(self, service: ManagedService) -> Dict[str, str]:
        out = self._docker_out(
            "stats", "--no-stream", "--format",
            "{{.CPUPerc}}|{{.MemUsage}}|{{.MemPerc}}|{{.NetIO}}|{{.BlockIO}}",
            service.name,
        )
        if not out:
            return {}
        parts = (out.splitlines()[0].split("|") + [""] * 5)[:5]
        return dict(zip(("cpu", "memory", "memory_percent", "network_io", "block_io"), parts))

    def recent_logs(self, service: ManagedService, since: str = "5m") -> str:
        result = self._exec(["docker", "logs", "--since", since, service.name], timeout=60)
        return (result.stdout or "") + (result.stderr or "")

    def log_path(self, service: ManagedService) -> str:
        return self._docker_out("inspect", "--format", "{{.LogPath}}", service.name)

    def port_bindings(self, service: ManagedService) -> List[str]:
        return [line for line in self._docker_out("port", service.name).splitlines() if line]

    # Images

    def image_exists(self, image: str) -> bool:
        return self._exec(["docker", "image", "inspect", image], timeout=60).returncode == 0

    def image_id(self, image: str) -> str:
        return self._docker_out("image", "inspect", "--format", "{{.Id}}", image)

    def pull(self, image: str) -> bool:
        return self._exec(["docker", "pull", image], timeout=900).returncode == 0

    def save_image(self, image: str, destination: Path) -> None:
        """Stream `docker save` through gzip into destination."""
        log_message(f"Exporting image {image}...")
        proc = subprocess.Popen(["docker", "save", image], stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        try:
            with gzip.open(str(destination), "wb") as out:
                shutil.copyfileobj(proc.stdout, out, CHUNK_SIZE)
        finally:
            proc.stdout.close()
            _, stderr = proc.communicate()
        if proc.returncode != 0:
            raise ArchonOpsError(f"docker save {image} failed: {stderr.decode(errors='replace').strip()}")

    def load_image(self, archive: Path) -> None:
        log_message(f"Loading image {archive.name}...")
        proc = subprocess.Popen(["docker", "load"], stdin=subprocess.PIPE,
                                stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        try:
            with gzip.open(str(archive), "rb") as src:
                shutil.copyfileobj(src, proc.stdin, CHUNK_SIZE)
        finally:
            proc.stdin.close()
            _, stderr = proc.communicate()
        if proc.returncode != 0:
            raise ArchonOpsError(f"docker load {archive.name} failed: {stderr.decode(errors='replace').strip()}")

    # Housekeeping

    def remove_exited_containers(self) -> int:
        ids = self._docker_out(
            "ps", "-aq", "--filter", "status=exited",
            "--filter", f"label=com.docker.compose.project={self.config.compose_project}",
        ).split()
        if ids:
            self._exec(["docker", "rm", *ids])
        return len(ids)

    def prune_images(self) -> str:
        return self._docker_out("image", "prune", "-f", timeout=600)

    def prune_networks(self) -> str:
        return self._docker_out("network", "prune", "-f", timeout=120)
