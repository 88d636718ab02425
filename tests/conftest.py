"""Shared fixtures: a throwaway Unraid-like layout and in-memory service fakes."""

import datetime
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from archon_ops.utils.config import load_config
from archon_ops.utils.services import ProbeResult, ServiceState, build_services


class FakeNotifier:
    """Records notifications instead of delivering them."""

    def __init__(self):
        self.sent = []

    def send(self, subject, message, severity="info"):
        self.sent.append((subject, message, severity))
        return True

    def subjects(self):
        return [s[0] for s in self.sent]


class FakeController:
    """In-memory stand-in for docker / docker compose."""

    def __init__(self, config, running=True):
        self.config = config
        self.services = build_services(config)
        self.running = {svc.name: running for svc in self.services}
        self.failing_probe = set()
        self.unhealthy = set()
        self.heal_on = None
        self.calls = []
        self.loaded_images = []
        self.fail_start = False

    def service(self, name):
        return next(s for s in self.services if s.name == name)

    def _all(self, state):
        for name in self.running:
            self.running[name] = state

    def stop_all(self):
        self.calls.append("stop_all")
        self._all(False)

    def down(self):
        self.calls.append("down")
        self._all(False)

    def start_all(self):
        self.calls.append("start_all")
        if self.fail_start:
            from archon_ops.utils.errors import ServiceStartFailed
            raise ServiceStartFailed("compose up failed")
        self._all(True)

    def restart(self, service):
        self.calls.append(("restart", service.name))
        self.running[service.name] = True
        if self.heal_on == "restart":
            self.failing_probe.discard(service.name)
        return True

    def force_recreate(self, service=None):
        self.calls.append(("force_recreate", service.name if service else None))
        if service is not None:
            self.running[service.name] = True
            if self.heal_on == "recreate":
                self.failing_probe.discard(service.name)

    def is_running(self, service):
        return self.running.get(service.name, False)

    def inspect_state(self, service):
        if not self.running.get(service.name):
            return {"status": "exited", "health": ""}
        return {"status": "running", "health": "unhealthy" if service.name in self.unhealthy else "healthy"}

    def probe(self, service, timeout, path=None):
        if self.running.get(service.name) and service.name not in self.failing_probe:
            return ProbeResult(ok=True, status_code=200, response_time=0.01)
        return ProbeResult(ok=False, error="connection refused")

    def service_state(self, service, timeout=2):
        state = self.inspect_state(service)
        if state["status"] != "running":
            return ServiceState.STOPPED
        if state["health"] == "unhealthy" or not self.probe(service, timeout).ok:
            return ServiceState.RUNNING_UNHEALTHY
        return ServiceState.RUNNING_HEALTHY

    def wait_until_ready(self, service, timeout=120):
        return self.probe(service, timeout).ok

    def stats(self, service):
        return {"cpu": "1.5%", "memory": "100MiB / 1GiB", "memory_percent": "9.7%",
                "network_io": "1kB / 2kB", "block_io": "0B / 0B"}

    def recent_logs(self, service, since="5m"):
        return "INFO started\nERROR database timeout\ninfo database connection opened\n"

    def log_path(self, service):
        return ""

    def port_bindings(self, service):
        return [f"{service.port}/tcp -> 0.0.0.0:{service.port}"]

    def image_exists(self, image):
        return False

    def image_id(self, image):
        return "sha256:same"

    def pull(self, image):
        return True

    def save_image(self, image, destination):
        destination.write_bytes(b"image")

    def load_image(self, archive):
        self.loaded_images.append(archive.name)

    def remove_exited_containers(self):
        self.calls.append("remove_exited")
        return 0

    def prune_images(self):
        self.calls.append("prune_images")
        return "Total reclaimed space: 0B"

    def prune_networks(self):
        self.calls.append("prune_networks")
        return ""


class StepClock:
    """Clock that advances a fixed step on every call."""

    def __init__(self, start=datetime.datetime(2026, 3, 1, 12, 0, 0), step=datetime.timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self):
        current = self.now
        self.now = self.now + self.step
        return current


def write_tree(root: Path, files: dict):
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content if isinstance(content, bytes) else content.encode())


def read_tree(root: Path) -> dict:
    tree = {}
    for current, dirs, files in os.walk(root):
        for name in files:
            full = Path(current) / name
            tree[str(full.relative_to(root))] = full.read_bytes()
    return tree


@pytest.fixture(autouse=True)
def disk_backed_tmp():
    """tmp_path is tmpfs on some hosts; treat it as persistent storage."""
    with patch("archon_ops.modules.restore.safety.filesystem_type", return_value="ext4"):
        yield


@pytest.fixture
def layout(tmp_path):
    """Unraid-like directories with some application data and documents."""
    base = Path(os.path.realpath(tmp_path)) / "mnt" / "user"
    paths = {
        "base": base,
        "appdata": base / "appdata" / "archon",
        "data": base / "archon-data",
        "backup": base / "backups" / "archon",
        "deploy": Path(os.path.realpath(tmp_path)) / "deploy",
        "logs": Path(os.path.realpath(tmp_path)) / "logs",
    }
    for key in ("appdata", "data", "backup", "deploy", "logs"):
        paths[key].mkdir(parents=True)

    write_tree(paths["appdata"], {
        "server/state.db": b"server-state-v1",
        "mcp/cache/index.bin": b"\x00\x01\x02mcp",
        "agents/memory.json": '{"agents": 1}',
        "frontend/build.txt": "frontend v1",
        "logs/server/server.log": "boot\n",
    })
    write_tree(paths["data"], {
        "docs/readme.md": "# knowledge base\n",
        "docs/guide/intro.md": "intro v1\n",
    })
    (paths["deploy"] / ".env").write_text(
        "SUPABASE_URL=https://example.supabase.co\n"
        "SUPABASE_SERVICE_KEY=super-secret\n"
        "OPENAI_API_KEY=sk-test\n"
        "LOG_LEVEL=info\n"
    )
    (paths["deploy"] / "docker-compose.unraid.yml").write_text("services: {}\n")
    (paths["deploy"] / "docker-compose.override.yml").write_text("services: {}\n")
    return paths


def make_config(layout, **overrides):
    environ = {
        "APPDATA_PATH": str(layout["appdata"]),
        "DATA_PATH": str(layout["data"]),
        "BACKUP_PATH": str(layout["backup"]),
        "LOG_PATH": str(layout["logs"]),
        "ARCHON_DEPLOY_DIR": str(layout["deploy"]),
        "ARCHON_ALLOWED_BASES": str(layout["base"]),
        "APPLY_OWNERSHIP": "false",
        "HEALTH_CHECK_RETRIES": "2",
    }
    environ.update({k: str(v) for k, v in overrides.items()})
    return load_config(environ=environ)


@pytest.fixture
def config(layout):
    return make_config(layout)


@pytest.fixture
def controller(config):
    return FakeController(config)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def no_sleep():
    return lambda seconds: None
