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
Environment Configuration

Builds a read-only ArchonConfig once per process from the process
environment overlaid with the deployment's .env file. Every component takes
the config as an argument; nothing re-reads the environment mid-operation.

Usage:
    from archon_ops.utils.config import load_config

    config = load_config()
    print(config.backup_path)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from dotenv import dotenv_values

from .index import log_message

DEFAULT_DEPLOY_DIR = "/boot/config/plugins/archon/unraid"
UNRAID_VERSION_FILE = "/etc/unraid-version"

SENSITIVE_PATTERNS = ("KEY", "TOKEN", "PASSWORD", "SECRET")

DEFAULT_PRESERVE = ".env,*.env,*.pem,*.key,*/credentials/*,*/certs/*,*settings.json"

_TRUE = {"true", "yes", "1", "on"}
_FALSE = {"false", "no", "0", "off"}


class ConfigError(ValueError):
    """Raised for configuration values that cannot be used at all."""
    pass


def is_sensitive_key(key: str) -> bool:
    upper = key.upper()
    return any(pattern in upper for pattern in SENSITIVE_PATTERNS)


def _env_line_key(line: str) -> Optional[str]:
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None
    key = stripped.split("=", 1)[0].strip()
    if key.startswith("export "):
        key = key[len("export "):].strip()
    return key


def sanitize_env_text(text: str) -> str:
    """Drop every KEY=value line whose key names a credential."""
    kept = []
    for line in text.splitlines():
        key = _env_line_key(line)
        if key is not None and is_sensitive_key(key):
            continue
        kept.append(line)
    return "\n".join(kept) + ("\n" if kept else "")


def credential_lines(text: str) -> List[str]:
    """Return the KEY=value lines whose key names a credential."""
    lines = []
    for line in text.splitlines():
        key = _env_line_key(line)
        if key is not None and is_sensitive_key(key):
            lines.append(line)
    return lines


def _parse_bool(values: Mapping[str, str], key: str, default: bool) -> bool:
    raw = values.get(key)
    if raw is None or raw == "":
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    log_message(f"Invalid boolean for {key}: {raw!r}, using {default}", "WARNING")
    return default


def _parse_int(values: Mapping[str, str], key: str, default: int) -> int:
    raw = values.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw.strip())
    except ValueError:
        log_message(f"Invalid integer for {key}: {raw!r}, using {default}", "WARNING")
        return default


def _parse_list(values: Mapping[str, str], key: str, default: str) -> Tuple[str, ...]:
    raw = values.get(key) or default
    if key == "ARCHON_ALLOWED_BASES":
        # PATH-style colon lists are accepted too
        raw = raw.replace(":", ",")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class ArchonConfig:
    """Immutable runtime configuration shared by every component."""
    appdata_path: Path
    data_path: Path
    backup_path: Path
    log_path: Path
    safety_path: Path
    scratch_path: Path
    deploy_dir: Path
    env_file: Path
    compose_files: Tuple[str, ...] = ("docker-compose.unraid.yml", "docker-compose.override.yml")
    compose_project: str = "archon"
    image_registry: str = "ghcr.io/archon"
    allowed_bases: Tuple[str, ...] = ("/mnt/user", "/mnt/cache", "/mnt/disks")
    preserve_patterns: Tuple[str, ...] = tuple(DEFAULT_PRESERVE.split(","))
    retention_days: int = 30
    compression: bool = True
    encryption: bool = False
    encryption_key: str = field(default="", repr=False)
    puid: int = 99
    pgid: int = 100
    apply_ownership: bool = False
    server_port: int = 8181
    mcp_port: int = 8051
    agents_port: int = 8052
    frontend_port: int = 3737
    service_host: str = "localhost"
    health_check_interval: int = 30
    health_check_timeout: int = 10
    health_check_retries: int = 3
    quick_check_timeout: int = 2
    auto_recovery: bool = True
    alert_on_failure: bool = True
    log_retention_days: int = 7
    docker_prune: bool = True
    auto_update: bool = False
    supabase_url: str = ""
    values: Dict[str, str] = field(default_factory=dict, repr=False, compare=False)

    @property
    def snapshots_dir(self) -> Path:
        return self.backup_path / "snapshots"

    @property
    def compressed_dir(self) -> Path:
        return self.backup_path / "compressed"

    @property
    def encrypted_dir(self) -> Path:
        return self.backup_path / "encrypted"

    @property
    def state_dir(self) -> Path:
        return self.backup_path / "state"

    def compose_paths(self) -> List[Path]:
        return [self.deploy_dir / name for name in self.compose_files]

    def redacted(self, keys: Optional[Iterable[str]] = None) -> Dict[str, str]:
        """Raw key/value view with credentials masked, optionally limited to keys."""
        wanted = None if keys is None else set(keys)
        return {
            key: ("********" if is_sensitive_key(key) and value else value)
            for key, value in sorted(self.values.items())
            if wanted is None or key in wanted
        }


def load_config(env_file: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None) -> ArchonConfig:
    """
    Build the configuration for this process.

    The process environment is overlaid with the .env file, mirroring a
    shell that sources the file after inheriting its environment.

    Args:
        env_file: Explicit .env path. Defaults to ARCHON_ENV_FILE, then
            <ARCHON_DEPLOY_DIR>/.env.
        environ: Environment mapping to use instead of os.environ.

    Returns:
        ArchonConfig: Frozen configuration.
    """
    base_env = dict(os.environ if environ is None else environ)
    deploy_dir = base_env.get("ARCHON_DEPLOY_DIR") or DEFAULT_DEPLOY_DIR
    env_path = Path(env_file or base_env.get("ARCHON_ENV_FILE") or os.path.join(deploy_dir, ".env"))

    values: Dict[str, str] = dict(base_env)
    file_keys: List[str] = []
    if env_path.is_file():
        for key, value in dotenv_values(str(env_path)).items():
            if value is not None:
                values[key] = value
                file_keys.append(key)
    else:
        log_message(f"No environment file at {env_path}, using process environment", "DEBUG")

    deploy_dir = values.get("ARCHON_DEPLOY_DIR") or deploy_dir
    appdata = Path(values.get("APPDATA_PATH") or "/mnt/user/appdata/archon")
    data = Path(values.get("DATA_PATH") or "/mnt/user/archon-data")
    backup = Path(values.get("BACKUP_PATH") or "/mnt/user/backups/archon")

    ownership = (values.get("APPLY_OWNERSHIP") or "auto").strip().lower()
    if ownership == "auto":
        apply_ownership = os.path.exists(UNRAID_VERSION_FILE)
    else:
        apply_ownership = _parse_bool(values, "APPLY_OWNERSHIP", False)

    retention_days = _parse_int(values, "BACKUP_RETENTION_DAYS", 30)
    if retention_days < 0:
        raise ConfigError(f"BACKUP_RETENTION_DAYS must not be negative: {retention_days}")

    config = ArchonConfig(
        appdata_path=appdata,
        data_path=data,
        backup_path=backup,
        log_path=Path(values.get("LOG_PATH") or appdata / "logs"),
        safety_path=Path(values.get("SAFETY_BACKUP_PATH") or backup / "safety"),
        scratch_path=Path(values.get("RESTORE_SCRATCH_PATH") or backup / ".restore_tmp"),
        deploy_dir=Path(deploy_dir),
        env_file=env_path,
        compose_files=_parse_list(values, "COMPOSE_FILES",
                                  "docker-compose.unraid.yml,docker-compose.override.yml"),
        compose_project=values.get("COMPOSE_PROJECT_NAME") or "archon",
        image_registry=(values.get("IMAGE_REGISTRY") or "ghcr.io/archon").rstrip("/"),
        allowed_bases=_parse_list(values, "ARCHON_ALLOWED_BASES", "/mnt/user,/mnt/cache,/mnt/disks"),
        preserve_patterns=_parse_list(values, "RESTORE_PRESERVE", DEFAULT_PRESERVE),
        retention_days=retention_days,
        compression=_parse_bool(values, "BACKUP_COMPRESSION", True),
        encryption=_parse_bool(values, "BACKUP_ENCRYPTION", False),
        encryption_key=values.get("BACKUP_ENCRYPTION_KEY") or "",
        puid=_parse_int(values, "PUID", 99),
        pgid=_parse_int(values, "PGID", 100),
        apply_ownership=apply_ownership,
        server_port=_parse_int(values, "SERVER_PORT", 8181),
        mcp_port=_parse_int(values, "MCP_PORT", 8051),
        agents_port=_parse_int(values, "AGENTS_PORT", 8052),
        frontend_port=_parse_int(values, "FRONTEND_PORT", 3737),
        service_host=values.get("SERVICE_HOST") or "localhost",
        health_check_interval=_parse_int(values, "HEALTH_CHECK_INTERVAL", 30),
        health_check_timeout=_parse_int(values, "HEALTH_CHECK_TIMEOUT", 10),
        health_check_retries=max(1, _parse_int(values, "HEALTH_CHECK_RETRIES", 3)),
        quick_check_timeout=_parse_int(values, "QUICK_CHECK_TIMEOUT", 2),
        auto_recovery=_parse_bool(values, "AUTO_RECOVERY", True),
        alert_on_failure=_parse_bool(values, "ALERT_ON_FAILURE", True),
        log_retention_days=_parse_int(values, "LOG_RETENTION_DAYS", 7),
        docker_prune=_parse_bool(values, "DOCKER_PRUNE", True),
        auto_update=_parse_bool(values, "AUTO_UPDATE", False),
        supabase_url=values.get("SUPABASE_URL") or "",
        values=values,
    )
    if file_keys:
        settings = ", ".join(f"{k}={v}" for k, v in config.redacted(file_keys).items())
        log_message(f"Configuration from {env_path}: {settings}")
    return config
