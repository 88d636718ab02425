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
Archive Engine

Creates a timestamped backup artifact of the Archon application state,
knowledge-base documents, sanitized configuration and (full mode) service
images.

Full backups stop the services for a consistent copy and always start them
again. Incremental backups leave services running and hard-link files that
are unchanged against the Latest Pointer's snapshot. The snapshot is built
under a .partial name and only becomes visible, and only becomes the new
Latest Pointer, once every step has succeeded.
"""

import datetime
import os
import shutil
import time
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ...utils.config import ArchonConfig, load_config, sanitize_env_text
from ...utils.errors import ArchonOpsError, InsufficientStorage, IntegrityCheckFailed
from ...utils.index import (
    atomic_write_json,
    atomic_write_text,
    calculate_checksum,
    directory_size,
    format_size,
    free_space,
    log_message,
    remove_path,
    timestamp,
    write_checksum_sidecar,
)
from ...utils.notifier import Notifier
from ...utils.services import ServiceController
from ...utils.signals import interruption_guard
from ...utils.state_manager import MANIFEST_NAME, LatestPointer, StateManager
from .archive import encrypt_file, pack_tree
from .retention import apply_retention
from .snapshot import copy_tree, link_tree

BACKUP_MODES = ("full", "incremental")
ARTIFACT_PREFIX = "archon_backup_"
# Copied in full every run, never linked
PLAIN_COPY_ENTRIES = ("logs",)
STOP_SETTLE_SECONDS = 5


@dataclass
class ArtifactRef:
    """Handle to a completed backup artifact."""
    name: str
    mode: str
    storage_form: str
    path: str
    snapshot_path: str
    checksum: str
    checksum_path: str
    size_bytes: int
    created_at: str
    base: str = ""
    report_path: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BackupEngine:
    """Builds, post-processes, verifies and registers backup artifacts."""

    def __init__(self, config: ArchonConfig,
                 controller: Optional[ServiceController] = None,
                 notifier: Optional[Notifier] = None,
                 state: Optional[StateManager] = None,
                 clock: Callable[[], datetime.datetime] = datetime.datetime.now,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.controller = controller or ServiceController(config)
        self.notifier = notifier or Notifier()
        self.state = state or StateManager(config.backup_path)
        self.clock = clock
        self.sleep = sleep

    # Preconditions

    def _prepare_directories(self) -> None:
        for directory in (self.config.snapshots_dir, self.config.compressed_dir,
                          self.config.encrypted_dir, self.config.state_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def check_storage(self) -> Dict[str, int]:
        """Raise InsufficientStorage unless the backup disk can hold the sources."""
        required = directory_size(self.config.appdata_path) + directory_size(self.config.data_path)
        available = free_space(self.config.backup_path)
        log_message(f"Storage check: need {format_size(required)}, have {format_size(available)}")
        if available < required:
            raise InsufficientStorage(
                f"Insufficient disk space for backup: need {format_size(required)}, "
                f"have {format_size(available)}",
                required=required, available=available,
            )
        return {"required": required, "available": available}

    # Service pause

    def _restart_services(self, raise_errors: bool) -> None:
        try:
            self.controller.start_all()
            log_message("Services restarted", "SUCCESS")
        except ArchonOpsError as e:
            log_message(f"Failed to restart services after backup: {e}", "ERROR")
            if raise_errors:
                raise

    @contextmanager
    def _services_paused(self, pause: bool):
        """Stop services for the duration of the block and always start them again."""
        if not pause:
            yield
            return
        try:
            self.controller.stop_all()
            self.sleep(STOP_SETTLE_SECONDS)
            yield
        except BaseException:
            self._restart_services(raise_errors=False)
            raise
        else:
            self._restart_services(raise_errors=True)

    # Snapshot construction

    def _base_for(self, base: Optional[Path], *parts: str) -> Optional[Path]:
        if base is None:
            return None
        candidate = base.joinpath(*parts)
        return candidate if candidate.exists() else None

    def _snapshot_appdata(self, snapshot: Path, base: Optional[Path]) -> Dict[str, int]:
        totals = {"linked": 0, "copied": 0}
        appdata = self.config.appdata_path
        dest = snapshot / "appdata"
        dest.mkdir(parents=True)
        if not appdata.is_dir():
            log_message(f"Application data not found at {appdata}, skipping", "WARNING")
            return totals
        log_message("Backing up application data...")
        for entry in sorted(appdata.iterdir()):
            if entry.name in PLAIN_COPY_ENTRIES:
                stats = copy_tree(entry, dest / entry.name)
            else:
                stats = link_tree(entry, dest / entry.name, self._base_for(base, "appdata", entry.name))
            totals["linked"] += stats["linked"]
            totals["copied"] += stats["copied"]
        shutil.copystat(str(appdata), str(dest))
        return totals

    def _snapshot_documents(self, snapshot: Path, base: Optional[Path]) -> Dict[str, int]:
        data = self.config.data_path
        if not data.is_dir():
            log_message(f"Document data not found at {data}, skipping", "WARNING")
            (snapshot / "documents").mkdir(parents=True)
            return {"linked": 0, "copied": 0}
        log_message("Backing up knowledge base documents...")
        return link_tree(data, snapshot / "documents", self._base_for(base, "documents"))

    def _snapshot_config(self, snapshot: Path) -> List[str]:
        log_message("Backing up configuration...")
        dest = snapshot / "config"
        dest.mkdir(parents=True)
        saved = []
        env_file = self.config.env_file
        if env_file.is_file():
            (dest / "env_sanitized.txt").write_text(sanitize_env_text(env_file.read_text()))
            saved.append("env_sanitized.txt")
        for compose_file in sorted(self.config.deploy_dir.glob("*.yml")) if self.config.deploy_dir.is_dir() else []:
            shutil.copy2(str(compose_file), str(dest / compose_file.name))
            saved.append(compose_file.name)
        scripts = self.config.deploy_dir / "scripts"
        if scripts.is_dir():
            copy_tree(scripts, dest / "scripts")
            saved.append("scripts")
        return saved

    def _snapshot_database(self, snapshot: Path, name: str, mode: str, created: datetime.datetime) -> None:
        # Supabase is hosted; only the endpoint is recorded, never its key
        dest = snapshot / "database"
        dest.mkdir(parents=True)
        (dest / "supabase_config.txt").write_text(f"SUPABASE_URL={self.config.supabase_url}\n")
        (dest / "backup_info.txt").write_text(
            f"Backup Name: {name}\n"
            f"Backup Type: {mode}\n"
            f"Created: {created.isoformat(timespec='seconds')}\n"
            f"Supabase URL: {self.config.supabase_url or 'not configured'}\n"
        )

    def _snapshot_images(self, snapshot: Path) -> List[str]:
        dest = snapshot / "images"
        dest.mkdir(parents=True)
        exported = []
        for service in self.controller.services:
            if not self.controller.image_exists(service.image):
                log_message(f"Image {service.image} not present locally, skipping export", "WARNING")
                continue
            self.controller.save_image(service.image, dest / f"{service.name}.tar.gz")
            exported.append(service.name)
        return exported

    def _build_snapshot(self, partial: Path, name: str, mode: str,
                        base: Optional[Path], created: datetime.datetime) -> Dict[str, Any]:
        if partial.exists():
            remove_path(partial)
        partial.mkdir(parents=True)

        appdata_stats = self._snapshot_appdata(partial, base)
        document_stats = self._snapshot_documents(partial, base)
        config_files = self._snapshot_config(partial)
        self._snapshot_database(partial, name, mode, created)
        images = self._snapshot_images(partial) if mode == "full" else []

        manifest = {
            "name": name,
            "mode": mode,
            "created_at": created.isoformat(timespec="seconds"),
            "base": base.name if base is not None else None,
            "contents": {
                "appdata": appdata_stats,
                "documents": document_stats,
                "config": config_files,
                "images": images,
            },
        }
        atomic_write_json(partial / MANIFEST_NAME, manifest)
        return manifest

    # Post-processing

    def _post_process(self, snapshot: Path, name: str, created: List[Path]) -> Tuple[Path, str]:
        encrypt = self.config.encryption
        if encrypt and not self.config.encryption_key:
            log_message("Encryption enabled but BACKUP_ENCRYPTION_KEY is empty, skipping encryption", "WARNING")
            encrypt = False
        if not self.config.compression and not encrypt:
            return snapshot, "snapshot"

        suffix = ".tar.gz" if self.config.compression else ".tar"
        archive = self.config.compressed_dir / f"{name}{suffix}"
        tmp_archive = archive.with_name(archive.name + ".part")
        created.append(tmp_archive)
        pack_tree(snapshot, tmp_archive, compress=self.config.compression)
        os.replace(str(tmp_archive), str(archive))
        created.append(archive)
        if not encrypt:
            return archive, "compressed"

        encrypted = self.config.encrypted_dir / f"{archive.name}.enc"
        tmp_encrypted = encrypted.with_name(encrypted.name + ".part")
        created.append(tmp_encrypted)
        encrypt_file(archive, tmp_encrypted, self.config.encryption_key)
        os.replace(str(tmp_encrypted), str(encrypted))
        created.append(encrypted)
        archive.unlink()
        return encrypted, "encrypted"

    def _discard(self, partial: Path, created: List[Path]) -> None:
        for path in [partial] + list(reversed(created)):
            try:
                remove_path(path)
            except OSError as e:
                log_message(f"Could not remove incomplete backup output {path}: {e}", "WARNING")

    # Public API

    def create_backup(self, mode: str = "full") -> ArtifactRef:
        """
        Create a backup artifact.

        Args:
            mode: "full" (services paused, images exported) or "incremental".

        Returns:
            ArtifactRef: The verified, registered artifact.
        """
        if mode not in BACKUP_MODES:
            raise ValueError(f"Invalid backup mode: {mode}")

        started = self.clock()
        name = f"{ARTIFACT_PREFIX}{timestamp(started)}"
        log_message(f"Starting {mode} backup: {name}")

        self._prepare_directories()
        try:
            self.check_storage()
        except InsufficientStorage as e:
            self.notifier.send("Archon Backup Failed", e.message, "error")
            raise

        base = None
        if mode == "incremental":
            pointer = self.state.get_latest()
            if pointer is not None:
                base = Path(pointer.snapshot_path)
                log_message(f"Incremental backup against {pointer.name}")
            else:
                log_message("No usable latest snapshot, incremental backup falls back to a full copy", "WARNING")

        snapshot = self.config.snapshots_dir / name
        partial = self.config.snapshots_dir / f".{name}.partial"
        created: List[Path] = []
        try:
            with interruption_guard():
                with self._services_paused(mode == "full"):
                    self._build_snapshot(partial, name, mode, base, started)
                os.rename(str(partial), str(snapshot))
                created.append(snapshot)

                snapshot_checksum, snapshot_sidecar = write_checksum_sidecar(snapshot, self.config.backup_path)
                created.append(snapshot_sidecar)
                artifact, storage_form = self._post_process(snapshot, name, created)
                if artifact == snapshot:
                    checksum, sidecar = snapshot_checksum, snapshot_sidecar
                else:
                    checksum, sidecar = write_checksum_sidecar(artifact, self.config.backup_path)
                    created.append(sidecar)

                if calculate_checksum(artifact) != checksum:
                    raise IntegrityCheckFailed(f"Backup verification failed for {artifact}", path=artifact)
                log_message(f"Backup verified: {artifact.name}", "SUCCESS")

                self.state.set_latest(LatestPointer(
                    name=name,
                    snapshot_path=str(snapshot),
                    mode=mode,
                    created_at=started.isoformat(timespec="seconds"),
                    artifact_path=str(artifact),
                    checksum=checksum,
                ))
        except BaseException as e:
            log_message(f"Backup {name} failed: {e}", "ERROR")
            self._discard(partial, created)
            self.notifier.send("Archon Backup Failed", f"Backup {name} failed: {e}", "error")
            raise

        ref = ArtifactRef(
            name=name,
            mode=mode,
            storage_form=storage_form,
            path=str(artifact),
            snapshot_path=str(snapshot),
            checksum=checksum,
            checksum_path=str(sidecar),
            size_bytes=directory_size(artifact),
            created_at=started.isoformat(timespec="seconds"),
            base=base.name if base is not None else "",
        )

        try:
            retention = apply_retention(self.config.backup_path, self.config.retention_days, self.state,
                                        keep=name, reports_dir=self.config.log_path, now=self.clock())
        except OSError as e:
            log_message(f"Retention cleanup failed: {e}", "WARNING")
            retention = {"removed": [], "error": str(e)}

        ref.report_path = self._write_report(ref, started, retention)
        self.notifier.send("Archon Backup Complete",
                           f"Backup {name} completed successfully. Size: {format_size(ref.size_bytes)}",
                           "success")
        return ref

    def _write_report(self, ref: ArtifactRef, started: datetime.datetime, retention: Dict[str, Any]) -> str:
        report = self.config.log_path / f"backup_report_{timestamp(started)}.txt"
        duration = (self.clock() - started).total_seconds()
        lines = [
            "Archon Backup Report",
            "=" * 40,
            f"Timestamp: {ref.created_at}",
            f"Backup Name: {ref.name}",
            f"Backup Type: {ref.mode}",
            f"Base Snapshot: {ref.base or 'none'}",
            f"Storage Form: {ref.storage_form}",
            f"Artifact: {ref.path}",
            f"Snapshot: {ref.snapshot_path}",
            f"Size: {format_size(ref.size_bytes)}",
            f"Checksum: {ref.checksum}",
            f"Checksum File: {ref.checksum_path}",
            f"Duration: {duration:.0f}s",
            f"Retention: {self.config.retention_days} days, {len(retention.get('removed', []))} entries removed",
            "",
            "Sources:",
            f"  Application data: {self.config.appdata_path}",
            f"  Documents: {self.config.data_path}",
            f"  Configuration: {self.config.deploy_dir}",
        ]
        try:
            atomic_write_text(report, "\n".join(lines) + "\n")
        except OSError as e:
            log_message(f"Could not write backup report {report}: {e}", "WARNING")
            return ""
        log_message(f"Backup report written to {report}")
        return str(report)


def main(args=None):
    """Entry point: backup [full|incremental]."""
    args = list(args or [])
    mode = args[0] if args else "full"
    if mode not in BACKUP_MODES:
        log_message(f"Invalid backup mode: {mode} (expected one of {', '.join(BACKUP_MODES)})", "ERROR")
        return {"success": False, "error": f"invalid mode {mode}"}

    config = load_config()
    engine = BackupEngine(config)
    try:
        ref = engine.create_backup(mode)
    except ArchonOpsError as e:
        return {"success": False, "error": e.message, "details": e.to_dict()}
    except OSError as e:
        log_message(f"Backup failed with filesystem error: {e}", "ERROR")
        return {"success": False, "error": str(e)}

    log_message(f"Backup completed: {ref.path}", "SUCCESS")
    return {"success": True, "artifact": ref.to_dict()}
