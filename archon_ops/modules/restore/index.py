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
Restore Engine

Selects a backup artifact, verifies it, unpacks it on persistent scratch
storage and replaces the live Archon trees with its contents. Every check
that can fail without side effects (resolution, checksum, path safety,
decryption, extraction) runs before any service is stopped. Destructive
steps run inside the Safety-Rollback Coordinator, so a failed verification
or an interruption ends in the pre-restore state with services running.
"""

import argparse
import datetime
import getpass
import shutil
import sys
import time
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ...utils.config import ArchonConfig, credential_lines, load_config
from ...utils.errors import (
    ArchonOpsError,
    DecryptionFailed,
    IntegrityCheckFailed,
    NoBackupFound,
    ServiceStartFailed,
    ServiceVerificationFailed,
)
from ...utils.index import (
    atomic_write_text,
    calculate_checksum,
    checksum_sidecar_path,
    log_message,
    read_checksum_sidecar,
    remove_path,
    timestamp,
)
from ...utils.notifier import Notifier
from ...utils.permissions import OwnershipManager
from ...utils.retry import retry_until
from ...utils.services import ManagedService, ServiceController
from ...utils.signals import interruption_guard
from ...utils.state_manager import StateManager, snapshot_is_complete
from ..backup.archive import decrypt_file, safe_extract
from ..backup.retention import ARTIFACT_PREFIX, artifact_time
from .rollback import RollbackState, SafetyRollbackCoordinator
from .safety import ensure_persistent_storage, replace_tree_contents, validate_target_path

START_SETTLE_SECONDS = 10
VERIFY_BACKOFF_SECONDS = 5
CONFIRMATION_PHRASE = "RESTORE"
ARCHIVE_SUFFIXES = (".tar.gz.enc", ".tar.enc", ".tar.gz", ".tar")


@dataclass
class ResolvedArtifact:
    name: str
    path: Path
    form: str

    @property
    def sidecar(self) -> Path:
        return checksum_sidecar_path(self.path)


@dataclass
class RestoreOutcome:
    """Terminal result of a restore run."""
    status: str
    artifact: str = ""
    artifact_path: str = ""
    storage_form: str = ""
    restored: List[str] = field(default_factory=list)
    error: str = ""
    safety_snapshot: str = ""
    report_path: str = ""

    @property
    def success(self) -> bool:
        return self.status in (RollbackState.VERIFIED.value, "cancelled")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success"] = self.success
        return data


def _strip_suffix(name: str) -> str:
    for suffix in ARCHIVE_SUFFIXES:
        if name.endswith(suffix):
            return name[:-len(suffix)]
    return name


def _form_of(path: Path) -> str:
    if path.is_dir():
        return "snapshot"
    if path.name.endswith(".enc"):
        return "encrypted"
    return "compressed"


class RestoreEngine:
    """Resolves, verifies and applies a backup artifact."""

    def __init__(self, config: ArchonConfig,
                 controller: Optional[ServiceController] = None,
                 notifier: Optional[Notifier] = None,
                 state: Optional[StateManager] = None,
                 coordinator: Optional[SafetyRollbackCoordinator] = None,
                 passphrase_prompt: Optional[Callable[[], str]] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], datetime.datetime] = datetime.datetime.now):
        self.config = config
        self.controller = controller or ServiceController(config)
        self.notifier = notifier or Notifier()
        self.state = state or StateManager(config.backup_path)
        self.sleep = sleep
        self.clock = clock
        self.coordinator = coordinator or SafetyRollbackCoordinator(
            config, self.controller, self.notifier, self.state, sleep=sleep, clock=clock)
        self.passphrase_prompt = passphrase_prompt

    # Resolution

    def _archives(self) -> List[Path]:
        found = []
        for directory in (self.config.compressed_dir, self.config.encrypted_dir):
            if not directory.is_dir():
                continue
            for entry in directory.iterdir():
                if (entry.is_file() and entry.name.startswith(ARTIFACT_PREFIX)
                        and entry.name.endswith(ARCHIVE_SUFFIXES)):
                    found.append(entry)
        return found

    def _snapshots(self) -> List[Path]:
        if not self.config.snapshots_dir.is_dir():
            return []
        return [entry for entry in self.config.snapshots_dir.iterdir()
                if entry.name.startswith(ARTIFACT_PREFIX) and snapshot_is_complete(entry)]

    def resolve(self, ref: str = "latest") -> ResolvedArtifact:
        """
        Resolve an artifact reference.

        "latest" means the Latest Pointer, else the newest archive, else the
        newest snapshot directory. Anything else is a name or a path.
        """
        if ref in (None, "", "latest"):
            pointer = self.state.get_latest()
            if pointer is not None:
                log_message(f"Resolved latest to snapshot {pointer.name}")
                return ResolvedArtifact(pointer.name, Path(pointer.snapshot_path), "snapshot")
            for candidates in (self._archives(), self._snapshots()):
                if candidates:
                    newest = max(candidates, key=artifact_time)
                    log_message(f"Resolved latest to {newest.name}")
                    return ResolvedArtifact(_strip_suffix(newest.name), newest, _form_of(newest))
            raise NoBackupFound(f"No backups found in {self.config.backup_path}")

        path = Path(ref)
        for candidate in (path, self.config.backup_path / ref):
            if candidate.exists() and candidate.name.startswith(ARTIFACT_PREFIX):
                if candidate.is_dir() and not snapshot_is_complete(candidate):
                    raise NoBackupFound(f"Snapshot {candidate} is incomplete")
                return ResolvedArtifact(_strip_suffix(candidate.name), candidate, _form_of(candidate))

        name = _strip_suffix(path.name)
        snapshot = self.config.snapshots_dir / name
        if snapshot_is_complete(snapshot):
            return ResolvedArtifact(name, snapshot, "snapshot")
        for candidate in ([self.config.compressed_dir / f"{name}{s}" for s in (".tar.gz", ".tar")] +
                          [self.config.encrypted_dir / f"{name}{s}" for s in (".tar.gz.enc", ".tar.enc")]):
            if candidate.is_file():
                return ResolvedArtifact(name, candidate, _form_of(candidate))
        raise NoBackupFound(f"Backup not found: {ref}", ref=ref)

    # Non-destructive checks

    def verify_integrity(self, artifact: ResolvedArtifact) -> bool:
        """
        Compare the artifact against its checksum sidecar.

        Returns False when there is no sidecar. Raises IntegrityCheckFailed
        on a mismatch or an unreadable sidecar.
        """
        sidecar = artifact.sidecar
        if not sidecar.exists():
            log_message(f"No checksum file for {artifact.path.name}, skipping integrity check", "WARNING")
            return False
        try:
            expected, _ = read_checksum_sidecar(sidecar)
        except (OSError, ValueError) as e:
            raise IntegrityCheckFailed(f"Checksum file unreadable: {e}", path=sidecar) from e

        log_message(f"Verifying integrity of {artifact.path.name}...")
        actual = calculate_checksum(artifact.path)
        if actual != expected:
            raise IntegrityCheckFailed(
                f"Integrity check failed for {artifact.path.name}",
                path=artifact.path, expected=expected, actual=actual,
            )
        log_message("Backup integrity verified", "SUCCESS")
        return True

    def validate_targets(self) -> None:
        validate_target_path(self.config.appdata_path, self.config.allowed_bases)
        validate_target_path(self.config.data_path, self.config.allowed_bases)

    def _passphrase(self) -> str:
        if self.config.encryption_key:
            return self.config.encryption_key
        if self.passphrase_prompt is not None:
            return self.passphrase_prompt()
        if sys.stdin.isatty():
            return getpass.getpass("Enter backup encryption key: ")
        raise DecryptionFailed("Backup is encrypted and no BACKUP_ENCRYPTION_KEY is configured")

    def _scratch_dir(self, artifact: ResolvedArtifact) -> Path:
        return self.config.scratch_path / artifact.name

    def prepare(self, artifact: ResolvedArtifact) -> Path:
        """Return a directory holding the artifact's snapshot tree."""
        if artifact.form == "snapshot":
            return artifact.path

        scratch = self._scratch_dir(artifact)
        if scratch.exists():
            remove_path(scratch)
        scratch.mkdir(parents=True)

        archive = artifact.path
        if artifact.form == "encrypted":
            passphrase = self._passphrase()
            if not passphrase:
                raise DecryptionFailed("Empty encryption key")
            archive = decrypt_file(artifact.path, scratch / archive.name[:-len(".enc")], passphrase)

        root = safe_extract(archive, scratch / "extract")
        if archive != artifact.path:
            archive.unlink()
        return root

    def cleanup(self, artifact: ResolvedArtifact) -> None:
        if artifact.form != "snapshot":
            remove_path(self._scratch_dir(artifact))

    # Destructive steps

    def restore_appdata(self, staging: Path) -> bool:
        source = staging / "appdata"
        if not source.is_dir():
            log_message("Backup has no application data, leaving it untouched", "WARNING")
            return False
        log_message("Restoring application data...")
        replace_tree_contents(self.config.appdata_path, source, self.config.allowed_bases)
        return True

    def restore_documents(self, staging: Path) -> bool:
        source = staging / "documents"
        if not source.is_dir():
            log_message("Backup has no documents, leaving them untouched", "WARNING")
            return False
        log_message("Restoring knowledge base documents...")
        replace_tree_contents(self.config.data_path, source, self.config.allowed_bases)
        return True

    def merge_configuration(self, staging: Path) -> bool:
        """
        New .env = backup's sanitized lines + this host's credential lines.

        The pre-restore file is kept as .env.backup. Compose files from the
        backup replace the deployment's copies.
        """
        config_dir = staging / "config"
        sanitized = config_dir / "env_sanitized.txt"
        merged = False
        env_file = self.config.env_file
        if sanitized.is_file():
            log_message("Merging configuration...")
            current = env_file.read_text() if env_file.is_file() else ""
            if env_file.is_file():
                shutil.copy2(str(env_file), str(env_file.with_name(env_file.name + ".backup")))
            incoming = sanitized.read_text()
            if incoming and not incoming.endswith("\n"):
                incoming += "\n"
            secrets = credential_lines(current)
            atomic_write_text(env_file, incoming + ("\n".join(secrets) + "\n" if secrets else ""))
            merged = True
        if self.config.deploy_dir.is_dir():
            for compose_file in sorted(config_dir.glob("*.yml")):
                shutil.copy2(str(compose_file), str(self.config.deploy_dir / compose_file.name))
        return merged

    def load_images(self, staging: Path) -> int:
        images = sorted((staging / "images").glob("*.tar.gz")) if (staging / "images").is_dir() else []
        for image in images:
            self.controller.load_image(image)
        return len(images)

    def _apply_ownership(self) -> None:
        if not self.config.apply_ownership:
            return
        manager = OwnershipManager(self.config.puid, self.config.pgid)
        manager.apply(manager.targets_for([self.config.appdata_path, self.config.data_path]))

    def _service_ok(self, service: ManagedService) -> bool:
        if not self.controller.is_running(service):
            return False
        probe = self.controller.probe(service, self.config.health_check_timeout)
        if not probe.ok and service.path != "/":
            probe = self.controller.probe(service, self.config.health_check_timeout, path="/")
        return probe.ok

    def verify_services(self) -> Dict[str, bool]:
        """Every service must be running and answer its liveness probe."""
        log_message("Verifying restored services...")
        results = {}
        for service in self.controller.services:
            results[service.name] = retry_until(
                lambda svc=service: self._service_ok(svc),
                max_attempts=self.config.health_check_retries,
                backoff=VERIFY_BACKOFF_SECONDS,
                backoff_factor=2.0,
                sleep=self.sleep,
                description=f"Verifying {service.name}",
            )
        failed = [name for name, ok in results.items() if not ok]
        if failed:
            raise ServiceVerificationFailed(f"Services failed verification: {', '.join(failed)}",
                                            services=",".join(failed))
        log_message("All services verified", "SUCCESS")
        return results

    def _apply(self, artifact: ResolvedArtifact, staging: Path, outcome: RestoreOutcome) -> RestoreOutcome:
        with interruption_guard():
            try:
                self.controller.down()
                record = self.coordinator.take_snapshot(artifact.name)
                outcome.safety_snapshot = record.snapshot_dir
                self.coordinator.mark_restoring()
                if self.restore_appdata(staging):
                    outcome.restored.append("appdata")
                if self.restore_documents(staging):
                    outcome.restored.append("documents")
                if self.merge_configuration(staging):
                    outcome.restored.append("configuration")
                self.coordinator.overlay_preserved()
                self._apply_ownership()
                if self.load_images(staging):
                    outcome.restored.append("images")
                self.controller.start_all()
                self.sleep(START_SETTLE_SECONDS)
                self.verify_services()
            except (Exception, KeyboardInterrupt) as e:
                if self.coordinator.state == RollbackState.IDLE:
                    # No safety snapshot yet, live data untouched
                    self._try_start()
                    raise
                log_message(f"Restore failed: {e}", "ERROR")
                outcome.error = str(e)
                self.coordinator.rollback(str(e))
                outcome.status = RollbackState.ROLLED_BACK.value
                outcome.safety_snapshot = ""
                return outcome

            self.coordinator.complete()
            outcome.status = RollbackState.VERIFIED.value
            outcome.safety_snapshot = ""
            return outcome

    def _try_start(self) -> None:
        try:
            self.controller.start_all()
        except ServiceStartFailed as e:
            log_message(f"Could not restart services: {e}", "ERROR")

    # Public API

    def restore(self, ref: str = "latest",
                confirm: Optional[Callable[[ResolvedArtifact], bool]] = None) -> RestoreOutcome:
        """
        Restore ref ("latest", a name or a path).

        confirm, when given, is called after every non-destructive check and
        may cancel the restore by returning False.

        Returns:
            RestoreOutcome with status verified, rolled_back or cancelled.
            Failures before the first destructive step raise instead.
        """
        started = self.clock()
        pending = self.state.get_safety_record()
        if pending is not None:
            raise ArchonOpsError(
                f"An interrupted restore left a safety snapshot at {pending.snapshot_dir}; "
                f"run 'restore --recover' first",
                snapshot_dir=pending.snapshot_dir,
            )

        artifact = self.resolve(ref)
        outcome = RestoreOutcome(status="failed", artifact=artifact.name,
                                 artifact_path=str(artifact.path), storage_form=artifact.form)
        log_message(f"Restoring from {artifact.path} ({artifact.form})")
        self.verify_integrity(artifact)
        self.validate_targets()
        self.coordinator.check_capacity()
        if artifact.form != "snapshot":
            ensure_persistent_storage(self.config.scratch_path, "Restore scratch")

        log_message(f"This restore will DELETE and replace {self.config.appdata_path}, "
                    f"{self.config.data_path} and {self.config.env_file}", "WARNING")
        log_message(f"A safety copy will be stored under {self.config.safety_path} until the restore is verified",
                    "WARNING")
        if confirm is not None and not confirm(artifact):
            log_message("Restore cancelled by operator")
            outcome.status = "cancelled"
            return outcome

        try:
            staging = self.prepare(artifact)
            outcome = self._apply(artifact, staging, outcome)
        finally:
            self.cleanup(artifact)

        outcome.report_path = self._write_report(outcome, started)
        if outcome.status == RollbackState.VERIFIED.value:
            self.notifier.send("Archon Restore Complete",
                               f"System restored successfully from {artifact.name}", "success")
        else:
            self.notifier.send("Archon Restore Failed",
                               f"Restoration from {artifact.name} failed ({outcome.error}). "
                               f"System rolled back to previous state.", "error")
        return outcome

    def _write_report(self, outcome: RestoreOutcome, started: datetime.datetime) -> str:
        report = self.config.log_path / f"restore_report_{timestamp(started)}.txt"
        lines = [
            "Archon Restore Report",
            "=" * 40,
            f"Timestamp: {started.isoformat(timespec='seconds')}",
            f"Backup: {outcome.artifact}",
            f"Source: {outcome.artifact_path} ({outcome.storage_form})",
            f"Outcome: {outcome.status}",
            f"Restored: {', '.join(outcome.restored) or 'nothing'}",
        ]
        if outcome.error:
            lines.append(f"Error: {outcome.error}")
        lines.append("")
        lines.append("Services:")
        for service in self.controller.services:
            running = "running" if self.controller.is_running(service) else "not running"
            lines.append(f"  {service.name}: {running}")
        try:
            atomic_write_text(report, "\n".join(lines) + "\n")
        except OSError as e:
            log_message(f"Could not write restore report {report}: {e}", "WARNING")
            return ""
        log_message(f"Restore report written to {report}")
        return str(report)


def confirm_interactively(config: ArchonConfig, prompt: Callable[[str], str] = input):
    """Double confirmation: the typed phrase, then yes/no."""
    def _confirm(artifact: ResolvedArtifact) -> bool:
        print(f"\nRestoring {artifact.name} will permanently replace:")
        print(f"  {config.appdata_path}")
        print(f"  {config.data_path}")
        print(f"  {config.env_file}")
        print(f"A safety copy will be kept under {config.safety_path} until the restore is verified.\n")
        if prompt(f"Type {CONFIRMATION_PHRASE} to continue: ").strip() != CONFIRMATION_PHRASE:
            return False
        return prompt("Are you sure you want to proceed? (yes/no): ").strip().lower() in ("yes", "y")
    return _confirm


def _parse_args(args) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="archon-restore", description="Restore Archon from a backup")
    parser.add_argument("artifact", nargs="?", default="latest", help="backup name, path or 'latest'")
    parser.add_argument("--force", action="store_true", help="skip interactive confirmation")
    parser.add_argument("--recover", action="store_true",
                        help="roll back a restore that was interrupted before it finished")
    return parser.parse_args(args)


def main(args=None):
    """Entry point: restore [artifact|latest] [--force] [--recover]."""
    options = _parse_args(list(args or []))
    config = load_config()
    engine = RestoreEngine(config)

    if options.recover:
        try:
            final = engine.coordinator.recover_pending()
        except ArchonOpsError as e:
            return {"success": False, "error": e.message, "details": e.to_dict()}
        if final is None:
            return {"success": True, "recovered": False}
        return {"success": True, "recovered": True, "state": final.value}

    confirm = None if options.force else confirm_interactively(config)
    try:
        outcome = engine.restore(options.artifact, confirm=confirm)
    except ArchonOpsError as e:
        engine.notifier.send("Archon Restore Failed", e.message, e.severity)
        return {"success": False, "error": e.message, "details": e.to_dict()}
    except OSError as e:
        log_message(f"Restore failed with filesystem error: {e}", "ERROR")
        return {"success": False, "error": str(e)}

    return {"success": outcome.success, "outcome": outcome.to_dict()}
