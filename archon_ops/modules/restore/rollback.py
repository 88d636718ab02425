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
Safety-Rollback Coordinator

Takes a disk-backed Safety Snapshot of every live tree before a destructive
restore and owns the compensating action that puts it back.

States:
    IDLE -> SNAPSHOT_TAKEN -> RESTORING -> VERIFIED | ROLLED_BACK

The snapshot is persisted through the StateManager's safety record as soon
as it is complete, so a killed process can be recovered with
recover_pending(). The compensating action runs at most once per
coordinator.
"""

import datetime
import fnmatch
import os
import shutil
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ...utils.config import ArchonConfig
from ...utils.errors import ArchonOpsError, InsufficientStorage, RollbackFailed
from ...utils.index import directory_size, format_size, free_space, log_message, remove_path, timestamp
from ...utils.notifier import Notifier
from ...utils.permissions import OwnershipManager
from ...utils.services import ServiceController
from ...utils.signals import signals_shielded
from ...utils.state_manager import SafetySnapshotRecord, StateManager
from ..backup.snapshot import copy_tree
from .safety import ensure_persistent_storage, replace_tree_contents

ROLLBACK_SETTLE_SECONDS = 10


class RollbackState(Enum):
    IDLE = "idle"
    SNAPSHOT_TAKEN = "snapshot_taken"
    RESTORING = "restoring"
    VERIFIED = "verified"
    ROLLED_BACK = "rolled_back"


class SafetyRollbackCoordinator:
    """Snapshot-before-restore and exactly-once rollback."""

    def __init__(self, config: ArchonConfig, controller: ServiceController, notifier: Notifier,
                 state: StateManager, sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], datetime.datetime] = datetime.datetime.now):
        self.config = config
        self.controller = controller
        self.notifier = notifier
        self.state_manager = state
        self.sleep = sleep
        self.clock = clock
        self.state = RollbackState.IDLE
        self.record: Optional[SafetySnapshotRecord] = None
        self._compensated = False

    def _set_state(self, new_state: RollbackState) -> None:
        log_message(f"Restore state: {self.state.value} -> {new_state.value}", "DEBUG")
        self.state = new_state
        if self.record is not None and new_state != RollbackState.ROLLED_BACK:
            self.record.state = new_state.value
            self.state_manager.save_safety_record(self.record)

    def check_capacity(self) -> None:
        """Raise InsufficientStorage unless the safety location is disk-backed and can hold the live trees."""
        ensure_persistent_storage(self.config.safety_path, "Safety snapshot")
        required = directory_size(self.config.appdata_path) + directory_size(self.config.data_path)
        available = free_space(self.config.safety_path)
        if available < required:
            raise InsufficientStorage(
                f"Not enough space for safety snapshot in {self.config.safety_path}: "
                f"need {format_size(required)}, have {format_size(available)}",
                required=required, available=available,
            )

    def preserved_files(self) -> List[str]:
        """Relative paths under the application tree matching the preserve patterns."""
        root = self.config.appdata_path
        matches: List[str] = []
        if not root.is_dir():
            return matches
        for current, dirs, files in os.walk(str(root)):
            dirs.sort()
            for name in sorted(files):
                rel = os.path.relpath(os.path.join(current, name), str(root))
                for pattern in self.config.preserve_patterns:
                    if fnmatch.fnmatch(rel, pattern) or fnmatch.fnmatch(name, pattern):
                        matches.append(rel)
                        break
        return matches

    def take_snapshot(self, artifact: str) -> SafetySnapshotRecord:
        """Copy every live tree to the safety location and persist the pointer."""
        if self.state != RollbackState.IDLE:
            raise ArchonOpsError(f"Cannot take safety snapshot in state {self.state.value}")

        created = self.clock()
        snapshot_dir = self.config.safety_path / f"safety_{timestamp(created)}"
        partial = self.config.safety_path / f".{snapshot_dir.name}.partial"
        log_message(f"Creating safety snapshot at {snapshot_dir}...")

        captured: Dict[str, str] = {}
        try:
            if partial.exists():
                remove_path(partial)
            partial.mkdir(parents=True)
            if self.config.appdata_path.is_dir():
                copy_tree(self.config.appdata_path, partial / "appdata")
                captured["appdata"] = str(self.config.appdata_path)
            if self.config.data_path.is_dir():
                copy_tree(self.config.data_path, partial / "data")
                captured["data"] = str(self.config.data_path)
            config_dir = partial / "config"
            config_dir.mkdir()
            if self.config.env_file.is_file():
                shutil.copy2(str(self.config.env_file), str(config_dir / ".env"))
                captured["env_file"] = str(self.config.env_file)
            if self.config.deploy_dir.is_dir():
                for compose_file in sorted(self.config.deploy_dir.glob("*.yml")):
                    shutil.copy2(str(compose_file), str(config_dir / compose_file.name))
                captured["deploy_dir"] = str(self.config.deploy_dir)
            preserved = self.preserved_files()
            os.rename(str(partial), str(snapshot_dir))

            self.record = SafetySnapshotRecord(
                snapshot_dir=str(snapshot_dir),
                created_at=created.isoformat(timespec="seconds"),
                artifact=artifact,
                captured=captured,
                preserved_files=preserved,
            )
            self._set_state(RollbackState.SNAPSHOT_TAKEN)
        except BaseException:
            # Once SNAPSHOT_TAKEN the snapshot belongs to rollback
            if self.state == RollbackState.IDLE:
                self.record = None
                for leftover in (partial, snapshot_dir):
                    if leftover.exists():
                        remove_path(leftover)
            raise

        log_message(f"Safety snapshot complete ({len(preserved)} preserved files)", "SUCCESS")
        return self.record

    def mark_restoring(self) -> None:
        if self.state != RollbackState.SNAPSHOT_TAKEN:
            raise ArchonOpsError(f"Cannot start restoring in state {self.state.value}")
        self._set_state(RollbackState.RESTORING)

    def overlay_preserved(self) -> int:
        """Copy preserved operator-local files from the safety snapshot over the restored tree."""
        if self.record is None:
            return 0
        source_root = Path(self.record.snapshot_dir) / "appdata"
        count = 0
        for rel in self.record.preserved_files:
            src = source_root / rel
            if not src.is_file():
                continue
            dest = self.config.appdata_path / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            if dest.is_symlink() or dest.is_dir():
                remove_path(dest)
            shutil.copy2(str(src), str(dest))
            count += 1
        log_message(f"Restored {count} preserved files over backup contents")
        return count

    def _discard_snapshot(self) -> None:
        if self.record is not None:
            remove_path(self.record.snapshot_dir)
        self.state_manager.clear_safety_record()

    def complete(self) -> None:
        """Restore verified: drop the safety snapshot and its pointer."""
        if self.state != RollbackState.RESTORING:
            raise ArchonOpsError(f"Cannot complete restore in state {self.state.value}")
        self._set_state(RollbackState.VERIFIED)
        self._discard_snapshot()
        log_message("Safety snapshot removed after verified restore")

    def _restore_from_snapshot(self) -> None:
        snapshot = Path(self.record.snapshot_dir)
        captured = self.record.captured
        allowed = self.config.allowed_bases
        if "appdata" in captured:
            replace_tree_contents(captured["appdata"], snapshot / "appdata", allowed)
        if "data" in captured:
            replace_tree_contents(captured["data"], snapshot / "data", allowed)
        config_dir = snapshot / "config"
        if "env_file" in captured and (config_dir / ".env").is_file():
            shutil.copy2(str(config_dir / ".env"), captured["env_file"])
        if "deploy_dir" in captured:
            for compose_file in sorted(config_dir.glob("*.yml")):
                shutil.copy2(str(compose_file), os.path.join(captured["deploy_dir"], compose_file.name))
        if self.config.apply_ownership:
            manager = OwnershipManager(self.config.puid, self.config.pgid)
            manager.apply(manager.targets_for([captured[k] for k in ("appdata", "data") if k in captured]))

    def rollback(self, reason: str) -> None:
        """
        Put the Safety Snapshot back over the live trees and restart services.

        Runs at most once. Raises RollbackFailed, keeping the snapshot and
        its pointer, if the live state could not be rebuilt.
        """
        if self._compensated:
            log_message("Rollback already performed, skipping", "DEBUG")
            return
        if self.record is None or self.state not in (RollbackState.SNAPSHOT_TAKEN, RollbackState.RESTORING):
            raise ArchonOpsError(f"Nothing to roll back in state {self.state.value}")
        self._compensated = True

        log_message(f"Rolling back to safety snapshot: {reason}", "WARNING")
        with signals_shielded():
            try:
                try:
                    self.controller.down()
                except ArchonOpsError as e:
                    log_message(f"Could not stop services before rollback: {e}", "WARNING")
                self._restore_from_snapshot()
                self.controller.start_all()
                self.sleep(ROLLBACK_SETTLE_SECONDS)
            except Exception as e:
                log_message(f"Rollback failed, safety snapshot kept at {self.record.snapshot_dir}: {e}", "ERROR")
                self.notifier.send(
                    "Archon Rollback Failed",
                    f"Rollback failed: {e}. Safety snapshot kept at {self.record.snapshot_dir}",
                    "critical",
                )
                raise RollbackFailed(f"Rollback failed: {e}", snapshot_dir=self.record.snapshot_dir) from e

            self._set_state(RollbackState.ROLLED_BACK)
            self._discard_snapshot()
        log_message("System rolled back to pre-restore state", "WARNING")

    def recover_pending(self) -> Optional[RollbackState]:
        """
        Finish a restore whose process died after the Safety Snapshot was taken.

        Returns:
            The terminal state reached, or None when nothing was pending.
        """
        record = self.state_manager.get_safety_record()
        if record is None:
            log_message("No pending safety snapshot found")
            return None
        if not Path(record.snapshot_dir).is_dir():
            log_message(f"Safety record points at missing snapshot {record.snapshot_dir}, clearing", "ERROR")
            self.state_manager.clear_safety_record()
            return None

        self.record = record
        if record.state == RollbackState.VERIFIED.value:
            self.state = RollbackState.RESTORING
            self.complete()
            return RollbackState.VERIFIED

        log_message(f"Found interrupted restore of {record.artifact} (state {record.state}), rolling back",
                    "WARNING")
        self.state = RollbackState.RESTORING
        self.rollback("recovering interrupted restore")
        return RollbackState.ROLLED_BACK
