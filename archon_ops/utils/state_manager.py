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
State Manager for backup pointers

The Latest Pointer and the Safety Snapshot pointer are the only mutable
shared state. Each is a small JSON record under <backup root>/state that is
replaced atomically, and only after the thing it names has been fully
written.

Usage:
    from archon_ops.utils.state_manager import StateManager

    state = StateManager("/mnt/user/backups/archon")
    latest = state.get_latest()
    if latest:
        print(latest.snapshot_path)
"""

import json
import os
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .index import atomic_write_json, log_message

MANIFEST_NAME = "manifest.json"


class StateManagerError(Exception):
    """Custom exception for state record failures."""
    pass


@dataclass
class LatestPointer:
    """Reference to the most recent complete uncompressed snapshot."""
    name: str
    snapshot_path: str
    mode: str
    created_at: str
    artifact_path: str = ""
    checksum: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LatestPointer':
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)


@dataclass
class SafetySnapshotRecord:
    """Where a pre-restore safety copy lives and what it captured."""
    snapshot_dir: str
    created_at: str
    artifact: str
    captured: Dict[str, str] = field(default_factory=dict)
    preserved_files: List[str] = field(default_factory=list)
    state: str = "snapshot_taken"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SafetySnapshotRecord':
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)


def snapshot_is_complete(snapshot_path) -> bool:
    """A snapshot is complete once it was renamed from its .partial name and has a manifest."""
    path = Path(snapshot_path)
    return (path.is_dir()
            and not path.name.endswith(".partial")
            and (path / MANIFEST_NAME).is_file())


class StateManager:
    """Reads and atomically replaces the pointer records."""

    def __init__(self, backup_dir):
        self.backup_root = Path(backup_dir)
        self.state_dir = self.backup_root / "state"
        self.latest_file = self.state_dir / "latest.json"
        self.safety_file = self.state_dir / "safety_snapshot.json"

    def _load(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            log_message(f"Unreadable state record {path}: {e}", "WARNING")
            return None
        if not isinstance(data, dict):
            log_message(f"State record {path} is not an object", "WARNING")
            return None
        return data

    def _save(self, path: Path, data: Dict[str, Any]) -> None:
        try:
            atomic_write_json(path, data)
        except OSError as e:
            raise StateManagerError(f"Failed to write state record {path}: {e}") from e

    # Latest Pointer

    def get_latest(self, clear_dangling: bool = True) -> Optional[LatestPointer]:
        """
        Return the Latest Pointer if it names a complete snapshot.

        A record whose snapshot is missing or incomplete is treated as no
        pointer at all and, by default, removed.
        """
        data = self._load(self.latest_file)
        if data is None:
            return None
        try:
            pointer = LatestPointer.from_dict(data)
        except TypeError as e:
            log_message(f"Invalid latest pointer record: {e}", "WARNING")
            pointer = None
        if pointer is not None and snapshot_is_complete(pointer.snapshot_path):
            return pointer
        target = pointer.snapshot_path if pointer else self.latest_file
        log_message(f"Latest pointer is dangling ({target}), treating as no prior snapshot", "WARNING")
        if clear_dangling:
            self.clear_latest()
        return None

    def set_latest(self, pointer: LatestPointer) -> None:
        if not snapshot_is_complete(pointer.snapshot_path):
            raise StateManagerError(f"Refusing to point latest at incomplete snapshot {pointer.snapshot_path}")
        self._save(self.latest_file, pointer.to_dict())
        log_message(f"Latest pointer updated to {pointer.name}")

    def clear_latest(self) -> None:
        if self.latest_file.exists():
            os.unlink(self.latest_file)
            log_message("Latest pointer cleared")

    # Safety Snapshot pointer

    def get_safety_record(self) -> Optional[SafetySnapshotRecord]:
        data = self._load(self.safety_file)
        if data is None:
            return None
        try:
            return SafetySnapshotRecord.from_dict(data)
        except TypeError as e:
            log_message(f"Invalid safety snapshot record: {e}", "WARNING")
            return None

    def save_safety_record(self, record: SafetySnapshotRecord) -> None:
        self._save(self.safety_file, record.to_dict())

    def clear_safety_record(self) -> None:
        if self.safety_file.exists():
            os.unlink(self.safety_file)
