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

import datetime
import os
import re
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ...utils.index import log_message, remove_path
from ...utils.state_manager import StateManager

ARTIFACT_PREFIX = "archon_backup_"
NAME_PATTERN = re.compile(r"^(archon_backup_(\d{8}_\d{6}))")
REPORT_PATTERN = re.compile(r"^backup_report_(\d{8}_\d{6})\.txt$")


def artifact_name_of(filename: str) -> Optional[str]:
    match = NAME_PATTERN.match(filename)
    return match.group(1) if match else None


def artifact_time(path: Path) -> datetime.datetime:
    """Creation time from the embedded timestamp, else the modification time."""
    match = NAME_PATTERN.match(path.name)
    if match:
        try:
            return datetime.datetime.strptime(match.group(2), "%Y%m%d_%H%M%S")
        except ValueError:
            pass
    return datetime.datetime.fromtimestamp(os.lstat(path).st_mtime)


def iter_artifact_entries(backup_root: Path) -> Iterator[Path]:
    """Every snapshot directory, archive and sidecar belonging to an artifact."""
    for sub in ("snapshots", "compressed", "encrypted"):
        directory = backup_root / sub
        if not directory.is_dir():
            continue
        for entry in sorted(directory.iterdir()):
            if entry.name.startswith(ARTIFACT_PREFIX):
                yield entry


def apply_retention(backup_root, retention_days: int, state: StateManager,
                    keep: Optional[str] = None, reports_dir=None,
                    now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    """
    Delete artifacts older than retention_days.

    The artifact named keep is never deleted. If the Latest Pointer named a
    deleted snapshot it is cleared.
    """
    backup_root = Path(backup_root)
    result: Dict[str, Any] = {"removed": [], "pointer_cleared": False}
    if retention_days <= 0:
        log_message("Retention cleanup disabled")
        return result

    now = now or datetime.datetime.now()
    cutoff = now - datetime.timedelta(days=retention_days)
    log_message(f"Cleaning up backups older than {retention_days} days...")

    latest = state.get_latest(clear_dangling=False)
    removed_names = set()
    for entry in list(iter_artifact_entries(backup_root)):
        name = artifact_name_of(entry.name)
        if name is None or name == keep:
            continue
        if artifact_time(entry) >= cutoff:
            continue
        remove_path(entry)
        removed_names.add(name)
        result["removed"].append(str(entry))
        log_message(f"Removed expired backup entry: {entry.name}")

    if latest is not None and latest.name in removed_names:
        state.clear_latest()
        result["pointer_cleared"] = True
    elif latest is None and state.latest_file.exists():
        # Record exists but its snapshot is gone
        state.clear_latest()
        result["pointer_cleared"] = True

    if reports_dir is not None and Path(reports_dir).is_dir():
        result["reports_removed"] = _cleanup_reports(Path(reports_dir), cutoff)

    log_message(f"Retention cleanup removed {len(removed_names)} artifacts")
    return result


def _cleanup_reports(reports_dir: Path, cutoff: datetime.datetime) -> List[str]:
    removed = []
    for entry in reports_dir.iterdir():
        match = REPORT_PATTERN.match(entry.name)
        if not match:
            continue
        try:
            created = datetime.datetime.strptime(match.group(1), "%Y%m%d_%H%M%S")
        except ValueError:
            continue
        if created < cutoff:
            entry.unlink()
            removed.append(entry.name)
    return removed
