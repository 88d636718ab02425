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
Ownership Utilities

Restored trees must belong to the host's container user (PUID:PGID, 99:100
on Unraid). These helpers apply and audit that ownership.
"""

import os
import subprocess
from dataclasses import dataclass
from typing import Iterable, List

from .index import log_message


@dataclass
class OwnershipTarget:
    """A path that should be owned by uid:gid."""
    path: str
    uid: int
    gid: int
    recursive: bool = True


class OwnershipManager:
    """Applies and audits ownership of restored data trees."""

    def __init__(self, uid: int = 99, gid: int = 100):
        self.uid = uid
        self.gid = gid

    def targets_for(self, paths: Iterable) -> List[OwnershipTarget]:
        return [OwnershipTarget(str(p), self.uid, self.gid) for p in paths]

    def apply(self, targets: List[OwnershipTarget]) -> bool:
        """
        chown every target.

        Returns:
            bool: True if every existing target was updated
        """
        success = True
        for target in targets:
            if not os.path.exists(target.path):
                log_message(f"Skipping {target.path} - does not exist", "DEBUG")
                continue
            if not self._set_ownership(target):
                success = False
        return success

    def _set_ownership(self, target: OwnershipTarget) -> bool:
        cmd = ["chown"]
        if target.recursive and os.path.isdir(target.path):
            cmd.append("-R")
        cmd.extend([f"{target.uid}:{target.gid}", target.path])

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as e:
            log_message(f"Error setting ownership for {target.path}: {e}", "ERROR")
            return False

        if result.returncode != 0:
            log_message(f"Failed to set ownership for {target.path}: {result.stderr}", "ERROR")
            return False

        log_message(f"✓ Set ownership for {target.path} ({target.uid}:{target.gid})")
        return True

    def foreign_owned(self, path, limit: int = 100) -> List[str]:
        """List up to limit paths below path not owned by uid:gid."""
        found: List[str] = []
        if not os.path.exists(path):
            return found
        for root, dirs, files in os.walk(str(path)):
            for name in dirs + files:
                full = os.path.join(root, name)
                try:
                    st = os.lstat(full)
                except OSError:
                    continue
                if st.st_uid != self.uid or st.st_gid != self.gid:
                    found.append(full)
                    if len(found) >= limit:
                        return found
        return found
