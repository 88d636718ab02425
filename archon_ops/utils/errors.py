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
Error taxonomy for backup, restore, health and maintenance operations.

Every failure an operation can surface to the operator derives from
ArchonOpsError. Extra keyword arguments are kept as attributes so callers
and reports can show the paths, names and hashes involved.
"""

from typing import Any, Dict


class ArchonOpsError(Exception):
    """Base class for all operation failures."""

    severity = "error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context
        for key, value in context.items():
            setattr(self, key, value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "severity": self.severity,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class InsufficientStorage(ArchonOpsError):
    """Backup destination has less free space than the data to copy."""


class IntegrityCheckFailed(ArchonOpsError):
    """Recorded checksum does not match the artifact bytes."""


class UnsafeTargetPath(ArchonOpsError):
    """A live data path failed path-safety validation."""


class NoBackupFound(ArchonOpsError):
    """No artifact could be resolved for a restore."""


class ServiceStartFailed(ArchonOpsError):
    """The orchestration tool failed to start or stop the services."""


class ServiceVerificationFailed(ArchonOpsError):
    """Services did not come up healthy after a restore."""


class RecoveryFailed(ArchonOpsError):
    """Bounded recovery of an unhealthy service was exhausted."""


class DecryptionFailed(ArchonOpsError):
    """Encrypted artifact could not be decrypted."""


class RollbackFailed(ArchonOpsError):
    """The compensating restore from the safety snapshot failed."""

    severity = "critical"


class OperationInterrupted(ArchonOpsError):
    """SIGINT or SIGTERM arrived during a guarded section."""

    severity = "warning"

    def __init__(self, signum: int):
        super().__init__(f"Interrupted by signal {signum}", signum=signum)
