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
Utilities shared by the backup, restore, health and maintenance operations.
"""

from .index import (
    log_message,
    setup_logging,
    calculate_checksum,
    write_checksum_sidecar,
    read_checksum_sidecar,
    atomic_write_json,
)
from .config import ArchonConfig, load_config
from .errors import (
    ArchonOpsError,
    InsufficientStorage,
    IntegrityCheckFailed,
    UnsafeTargetPath,
    NoBackupFound,
    ServiceStartFailed,
    ServiceVerificationFailed,
    RecoveryFailed,
    DecryptionFailed,
    RollbackFailed,
    OperationInterrupted,
)
from .notifier import Notifier
from .retry import retry_until
from .services import ManagedService, ServiceController, ServiceState, probe_liveness, wait_for_http
from .state_manager import StateManager, LatestPointer, SafetySnapshotRecord
from .permissions import OwnershipManager, OwnershipTarget
from .maintenanceRunner import MaintenanceRunner

__all__ = [
    'log_message',
    'setup_logging',
    'calculate_checksum',
    'write_checksum_sidecar',
    'read_checksum_sidecar',
    'atomic_write_json',
    'ArchonConfig',
    'load_config',
    'ArchonOpsError',
    'InsufficientStorage',
    'IntegrityCheckFailed',
    'UnsafeTargetPath',
    'NoBackupFound',
    'ServiceStartFailed',
    'ServiceVerificationFailed',
    'RecoveryFailed',
    'DecryptionFailed',
    'RollbackFailed',
    'OperationInterrupted',
    'Notifier',
    'retry_until',
    'ManagedService',
    'ServiceController',
    'ServiceState',
    'probe_liveness',
    'wait_for_http',
    'StateManager',
    'LatestPointer',
    'SafetySnapshotRecord',
    'OwnershipManager',
    'OwnershipTarget',
    'MaintenanceRunner',
]
