"""Restore Engine and Safety-Rollback Coordinator."""

from .index import RestoreEngine, RestoreOutcome, main
from .rollback import RollbackState, SafetyRollbackCoordinator

__all__ = ["RestoreEngine", "RestoreOutcome", "RollbackState", "SafetyRollbackCoordinator", "main"]
