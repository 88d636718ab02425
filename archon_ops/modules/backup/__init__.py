"""Archive Engine: full and incremental backups."""

from .index import ArtifactRef, BackupEngine, main

__all__ = ["ArtifactRef", "BackupEngine", "main"]
