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

import os
import shutil
from pathlib import Path
from typing import Iterable

from ...utils.errors import InsufficientStorage, UnsafeTargetPath
from ...utils.index import RAM_FILESYSTEMS, filesystem_type, log_message


def validate_target_path(path, allowed_bases: Iterable[str]) -> Path:
    """
    Resolve a live data path and confirm it is safe to delete.

    The resolved path must exist, must not be the filesystem root, and must
    lie strictly beneath one of the allowed base directories.

    Raises:
        UnsafeTargetPath: When any condition fails.
    """
    if path is None or str(path).strip() == "":
        raise UnsafeTargetPath("Empty target path", path=path)

    resolved = Path(os.path.realpath(str(path)))
    if not resolved.exists():
        raise UnsafeTargetPath(f"Target path does not exist: {path}", path=path)
    if resolved == Path(resolved.anchor):
        raise UnsafeTargetPath(f"Target path resolves to the filesystem root: {path}", path=path)

    for base in allowed_bases:
        if not base:
            continue
        base_resolved = Path(os.path.realpath(base))
        if base_resolved == Path(base_resolved.anchor):
            continue
        if base_resolved in resolved.parents:
            return resolved

    raise UnsafeTargetPath(
        f"Target path {resolved} is outside the allowed directories ({', '.join(allowed_bases)})",
        path=path, resolved=resolved,
    )


def replace_tree_contents(target, source, allowed_bases: Iterable[str]) -> Path:
    """
    Replace everything inside target with a copy of source's contents.

    target itself is kept so mount points and share roots survive.
    """
    resolved = validate_target_path(target, allowed_bases)
    log_message(f"Replacing contents of {resolved}")
    for entry in resolved.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(str(entry))
        else:
            entry.unlink()
    if source is not None and Path(source).is_dir():
        shutil.copytree(str(source), str(resolved), symlinks=True, dirs_exist_ok=True)
    return resolved


def ensure_persistent_storage(path, purpose: str) -> None:
    """
    Refuse a working location on a RAM-backed filesystem.

    Raises:
        InsufficientStorage: When path lives on tmpfs or ramfs.
    """
    fs_type = filesystem_type(path)
    if fs_type in RAM_FILESYSTEMS:
        raise InsufficientStorage(
            f"{purpose} location {path} is on a RAM-backed filesystem ({fs_type}); "
            f"point it at persistent storage",
            path=path, fs_type=fs_type,
        )
