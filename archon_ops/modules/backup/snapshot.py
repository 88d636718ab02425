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
Snapshot tree copying.

copy_tree makes a plain copy. link_tree behaves like rsync --link-dest: a
file that is unchanged against the base snapshot (same size, mtime and mode)
is hard-linked to the base's copy instead of being copied again.
"""

import os
import shutil
import stat
from pathlib import Path
from typing import Dict, Optional


def _same_file(src_stat: os.stat_result, base_path: str) -> bool:
    try:
        base_stat = os.lstat(base_path)
    except OSError:
        return False
    return (stat.S_ISREG(base_stat.st_mode)
            and base_stat.st_size == src_stat.st_size
            and int(base_stat.st_mtime) == int(src_stat.st_mtime)
            and stat.S_IMODE(base_stat.st_mode) == stat.S_IMODE(src_stat.st_mode))


def copy_tree(src, dest) -> Dict[str, int]:
    """Copy src into dest preserving metadata and symlinks."""
    return link_tree(src, dest, None)


def link_tree(src, dest, base: Optional[Path]) -> Dict[str, int]:
    """
    Copy src into dest, hard-linking files unchanged against base.

    Returns counts of linked and copied files.
    """
    src = str(src)
    dest = str(dest)
    stats = {"linked": 0, "copied": 0}

    if os.path.isfile(src):
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        shutil.copy2(src, dest)
        stats["copied"] += 1
        return stats

    dir_pairs = []
    for root, dirs, files in os.walk(src):
        dirs.sort()
        rel_root = os.path.relpath(root, src)
        dest_root = os.path.normpath(os.path.join(dest, rel_root))
        os.makedirs(dest_root, exist_ok=True)
        dir_pairs.append((root, dest_root))

        # os.walk lists symlinked directories in dirs without descending
        for name in list(dirs):
            full = os.path.join(root, name)
            if os.path.islink(full):
                os.symlink(os.readlink(full), os.path.join(dest_root, name))
                dirs.remove(name)

        for name in sorted(files):
            src_path = os.path.join(root, name)
            dest_path = os.path.join(dest_root, name)
            src_stat = os.lstat(src_path)

            if stat.S_ISLNK(src_stat.st_mode):
                os.symlink(os.readlink(src_path), dest_path)
                continue
            if not stat.S_ISREG(src_stat.st_mode):
                continue

            if base is not None:
                base_path = os.path.normpath(os.path.join(str(base), rel_root, name))
                if _same_file(src_stat, base_path):
                    try:
                        os.link(base_path, dest_path)
                        stats["linked"] += 1
                        continue
                    except OSError:
                        # cross-device or link limit, fall through to copy
                        pass

            shutil.copy2(src_path, dest_path)
            stats["copied"] += 1

    # Directory mtimes last, after their contents stopped changing
    for src_dir, dest_dir in reversed(dir_pairs):
        shutil.copystat(src_dir, dest_dir)

    return stats
