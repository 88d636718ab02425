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
import hashlib
import json
import logging
import logging.handlers
import os
import re
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Optional, Tuple

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'
SYSLOG_SOCKET = "/dev/log"
CHUNK_SIZE = 1024 * 1024
MOUNTS_FILE = "/proc/mounts"
RAM_FILESYSTEMS = ("tmpfs", "ramfs")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "SUCCESS": SUCCESS,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def log_message(message: str, level: str = "INFO"):
    """Unified logger used throughout the operations and helpers."""
    logging.log(_LEVELS.get(level.upper(), logging.INFO), message)


def setup_logging(tag: str = "archon-ops", syslog_socket: str = SYSLOG_SOCKET):
    """
    Log to stdout, plus syslog under the operation tag when the socket exists.

    Replaces any handlers already on the root logger so repeated calls in
    one process do not duplicate output.
    """
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
    root_logger.addHandler(console_handler)

    if os.path.exists(syslog_socket):
        try:
            syslog_handler = logging.handlers.SysLogHandler(address=syslog_socket)
            syslog_handler.setLevel(logging.INFO)
            syslog_handler.setFormatter(logging.Formatter(f"{tag}: [%(levelname)s] %(message)s"))
            root_logger.addHandler(syslog_handler)
        except OSError as e:
            logging.warning(f"Syslog unavailable at {syslog_socket}: {e}")

    logging.info("=" * 80)
    logging.info(f"ARCHON {tag.upper()} SESSION STARTED")
    logging.info(f"Command: {' '.join(sys.argv)}")
    logging.info(f"Working Directory: {os.getcwd()}")
    logging.info("=" * 80)


def timestamp(now: Optional[datetime.datetime] = None) -> str:
    """Filesystem-safe timestamp used in artifact and report names."""
    return (now or datetime.datetime.now()).strftime("%Y%m%d_%H%M%S")


def format_size(num_bytes: float) -> str:
    for unit in ("B", "K", "M", "G", "T"):
        if abs(num_bytes) < 1024 or unit == "T":
            return f"{num_bytes:.0f}{unit}" if unit == "B" else f"{num_bytes:.1f}{unit}"
        num_bytes /= 1024
    return f"{num_bytes:.1f}T"


def directory_size(path) -> int:
    """Total apparent size of regular files below path, symlinks not followed."""
    if not os.path.exists(path):
        return 0
    if os.path.isfile(path):
        return os.path.getsize(path)
    total = 0
    for root, dirs, files in os.walk(path):
        for name in files:
            try:
                st = os.lstat(os.path.join(root, name))
            except OSError:
                continue
            total += st.st_size
    return total


def free_space(path) -> int:
    """Free bytes on the filesystem holding path or its nearest existing parent."""
    probe = Path(path)
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    return shutil.disk_usage(str(probe)).free


def disk_usage_percent(path) -> int:
    probe = Path(path)
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    usage = shutil.disk_usage(str(probe))
    if usage.total == 0:
        return 0
    return int(round(usage.used * 100 / usage.total))


def _unescape_mount_path(field: str) -> str:
    # /proc/mounts writes space, tab, newline and backslash as octal escapes
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), field)


def filesystem_type(path, mounts_file: str = MOUNTS_FILE) -> str:
    """Type of the filesystem holding path (longest matching mount point), or "" if unknown."""
    existing = Path(path)
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    target = os.path.realpath(str(existing))

    best, fs_type = "", ""
    try:
        with open(mounts_file) as f:
            for line in f:
                fields = line.split()
                if len(fields) < 3:
                    continue
                mount_point = _unescape_mount_path(fields[1])
                inside = (target == mount_point or mount_point == "/" or
                          target.startswith(mount_point.rstrip("/") + "/"))
                if inside and len(mount_point) >= len(best):
                    best, fs_type = mount_point, fields[2]
    except OSError as e:
        log_message(f"Could not read {mounts_file}: {e}", "DEBUG")
        return ""
    return fs_type


def calculate_checksum(path) -> str:
    """
    Calculate SHA-256 checksum of a file or directory.

    Directories hash every entry's relative path in sorted order: files
    followed by their contents, symlinks followed by their target, and
    subdirectories on their own so empty ones still count.
    """
    path = str(path)
    if not os.path.exists(path):
        return ""

    sha256_hash = hashlib.sha256()

    if os.path.isdir(path):
        for root, dirs, files in os.walk(path):
            dirs.sort()
            entries = sorted(dirs + files)

            for name in entries:
                full_path = os.path.join(root, name)
                rel_path = os.path.relpath(full_path, path)

                if os.path.islink(full_path):
                    sha256_hash.update(b"L\0" + rel_path.encode() + b"\0")
                    sha256_hash.update(os.readlink(full_path).encode())
                elif os.path.isdir(full_path):
                    sha256_hash.update(b"D\0" + rel_path.encode() + b"\0")
                elif os.path.isfile(full_path):
                    sha256_hash.update(b"F\0" + rel_path.encode() + b"\0")
                    with open(full_path, 'rb') as f:
                        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                            sha256_hash.update(chunk)
                else:
                    # Sockets and fifos carry no content
                    sha256_hash.update(b"S\0" + rel_path.encode() + b"\0")
    else:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                sha256_hash.update(chunk)

    return sha256_hash.hexdigest()


def checksum_sidecar_path(artifact) -> Path:
    artifact = Path(artifact)
    return artifact.with_name(artifact.name + ".sha256")


def write_checksum_sidecar(artifact, root) -> Tuple[str, Path]:
    """
    Hash artifact and write `<hex>  <path relative to root>` beside it.

    Returns the digest and the sidecar path.
    """
    artifact = Path(artifact)
    digest = calculate_checksum(artifact)
    sidecar = checksum_sidecar_path(artifact)
    rel = os.path.relpath(str(artifact), str(root))
    atomic_write_text(sidecar, f"{digest}  {rel}\n")
    return digest, sidecar


def read_checksum_sidecar(sidecar) -> Tuple[str, str]:
    """
    Parse a sha256sum-style sidecar.

    Raises ValueError when the first line is not `<64 hex>  <name>`.
    """
    with open(sidecar, "r") as f:
        line = f.readline().strip()
    parts = line.split(None, 1)
    if len(parts) != 2:
        raise ValueError(f"Malformed checksum line in {sidecar}")
    digest, name = parts
    digest = digest.lower()
    if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
        raise ValueError(f"Malformed checksum digest in {sidecar}")
    return digest, name.lstrip("*")


def atomic_write_text(path, text: str) -> None:
    """Write text next to its destination and rename it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def atomic_write_json(path, data: Any) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, sort_keys=True) + "\n")


def remove_path(path) -> None:
    """Remove a file, symlink or directory tree if it exists."""
    path = Path(path)
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(str(path))
