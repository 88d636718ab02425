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
Archive codec: tar packing, passphrase encryption and safe extraction.

Encrypted layout:
    MAGIC (8) | salt (16) | nonce (12) | ciphertext | GCM tag (16)

The key is derived from the passphrase with PBKDF2-HMAC-SHA256. Data is
streamed in 1 MiB chunks so archive size is not bounded by memory.
"""

import os
import tarfile
from pathlib import Path
from typing import List

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ...utils.errors import DecryptionFailed, IntegrityCheckFailed
from ...utils.index import CHUNK_SIZE, log_message

MAGIC = b"ARCHONE1"
SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16
KDF_ITERATIONS = 480000
HEADER_SIZE = len(MAGIC) + SALT_SIZE + NONCE_SIZE


def derive_key(passphrase: str, salt: bytes, iterations: int = KDF_ITERATIONS) -> bytes:
    """Derive a 32-byte AES key from the passphrase."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode())


def pack_tree(source_dir, destination, compress: bool = True) -> Path:
    """Write source_dir into a tar archive whose single top-level entry is its name."""
    source_dir = Path(source_dir)
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    mode = "w:gz" if compress else "w"
    log_message(f"Packing {source_dir.name} into {destination.name}...")
    with tarfile.open(str(destination), mode) as tar:
        tar.add(str(source_dir), arcname=source_dir.name)
    return destination


def encrypt_file(source, destination, passphrase: str) -> Path:
    source = Path(source)
    destination = Path(destination)
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    encryptor = Cipher(algorithms.AES(derive_key(passphrase, salt)), modes.GCM(nonce)).encryptor()
    log_message(f"Encrypting {source.name}...")
    with source.open("rb") as input_handle, destination.open("wb") as output_handle:
        output_handle.write(MAGIC + salt + nonce)
        for chunk in iter(lambda: input_handle.read(CHUNK_SIZE), b""):
            output_handle.write(encryptor.update(chunk))
        output_handle.write(encryptor.finalize())
        output_handle.write(encryptor.tag)
    return destination


def decrypt_file(source, destination, passphrase: str) -> Path:
    """
    Decrypt source into destination.

    Raises DecryptionFailed for a wrong passphrase, a foreign file or a
    truncated one; destination is removed in that case.
    """
    source = Path(source)
    destination = Path(destination)
    total_size = source.stat().st_size
    if total_size < HEADER_SIZE + TAG_SIZE:
        raise DecryptionFailed(f"Encrypted artifact is too small: {source}", path=source)

    with source.open("rb") as input_handle:
        header = input_handle.read(HEADER_SIZE)
        if not header.startswith(MAGIC):
            raise DecryptionFailed(f"Not an Archon encrypted artifact: {source}", path=source)
        salt = header[len(MAGIC):len(MAGIC) + SALT_SIZE]
        nonce = header[len(MAGIC) + SALT_SIZE:]
        input_handle.seek(total_size - TAG_SIZE)
        tag = input_handle.read(TAG_SIZE)
        input_handle.seek(HEADER_SIZE)

        decryptor = Cipher(algorithms.AES(derive_key(passphrase, salt)), modes.GCM(nonce, tag)).decryptor()
        remaining = total_size - HEADER_SIZE - TAG_SIZE
        log_message(f"Decrypting {source.name}...")
        try:
            with destination.open("wb") as output_handle:
                while remaining > 0:
                    chunk = input_handle.read(min(CHUNK_SIZE, remaining))
                    if not chunk:
                        break
                    remaining -= len(chunk)
                    output_handle.write(decryptor.update(chunk))
                output_handle.write(decryptor.finalize())
        except InvalidTag:
            destination.unlink()
            raise DecryptionFailed(f"Decryption failed for {source.name}: wrong passphrase or corrupted file",
                                   path=source)
        except BaseException:
            if destination.exists():
                destination.unlink()
            raise
    return destination


def _within(base: str, target: str) -> bool:
    base = os.path.realpath(base)
    target = os.path.realpath(target)
    return target == base or target.startswith(base + os.sep)


def _safe_members(tar: tarfile.TarFile, dest: str) -> List[tarfile.TarInfo]:
    members = []
    for member in tar.getmembers():
        name = member.name
        if name.startswith("/") or os.path.isabs(name) or ".." in Path(name).parts:
            raise IntegrityCheckFailed(f"Archive member escapes extraction directory: {name}", member=name)
        if not _within(dest, os.path.join(dest, name)):
            raise IntegrityCheckFailed(f"Archive member escapes extraction directory: {name}", member=name)
        if member.issym():
            link_target = os.path.join(dest, os.path.dirname(name), member.linkname)
            if os.path.isabs(member.linkname) or not _within(dest, link_target):
                raise IntegrityCheckFailed(f"Archive symlink escapes extraction directory: {name}", member=name)
        elif member.islnk():
            if not _within(dest, os.path.join(dest, member.linkname)):
                raise IntegrityCheckFailed(f"Archive hard link escapes extraction directory: {name}", member=name)
        elif not (member.isfile() or member.isdir()):
            log_message(f"Skipping special archive member {name}", "WARNING")
            continue
        members.append(member)
    return members


def safe_extract(archive, destination) -> Path:
    """
    Extract archive into destination after validating every member.

    Returns:
        Path: The archive's top-level directory inside destination.
    """
    archive = Path(archive)
    destination = Path(destination)
    destination.mkdir(parents=True, exist_ok=True)
    log_message(f"Extracting {archive.name}...")
    try:
        with tarfile.open(str(archive), "r:*") as tar:
            members = _safe_members(tar, str(destination))
            tops = {Path(m.name).parts[0] for m in members if Path(m.name).parts}
            # Members were validated above; keep their recorded modes
            extract_kwargs = {"filter": "fully_trusted"} if hasattr(tarfile, "fully_trusted_filter") else {}
            tar.extractall(str(destination), members=members, **extract_kwargs)
    except tarfile.TarError as e:
        raise IntegrityCheckFailed(f"Archive {archive.name} is unreadable: {e}", path=archive) from e

    if len(tops) != 1:
        raise IntegrityCheckFailed(f"Archive {archive.name} has no single snapshot root", path=archive)
    return destination / tops.pop()
