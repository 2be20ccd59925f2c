"""
diskio.py — read and write disk images and helper files on the host.

Every function reports OSError as one ``error: <path>: <cause>`` line and
returns None or False instead of raising.
"""

from __future__ import annotations

import json
import os

from diskimage import DiskImage
from filetree import MAX_FILES, ingest
from gateway import (
    from_archive_container, from_file_tree, from_json_text, from_raw_buffer,
    to_archive_container, to_json_text, to_raw_buffer,
)
from hashing import get_hash


def _error(path: str, err: Exception):
    print(f"error: {path}: {getattr(err, 'strerror', None) or err}")


def display_path(path: str, root_dir: str = "") -> str:
    """*path* relative to *root_dir* when it lies under it."""
    if root_dir and path.startswith(root_dir):
        return path[len(root_dir.rstrip(os.sep)):]
    return path


def read_file(path: str | None, encoding: str | None = "utf-8"):
    """Contents of *path* (text, or bytes when *encoding* is None).

    Returns None when *path* is empty, missing or unreadable.
    """
    if not path or not os.path.exists(path):
        return None
    try:
        if encoding is None:
            with open(path, "rb") as f:
                return f.read()
        with open(path, encoding=encoding, newline="") as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as e:
        _error(path, e)
        return None


def read_json(path: str):
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        _error(path, e)
        return None


def write_file(path: str, data: str | bytes | bytearray) -> bool:
    try:
        if isinstance(data, str):
            with open(path, "w", encoding="utf-8", newline="") as f:
                f.write(data)
        else:
            with open(path, "wb") as f:
                f.write(data)
    except OSError as e:
        _error(path, e)
        return False
    return True


def read_dir(directory: str, normalize: bool = False, label: str | None = None,
             kb_target: int = 0, max_files: int = MAX_FILES) -> DiskImage | None:
    """Build a diskette image from the files under *directory*."""
    name = os.path.basename(os.path.normpath(directory))
    try:
        files = ingest(directory, normalize, label, max_files)
    except OSError as e:
        _error(directory, e)
        return None
    return from_file_tree(files, name, kb_target)


def read_disk(path: str, force_bpb: bool = False, sector_ids=None,
              sector_errors=None, supp_data=None) -> DiskImage | None:
    """Load a .json, .psi or raw sector image from *path*.

    Raw images are hashed as read so the hash survives into any JSON
    written from them.
    """
    name = os.path.basename(path)
    try:
        if name.lower().endswith(".json"):
            with open(path, encoding="utf-8") as f:
                text = f.read()
            return from_json_text(text, name)
        with open(path, "rb") as f:
            data = f.read()
    except (OSError, UnicodeDecodeError) as e:
        _error(path, e)
        return None
    if name.lower().endswith(".psi"):
        return from_archive_container(data, name)
    return from_raw_buffer(data, get_hash(data), force_bpb, sector_ids,
                           sector_errors, supp_data, name)


def write_disk(path: str, disk: DiskImage, legacy: bool = False,
               indent: int = 0, overwrite: bool = False,
               root_dir: str = "") -> bool:
    """Write *disk* to *path*: JSON for .json, PSI for .psi, raw otherwise.

    Binary outputs are left read-only.  An existing file is only replaced
    when *overwrite* is set.
    """
    name = os.path.basename(path)
    exists = os.path.exists(path)
    if exists and not overwrite:
        print(f"{name} exists, use --overwrite to replace")
        return False
    lower = path.lower()
    if lower.endswith(".json"):
        data = to_json_text(disk, get_hash, legacy, indent)
    elif lower.endswith(".psi"):
        data = to_archive_container(disk)
    else:
        data = to_raw_buffer(disk)
    if data is None:
        print(f"{name} not written, no data")
        return False
    print(f"writing  {display_path(path, root_dir)}...")
    try:
        if exists:
            os.unlink(path)
        if isinstance(data, str):
            with open(path, "w", encoding="utf-8") as f:
                f.write(data)
        else:
            with open(path, "wb") as f:
                f.write(data)
            os.chmod(path, 0o444)
    except OSError as e:
        _error(path, e)
        return False
    return True


def compare_disks(path1: str, path2: str) -> bool:
    """True when both files exist and hold identical bytes."""
    data1 = read_file(path1, None)
    data2 = read_file(path2, None)
    return data1 is not None and data2 is not None and data1 == data2
