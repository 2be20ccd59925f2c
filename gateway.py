"""
gateway.py — build and serialise DiskImages without touching the filesystem.

Every constructor returns a DiskImage, or None after printing one
``error: <name>: <cause>`` line; a bad source only costs that one image.
"""

from __future__ import annotations

import struct

from diskimage import DiskImage, DiskImageError
from fatfs import DiskFullError
from hashing import get_hash


def _fail(name: str, err: Exception):
    print(f"error: {name or 'disk'}: {err}")


def from_file_tree(files, name: str, kb_target: int = 0) -> DiskImage | None:
    """Lay *files* out on the smallest diskette that holds them.

    A non-zero *kb_target* (160, 180, 320, 360, 720, 1200, 1440 or 2880)
    tries only that size.
    """
    try:
        return DiskImage(name).build_from_files(files, name, kb_target)
    except (DiskImageError, DiskFullError, ValueError) as e:
        _fail(name, e)
        return None


def from_json_text(text: str, name: str = "") -> DiskImage | None:
    try:
        return DiskImage(name).build_from_json(text)
    except DiskImageError as e:
        _fail(name, e)
        return None


def from_raw_buffer(data: bytes | bytearray, hash: str | None = None,
                    force_bpb: bool = False, sector_ids=None,
                    sector_errors=None, supp_data=None,
                    name: str = "") -> DiskImage | None:
    try:
        return DiskImage(name).build_from_buffer(
            data, hash, force_bpb, sector_ids, sector_errors, supp_data)
    except DiskImageError as e:
        _fail(name, e)
        return None


def from_archive_container(data: bytes | bytearray,
                           name: str = "") -> DiskImage | None:
    """Read a PSI sector-image container."""
    try:
        return DiskImage(name).build_from_psi(data)
    except DiskImageError as e:
        _fail(name, e)
        return None


def to_json_text(disk: DiskImage, hash_func=get_hash, legacy: bool = False,
                 indent: int = 0) -> str | None:
    try:
        return disk.get_json(hash_func, legacy, indent)
    except DiskImageError as e:
        _fail(disk.get_name(), e)
        return None


def to_raw_buffer(disk: DiskImage) -> bytes | None:
    """Flat sector dump, or None if the image is internally inconsistent."""
    try:
        return disk.get_data()
    except DiskImageError as e:
        _fail(disk.get_name(), e)
        return None


def to_archive_container(disk: DiskImage) -> bytes | None:
    """PSI container, or None if a sector cannot be expressed in one."""
    try:
        return disk.get_psi()
    except (DiskImageError, struct.error) as e:
        _fail(disk.get_name(), e)
        return None
