"""
filetree.py — read a host directory tree into diskette file records.

The records feed DiskImage.build_from_files.  A volume-label record, when
one is wanted, is always the first top-level record; the label never
appears in subdirectories.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime

from fatfs import ATTR_SUBDIR, ATTR_VOLUME, DEFAULT_LABEL

MAX_FILES = 256
TEXT_FILE_EXTS = (".MD", ".ME", ".BAS", ".BAT", ".ASM", ".LRF", ".MAK",
                  ".TXT", ".XML")


@dataclass
class FileRecord:
    """One file, directory or volume label destined for a diskette."""
    path: str
    name: str
    date: datetime
    attr: int = 0
    size: int = 0
    data: bytes = b""
    files: list[FileRecord] | None = None

    @property
    def is_dir(self) -> bool:
        return bool(self.attr & ATTR_SUBDIR)


@dataclass
class FileBudget:
    """Entry budget shared by every level of one directory walk."""
    remaining: int = MAX_FILES

    def take(self) -> bool:
        """Consume one entry; False once the budget is spent."""
        if self.remaining <= 0:
            return False
        self.remaining -= 1
        return True


def is_text_file(name: str) -> bool:
    return name.upper().endswith(TEXT_FILE_EXTS)


def is_ascii(data: bytes) -> bool:
    return all(b < 0x80 for b in data)


def normalize_line_endings(data: bytes) -> bytes:
    """LF becomes CRLF, then every run of CRs collapses to one CR."""
    data = data.replace(b"\n", b"\r\n")
    while b"\r\r" in data:
        data = data.replace(b"\r\r", b"\r")
    return data


def _resolve_label(directory: str, label: str | None) -> str:
    if label == "none":
        return ""
    if label == "default":
        return DEFAULT_LABEL
    if label:
        return label
    return os.path.basename(os.path.normpath(directory))


def _read_file(entry: os.DirEntry, normalize: bool) -> FileRecord | None:
    try:
        st = entry.stat()
        with open(entry.path, "rb") as f:
            data = f.read()
    except OSError as e:
        print(f"error: {entry.path}: {e.strerror or e}")
        return None
    if len(data) != st.st_size:
        print(f"file data length ({len(data)}) does not match "
              f"file size ({st.st_size})")
    if normalize and is_text_file(entry.name):
        if is_ascii(data):
            fixed = normalize_line_endings(data)
            if fixed != data:
                print(f"replaced line endings in {entry.name} "
                      f"(size changed from {len(data)} to {len(fixed)} bytes)")
            data = fixed
        else:
            print(f"non-ASCII data in {entry.name} (line endings unchanged)")
    return FileRecord(entry.path, entry.name,
                      datetime.fromtimestamp(st.st_mtime), 0, len(data), data)


def read_dir_files(directory: str, normalize: bool = False,
                   label: str | None = None,
                   budget: FileBudget | None = None) -> list[FileRecord]:
    """Read *directory* recursively into FileRecords.

    *label* only applies at this level: ``"none"`` for no label,
    ``"default"`` for DEFAULT_LABEL, anything else verbatim, None to use
    the directory's base name.  Pass label="none" when recursing.
    """
    if budget is None:
        budget = FileBudget()
    records: list[FileRecord] = []
    volume = _resolve_label(directory, label)
    if volume:
        records.append(FileRecord(directory, volume, datetime.now(), ATTR_VOLUME))

    with os.scandir(directory) as it:
        entries = list(it)
    for entry in entries:
        if not budget.take():
            break
        if entry.name.startswith("."):
            continue
        if entry.is_dir():
            try:
                mtime = entry.stat().st_mtime
                children = read_dir_files(entry.path, normalize, "none", budget)
            except OSError as e:
                print(f"error: {entry.path}: {e.strerror or e}")
                continue
            records.append(FileRecord(entry.path, entry.name,
                                      datetime.fromtimestamp(mtime),
                                      ATTR_SUBDIR, -1, b"", children))
        else:
            rec = _read_file(entry, normalize)
            if rec is not None:
                records.append(rec)
    return records


def ingest(directory: str, normalize: bool = False, label: str | None = None,
           max_files: int = MAX_FILES) -> list[FileRecord]:
    """Read *directory* with a fresh budget of *max_files* entries.

    A *max_files* of 0 means MAX_FILES.
    """
    return read_dir_files(directory, normalize, label,
                          FileBudget(max_files or MAX_FILES))
