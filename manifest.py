"""
manifest.py — per-file content hashes across a collection of disk images.

A manifest line reads:

    <digest>  <NAME>  <date>  <source>:<path>

Duplicate files are kept; spotting them is left to whoever reads the
ledger.
"""

from __future__ import annotations

from dataclasses import dataclass

from diskimage import DiskImage
from hashing import get_hash


@dataclass
class ManifestEntry:
    digest: str
    name: str
    date: str
    path: str
    size: int = 0


def build_manifest(disk: DiskImage, hash_func=get_hash) -> list[ManifestEntry]:
    """One entry per file on *disk*, in directory traversal order."""
    return [ManifestEntry(item["hash"], item["name"], item["date"],
                          item["path"], item["size"])
            for item in disk.get_file_manifest(hash_func)
            if "hash" in item]


def format_entry(entry: ManifestEntry, *sources: str) -> str:
    origin = ":".join([*sources, entry.path])
    return f"{entry.digest}  {entry.name:<12}  {entry.date}  {origin}"


class ManifestLedger:
    """Running concatenation of manifests from many images."""

    def __init__(self, hash_func=get_hash):
        self.hash_func = hash_func
        self.entries: list[tuple[str, ManifestEntry]] = []
        self.manifests = 0

    def add(self, source: str, disk: DiskImage) -> list[ManifestEntry]:
        entries = build_manifest(disk, self.hash_func)
        self.entries.extend((source, e) for e in entries)
        self.manifests += 1
        return entries

    def __len__(self) -> int:
        return len(self.entries)

    def lines(self) -> list[str]:
        return [format_entry(e, source) for source, e in self.entries]
