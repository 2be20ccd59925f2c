"""
fatfs.py — FAT12 volume codec for PC diskette images.

Builds FAT12 volumes from file-record trees and scans existing volumes
back into flat file lists.  Geometry and sector bookkeeping live in
diskimage.py; this module only sees a flat bytearray and a BPB.

Volume layout (all sizes in 512-byte sectors):
    Sector 0           Boot sector (jump, OEM name, BPB, 0x55AA)
    Reserved ..        FAT copies (fat_count × fat_sectors)
    ..                 Root directory (root_entries × 32 bytes)
    Data area          Clusters 2 .. clusters+1

BIOS parameter block (boot sector offsets):
    +11  bytes_per_sector[2]     u16 LE
    +13  sectors_per_cluster[1]
    +14  reserved_sectors[2]     u16 LE
    +16  fat_count[1]
    +17  root_entries[2]         u16 LE
    +19  total_sectors[2]        u16 LE
    +21  media[1]                0xF0-0xFF
    +22  fat_sectors[2]          u16 LE
    +24  sectors_per_track[2]    u16 LE
    +26  heads[2]                u16 LE
    +28  hidden_sectors[4]       u32 LE
    +38  ext_signature[1]        0x29
    +39  serial[4]               u32 LE
    +43  label[11]
    +54  fs_type[8]              "FAT12   "

Directory entry (32 bytes):
    +0   name[8] ext[3]   space padded, 0x00 = end, 0xE5 = deleted
    +11  attr[1]
    +22  time[2]          u16 LE  (hour<<11 | min<<5 | sec/2)
    +24  date[2]          u16 LE  ((year-1980)<<9 | month<<5 | day)
    +26  cluster[2]       u16 LE
    +28  size[4]          u32 LE
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from datetime import datetime

# ── Constants ──────────────────────────────────────────────────────────

SECTOR_SIZE = 512
DIR_ENTRY_SIZE = 32
FAT12_MAX_CLUSTERS = 4084
FAT12_EOC = 0xFFF

DELETED = 0xE5
FILL_FORMAT = 0xF6
OEM_NAME = b"DISKDUMP"
NO_NAME = "NO NAME"
DEFAULT_LABEL = "DISKDUMP"

# Attribute bits
ATTR_VOLUME   = 0x08
ATTR_SUBDIR   = 0x10
ATTR_LFN      = 0x0F

_NAME_CHARS = set("ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789!#$%&'()-@^_`{}~")


class DiskFullError(Exception):
    """Raised when records do not fit in the volume being built."""


# ── Data classes ───────────────────────────────────────────────────────

@dataclass
class BPB:
    """BIOS parameter block of a FAT12 volume."""
    bytes_per_sector: int
    sectors_per_cluster: int
    reserved_sectors: int
    fat_count: int
    root_entries: int
    total_sectors: int
    media: int
    fat_sectors: int
    sectors_per_track: int
    heads: int
    hidden_sectors: int = 0

    @property
    def root_sectors(self) -> int:
        return _sectors_needed(self.root_entries * DIR_ENTRY_SIZE)

    @property
    def fat_start(self) -> int:
        return self.reserved_sectors

    @property
    def root_start(self) -> int:
        return self.reserved_sectors + self.fat_count * self.fat_sectors

    @property
    def data_start(self) -> int:
        return self.root_start + self.root_sectors

    @property
    def cluster_bytes(self) -> int:
        return self.sectors_per_cluster * self.bytes_per_sector

    @property
    def clusters(self) -> int:
        """Number of data clusters (valid cluster numbers are 2..clusters+1)."""
        return (self.total_sectors - self.data_start) // self.sectors_per_cluster


@dataclass
class DirEntry:
    """One 32-byte directory entry."""
    raw_name: bytes
    attr: int
    time: int = 0
    date: int = 0
    cluster: int = 0
    size: int = 0

    @property
    def name(self) -> str:
        if self.is_volume:
            return self.raw_name.decode("latin-1").rstrip()
        base = self.raw_name[:8].decode("latin-1").rstrip()
        ext = self.raw_name[8:11].decode("latin-1").rstrip()
        return f"{base}.{ext}" if ext else base

    @property
    def is_dir(self) -> bool:
        return bool(self.attr & ATTR_SUBDIR)

    @property
    def is_volume(self) -> bool:
        return bool(self.attr & ATTR_VOLUME)

    @property
    def timestamp(self) -> datetime | None:
        return _from_fat_datetime(self.date, self.time)


@dataclass
class FileInfo:
    """A file or directory found while scanning a volume."""
    path: str
    name: str
    attr: int
    date: datetime | None
    size: int
    data: bytes = b""
    cluster: int = 0

    @property
    def is_dir(self) -> bool:
        return bool(self.attr & ATTR_SUBDIR)

    @property
    def parent(self) -> str:
        return self.path.rsplit("\\", 1)[0]


# ── Low-level helpers ──────────────────────────────────────────────────

def _sectors_needed(nbytes: int) -> int:
    """Number of 512-byte sectors needed to hold *nbytes*."""
    return (nbytes + SECTOR_SIZE - 1) // SECTOR_SIZE


def _to_fat_datetime(dt: datetime | None) -> tuple[int, int]:
    """Pack *dt* into FAT (date, time) words; years before 1980 clamp."""
    if dt is None:
        return 0, 0
    if dt.year < 1980:
        dt = datetime(1980, 1, 1)
    elif dt.year > 2107:
        dt = datetime(2107, 12, 31, 23, 59, 58)
    date = ((dt.year - 1980) << 9) | (dt.month << 5) | dt.day
    time = (dt.hour << 11) | (dt.minute << 5) | (dt.second // 2)
    return date, time


def _from_fat_datetime(date: int, time: int) -> datetime | None:
    if date == 0:
        return None
    try:
        return datetime(1980 + (date >> 9), (date >> 5) & 0x0F, date & 0x1F,
                        time >> 11, (time >> 5) & 0x3F, (time & 0x1F) * 2)
    except ValueError:
        return None


def _read_entry(data: bytes | bytearray, offset: int) -> DirEntry | None:
    """Parse a 32-byte directory entry.  Returns None for free slots."""
    raw = bytes(data[offset : offset + DIR_ENTRY_SIZE])
    if len(raw) < DIR_ENTRY_SIZE or raw[0] in (0x00, DELETED):
        return None
    time, date, cluster, size = struct.unpack_from("<HHHI", raw, 22)
    return DirEntry(raw[0:11], raw[11], time, date, cluster, size)


def _write_entry(buf: bytearray, offset: int, entry: DirEntry):
    """Serialise a DirEntry into 32 bytes at *offset* in *buf*."""
    buf[offset : offset + DIR_ENTRY_SIZE] = b"\x00" * DIR_ENTRY_SIZE
    buf[offset : offset + 11] = entry.raw_name[:11].ljust(11, b" ")
    buf[offset + 11] = entry.attr
    struct.pack_into("<HHHI", buf, offset + 22,
                     entry.time, entry.date, entry.cluster, entry.size)


def _clean(part: str) -> str:
    return "".join(c if c in _NAME_CHARS else "_" for c in part.upper())


def short_name(name: str, taken: set[bytes]) -> bytes:
    """Convert *name* to a unique 11-byte 8.3 name not already in *taken*."""
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem:
        stem, ext = name, ""
    stem = _clean(stem.replace(".", "").replace(" ", "")) or "_"
    ext = _clean(ext.replace(" ", ""))[:3]
    raw = (stem[:8].ljust(8) + ext.ljust(3)).encode("ascii")
    tail = 1
    while raw in taken:
        suffix = f"~{tail}"
        raw = (stem[:8 - len(suffix)] + suffix).ljust(8).encode("ascii") + raw[8:]
        tail += 1
    taken.add(raw)
    return raw


def label_name(label: str) -> bytes:
    """11-byte volume label field for *label*."""
    cleaned = "".join(c if c in _NAME_CHARS or c == " " else "_"
                      for c in label.upper())
    return cleaned[:11].ljust(11).encode("ascii")


# ── FAT helpers ────────────────────────────────────────────────────────

def _fat_get(fat: bytes | bytearray, cluster: int) -> int:
    """Return the 12-bit FAT entry for *cluster*."""
    offset = cluster + (cluster // 2)
    if offset + 2 > len(fat):
        return FAT12_EOC
    value = struct.unpack_from("<H", fat, offset)[0]
    return value >> 4 if cluster & 1 else value & 0xFFF


def _fat_set(fat: bytearray, cluster: int, value: int):
    """Store a 12-bit FAT entry, preserving the neighbouring nibble."""
    offset = cluster + (cluster // 2)
    current = struct.unpack_from("<H", fat, offset)[0]
    if cluster & 1:
        current = (current & 0x000F) | (value << 4)
    else:
        current = (current & 0xF000) | (value & 0xFFF)
    struct.pack_into("<H", fat, offset, current)


# ── Boot sector ────────────────────────────────────────────────────────

def parse_bpb(boot: bytes | bytearray) -> BPB | None:
    """Parse the BPB of *boot*, or return None if it does not look like one."""
    if len(boot) < SECTOR_SIZE:
        return None
    (bps, spc, reserved, fats, root, total, media, fat_secs,
     spt, heads, hidden) = struct.unpack_from("<HBHBHHBHHHI", boot, 11)
    if bps != SECTOR_SIZE or spc not in (1, 2, 4, 8, 16, 32, 64, 128):
        return None
    if reserved < 1 or fats not in (1, 2) or root == 0 or root % 16:
        return None
    if media < 0xF0 or total == 0 or fat_secs == 0:
        return None
    if not 1 <= spt <= 63 or not 1 <= heads <= 255:
        return None
    bpb = BPB(bps, spc, reserved, fats, root, total, media, fat_secs,
              spt, heads, hidden)
    if bpb.data_start >= total:
        return None
    return bpb


def make_boot_sector(bpb: BPB, label: str | None = None) -> bytearray:
    """A non-bootable boot sector carrying *bpb* and an extended BPB."""
    boot = bytearray(SECTOR_SIZE)
    boot[0:3] = b"\xEB\x3C\x90"
    boot[3:11] = OEM_NAME.ljust(8)[:8]
    struct.pack_into("<HBHBHHBHHHI", boot, 11,
                     bpb.bytes_per_sector, bpb.sectors_per_cluster,
                     bpb.reserved_sectors, bpb.fat_count, bpb.root_entries,
                     bpb.total_sectors, bpb.media, bpb.fat_sectors,
                     bpb.sectors_per_track, bpb.heads, bpb.hidden_sectors)
    boot[38] = 0x29
    struct.pack_into("<I", boot, 39, 0)
    boot[43:54] = label_name(label or NO_NAME)
    boot[54:62] = b"FAT12   "
    # Boot code: INT 18h (no ROM BASIC / no bootable disk)
    boot[62:64] = b"\xCD\x18"
    boot[510] = 0x55
    boot[511] = 0xAA
    return boot


# ── Volume-level operations ────────────────────────────────────────────

class FATVolume:
    """In-memory FAT12 volume over a flat image buffer."""

    def __init__(self, img: bytearray, bpb: BPB):
        self.img = img
        self.bpb = bpb
        self._next_cluster = 2

    # ── region access ──────────────────────────────────────────────

    def _offset(self, sector: int) -> int:
        return sector * self.bpb.bytes_per_sector

    def _cluster_offset(self, cluster: int) -> int:
        return self._offset(self.bpb.data_start
                            + (cluster - 2) * self.bpb.sectors_per_cluster)

    def _fat(self) -> bytearray:
        off = self._offset(self.bpb.fat_start)
        return bytearray(self.img[off : off + self.bpb.fat_sectors * SECTOR_SIZE])

    def _flush_fat(self, fat: bytearray):
        size = self.bpb.fat_sectors * SECTOR_SIZE
        for i in range(self.bpb.fat_count):
            off = self._offset(self.bpb.fat_start + i * self.bpb.fat_sectors)
            self.img[off : off + size] = fat[:size]

    def _root(self) -> bytearray:
        off = self._offset(self.bpb.root_start)
        return bytearray(self.img[off : off + self.bpb.root_sectors * SECTOR_SIZE])

    def _flush_root(self, root: bytearray):
        off = self._offset(self.bpb.root_start)
        self.img[off : off + len(root)] = root

    # ── formatting ─────────────────────────────────────────────────

    @classmethod
    def format(cls, bpb: BPB) -> FATVolume:
        """Create a freshly formatted, empty volume described by *bpb*."""
        if bpb.clusters > FAT12_MAX_CLUSTERS:
            raise ValueError(f"{bpb.clusters} clusters is too many for FAT12")
        img = bytearray([FILL_FORMAT]) * (bpb.total_sectors * SECTOR_SIZE)
        vol = cls(img, bpb)
        img[0:SECTOR_SIZE] = make_boot_sector(bpb)
        system = bpb.data_start * SECTOR_SIZE
        img[SECTOR_SIZE:system] = bytes(system - SECTOR_SIZE)
        fat = bytearray(bpb.fat_sectors * SECTOR_SIZE)
        fat[0:3] = bytes([bpb.media, 0xFF, 0xFF])
        vol._flush_fat(fat)
        return vol

    # ── building ───────────────────────────────────────────────────

    def _alloc(self, fat: bytearray, count: int) -> int:
        """Allocate *count* contiguous clusters and chain them."""
        start = self._next_cluster
        last = start + count - 1
        if last > self.bpb.clusters + 1:
            raise DiskFullError(
                f"no space for {count} cluster(s) "
                f"({self.bpb.clusters} in volume)")
        for c in range(start, last):
            _fat_set(fat, c, c + 1)
        _fat_set(fat, last, FAT12_EOC)
        self._next_cluster = last + 1
        return start

    def _write_clusters(self, start: int, data: bytes | bytearray):
        """Write *data* to the contiguous run starting at *start*, zero padded."""
        cb = self.bpb.cluster_bytes
        nbytes = ((len(data) + cb - 1) // cb) * cb or cb
        off = self._cluster_offset(start)
        self.img[off : off + nbytes] = bytes(data).ljust(nbytes, b"\x00")

    def _fill_dir(self, fat: bytearray, buf: bytearray, records, slot: int,
                  parent_cluster: int, root: bool):
        capacity = len(buf) // DIR_ENTRY_SIZE
        taken: set[bytes] = set()
        for rec in records:
            if slot >= capacity:
                raise DiskFullError(f"directory full ({capacity} entries)")
            date, time = _to_fat_datetime(rec.date)
            if rec.attr & ATTR_VOLUME:
                if not root:
                    continue
                raw = label_name(rec.name)
                _write_entry(buf, slot * DIR_ENTRY_SIZE,
                             DirEntry(raw, ATTR_VOLUME, time, date))
                self.img[43:54] = raw
                slot += 1
                continue
            raw = short_name(rec.name, taken)
            if rec.attr & ATTR_SUBDIR:
                children = rec.files or []
                cb = self.bpb.cluster_bytes
                count = max(1, ((len(children) + 2) * DIR_ENTRY_SIZE + cb - 1) // cb)
                start = self._alloc(fat, count)
                entry = DirEntry(raw, rec.attr & 0x3F, time, date, start, 0)
                sub = bytearray(count * cb)
                _write_entry(sub, 0, DirEntry(b".".ljust(11), ATTR_SUBDIR,
                                              time, date, start))
                _write_entry(sub, DIR_ENTRY_SIZE,
                             DirEntry(b"..".ljust(11), ATTR_SUBDIR, time, date,
                                      parent_cluster))
                self._fill_dir(fat, sub, children, 2, start, root=False)
                self._write_clusters(start, sub)
            else:
                data = bytes(rec.data or b"")
                start = 0
                if data:
                    cb = self.bpb.cluster_bytes
                    start = self._alloc(fat, (len(data) + cb - 1) // cb)
                    self._write_clusters(start, data)
                entry = DirEntry(raw, rec.attr & 0x3F, time, date, start, len(data))
            _write_entry(buf, slot * DIR_ENTRY_SIZE, entry)
            slot += 1

    def add_files(self, records):
        """Write a file-record tree into this freshly formatted volume.

        *records* are objects with ``name``, ``attr``, ``date``, ``data``
        and (for directories) ``files`` attributes; a volume-label record
        is written as the root's label entry.  Raises DiskFullError if the
        records do not fit.
        """
        fat = self._fat()
        root = self._root()
        self._fill_dir(fat, root, records, 0, 0, root=True)
        self._flush_root(root)
        self._flush_fat(fat)

    # ── scanning ───────────────────────────────────────────────────

    def _chain(self, fat: bytes | bytearray, start: int) -> list[int]:
        """Cluster chain from *start*; stops at end marks, bad links and loops."""
        chain: list[int] = []
        seen: set[int] = set()
        last = self.bpb.clusters + 1
        cluster = start
        while 2 <= cluster <= last and cluster not in seen:
            seen.add(cluster)
            chain.append(cluster)
            cluster = _fat_get(fat, cluster)
        return chain

    def _read_chain(self, fat: bytes | bytearray, start: int) -> bytes:
        cb = self.bpb.cluster_bytes
        parts = []
        for c in self._chain(fat, start):
            off = self._cluster_offset(c)
            parts.append(bytes(self.img[off : off + cb]))
        return b"".join(parts)

    def _scan_dir(self, fat, buf: bytes | bytearray, prefix: str,
                  out: list[FileInfo], seen: set[int]) -> str | None:
        label = None
        for i in range(len(buf) // DIR_ENTRY_SIZE):
            offset = i * DIR_ENTRY_SIZE
            if buf[offset] == 0x00:
                break
            e = _read_entry(buf, offset)
            if e is None or e.attr == ATTR_LFN:
                continue
            if e.raw_name[0:1] == b".":
                continue
            if e.is_volume:
                if not prefix and label is None:
                    label = e.name
                continue
            path = f"{prefix}\\{e.name}"
            if e.is_dir:
                out.append(FileInfo(path, e.name, e.attr, e.timestamp, -1,
                                    cluster=e.cluster))
                if e.cluster >= 2 and e.cluster not in seen:
                    seen.add(e.cluster)
                    sub = self._read_chain(fat, e.cluster)
                    self._scan_dir(fat, sub, path, out, seen)
            else:
                data = self._read_chain(fat, e.cluster)[: e.size] if e.cluster else b""
                out.append(FileInfo(path, e.name, e.attr, e.timestamp, e.size,
                                    data, e.cluster))
        return label

    def scan(self) -> tuple[str | None, list[FileInfo]]:
        """Walk the volume.  Returns (label, files in pre-order)."""
        files: list[FileInfo] = []
        label = self._scan_dir(self._fat(), self._root(), "", files, set())
        return label, files

    def free_bytes(self) -> int:
        fat = self._fat()
        free = sum(1 for c in range(2, self.bpb.clusters + 2)
                   if _fat_get(fat, c) == 0)
        return free * self.bpb.cluster_bytes
