"""
diskimage.py — in-memory PC diskette images.

A DiskImage is a geometry (cylinders × heads × sectors per track) plus a
track array of Sector objects.  Images are built from file-record trees,
raw sector dumps, PSI containers or JSON, and can be rendered back to any
of those forms.  When sector 0 carries a FAT12 BPB the volume is scanned
so the image can produce directory listings and file manifests.

JSON format (current):
    {
      "imageInfo": {"type": "CHS", "name": ..., "format": "PC360K",
                    "hash": ..., "cylinders": 40, "heads": 2,
                    "trackDefault": 9, "sectorDefault": 512,
                    "diskSize": 368640, "version": "2.0", "command": ...},
      "volTable":  [{"iVolume": 0, "label": ..., ...}],
      "fileTable": [{"path": ..., "attr": "0x20", "date": ..., "size": ...,
                     "hash": ...}],
      "diskData":  [[[{"c": 0, "h": 0, "s": 1, "l": 512, "d": [...]}, ...]]]
    }

Legacy format: the diskData array alone, sectors written as
{"sector": 1, "length": 512, "data": [...]}.

Sector data ("d" / "data") is a list of little-endian signed 32-bit words
with trailing repeats trimmed; the last word fills the rest of the sector.
An optional "e" / "error" records how many bytes read back cleanly before
a read error.
"""

from __future__ import annotations

import json
import re
import struct
from dataclasses import dataclass
from datetime import datetime

from fatfs import (
    BPB, SECTOR_SIZE, DiskFullError, FATVolume, FileInfo, parse_bpb,
)
from psi import PSIError, PSISector, decode_psi, encode_psi

# ── Constants ──────────────────────────────────────────────────────────

JSON_VERSION = "2.0"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class DiskImageError(Exception):
    """The image cannot be built or is internally inconsistent."""


class ParseError(DiskImageError):
    """Malformed JSON, unrecognized binary layout or bad override."""


@dataclass(frozen=True)
class Geometry:
    """A standard PC diskette format."""
    kb: int
    cylinders: int
    heads: int
    sectors: int
    media: int
    cluster_sectors: int
    root_entries: int
    fat_sectors: int

    @property
    def total_sectors(self) -> int:
        return self.cylinders * self.heads * self.sectors

    @property
    def size(self) -> int:
        return self.total_sectors * SECTOR_SIZE

    def bpb(self) -> BPB:
        return BPB(SECTOR_SIZE, self.cluster_sectors, 1, 2, self.root_entries,
                   self.total_sectors, self.media, self.fat_sectors,
                   self.sectors, self.heads)


# Smallest first; auto-sizing picks the first one the files fit on.
GEOMETRIES = (
    Geometry(160,  40, 1,  8, 0xFE, 1,  64, 1),
    Geometry(180,  40, 1,  9, 0xFC, 1,  64, 2),
    Geometry(320,  40, 2,  8, 0xFF, 2, 112, 1),
    Geometry(360,  40, 2,  9, 0xFD, 2, 112, 2),
    Geometry(720,  80, 2,  9, 0xF9, 2, 112, 3),
    Geometry(1200, 80, 2, 15, 0xF9, 1, 224, 7),
    Geometry(1440, 80, 2, 18, 0xF0, 1, 224, 9),
    Geometry(2880, 80, 2, 36, 0xF0, 2, 240, 9),
)

# Physical positions accepted from sector containers.
MAX_CYLINDERS = 86
MAX_HEADS = 2


def geometry_for_size(size: int) -> Geometry | None:
    for geo in GEOMETRIES:
        if geo.size == size:
            return geo
    return None


@dataclass
class Sector:
    """One sector at a physical position within its track."""
    cylinder: int
    head: int
    sector_id: int
    data: bytearray
    length: int = SECTOR_SIZE
    error: int | None = None


# ── Sector word packing ────────────────────────────────────────────────

def _pack_dwords(data: bytes | bytearray) -> list[int]:
    padded = bytes(data) + bytes(-len(data) % 4)
    words = list(struct.unpack(f"<{len(padded) // 4}i", padded))
    while len(words) > 1 and words[-1] == words[-2]:
        words.pop()
    return words


def _unpack_dwords(words: list[int], length: int) -> bytes:
    count = (length + 3) // 4
    if not isinstance(words, list) or len(words) > count:
        raise ValueError(f"sector data does not fit {length} bytes")
    if count and not words:
        raise ValueError("empty sector data")
    words = words + words[-1:] * (count - len(words))
    return struct.pack(f"<{count}i", *words)[:length]


# ── Override parsing ───────────────────────────────────────────────────

_OVERRIDE_RE = re.compile(r"^(\d+):(\d+):(\d+)(?::(-?\d+))?$")
_SUPP_RE = re.compile(r"^\s*(\d+):(\d+):(\d+)\s+(.*)$")


def parse_overrides(value) -> list[tuple[int, int, int, int | None]]:
    """Parse ``C:H:S[:N]`` overrides from a string, comma list or list."""
    if not value:
        return []
    items = value if isinstance(value, (list, tuple)) else [value]
    out = []
    for item in items:
        for part in str(item).split(","):
            part = part.strip()
            if not part:
                continue
            m = _OVERRIDE_RE.match(part)
            if m is None:
                raise ParseError(f"invalid sector override: {part!r}")
            c, h, s, n = m.groups()
            out.append((int(c), int(h), int(s), None if n is None else int(n)))
    return out


def parse_supp_data(text: str | bytes) -> list[tuple[int, int, int, dict]]:
    """Pick ``C:H:S key=value ...`` lines out of supplementary text."""
    if isinstance(text, (bytes, bytearray)):
        text = text.decode("latin-1")
    out = []
    for line in text.splitlines():
        m = _SUPP_RE.match(line)
        if m is None:
            continue
        fields = dict(kv.split("=", 1) for kv in m.group(4).split() if "=" in kv)
        out.append((int(m.group(1)), int(m.group(2)), int(m.group(3)),
                    {k.lower(): v for k, v in fields.items()}))
    return out


def _date_str(dt: datetime | None) -> str:
    return dt.strftime(DATE_FORMAT) if dt else ""


def _dos_date(dt: datetime | None) -> str:
    if dt is None:
        return ""
    hour = dt.hour % 12 or 12
    ampm = "a" if dt.hour < 12 else "p"
    return (f"{dt.month:2d}-{dt.day:02d}-{dt.year % 100:02d}  "
            f"{hour:2d}:{dt.minute:02d}{ampm}")


# ── Disk images ────────────────────────────────────────────────────────

class DiskImage:
    """In-memory representation of one diskette image."""

    def __init__(self, name: str = ""):
        self.name = name
        self.args = ""
        self.hash: str | None = None
        self.cylinders = 0
        self.heads = 0
        self.sectors_per_track = 0
        self.tracks: list[list[list[Sector]]] = []
        self.bpb: BPB | None = None
        self.label: str | None = None
        self.files: list[FileInfo] = []
        self.free_bytes = 0

    # ── track bookkeeping ──────────────────────────────────────────

    def _set_tracks(self, tracks: list[list[list[Sector]]]):
        self.tracks = tracks
        self.cylinders = len(tracks)
        self.heads = max((len(cyl) for cyl in tracks), default=0)
        self.sectors_per_track = max(
            (len(trk) for cyl in tracks for trk in cyl), default=0)

    def _load_buffer(self, buf: bytes | bytearray, heads: int, spt: int):
        track_bytes = heads * spt * SECTOR_SIZE
        if not buf or len(buf) % track_bytes:
            raise ParseError(f"{len(buf)} bytes is not a whole number of "
                             f"{heads}×{spt} cylinders")
        tracks = []
        pos = 0
        for c in range(len(buf) // track_bytes):
            cyl = []
            for h in range(heads):
                trk = []
                for s in range(1, spt + 1):
                    trk.append(Sector(c, h, s,
                                      bytearray(buf[pos : pos + SECTOR_SIZE])))
                    pos += SECTOR_SIZE
                cyl.append(trk)
            tracks.append(cyl)
        self._set_tracks(tracks)

    def _sector(self, c: int, h: int, s: int) -> Sector:
        """Sector at physical position *s* (1-based) of track *c*:*h*."""
        if c < 0 or h < 0 or s < 1:
            raise ParseError(f"no sector {c}:{h}:{s}")
        try:
            return self.tracks[c][h][s - 1]
        except IndexError:
            raise ParseError(f"no sector {c}:{h}:{s}") from None

    def _sectors(self):
        for cyl in self.tracks:
            for trk in cyl:
                yield from trk

    def _scan(self, buf: bytes | bytearray | None = None):
        """Locate a FAT volume in sector 0 and index its files."""
        if buf is None:
            buf = self.get_data()
        self.bpb = parse_bpb(buf[:SECTOR_SIZE])
        self.label, self.files, self.free_bytes = None, [], 0
        if self.bpb is None or self.bpb.total_sectors * SECTOR_SIZE > len(buf):
            self.bpb = None
            return
        vol = FATVolume(bytearray(buf), self.bpb)
        self.label, self.files = vol.scan()
        self.free_bytes = vol.free_bytes()

    # ── construction ───────────────────────────────────────────────

    def build_from_files(self, files, name: str | None = None,
                         kb_target: int = 0) -> DiskImage:
        """Lay out a FAT12 diskette holding the *files* record tree.

        With *kb_target* 0 the smallest standard format that fits is used.
        """
        if name:
            self.name = name
        candidates = [g for g in GEOMETRIES if not kb_target or g.kb == kb_target]
        if not candidates:
            raise DiskImageError(f"unsupported target size: {kb_target}K")
        reason = ""
        for geo in candidates:
            vol = FATVolume.format(geo.bpb())
            try:
                vol.add_files(files)
            except DiskFullError as e:
                reason = str(e)
                continue
            self._load_buffer(vol.img, geo.heads, geo.sectors)
            self._scan(vol.img)
            return self
        raise DiskImageError(
            f"files do not fit on a {candidates[-1].kb}K diskette: {reason}")

    def build_from_buffer(self, data: bytes | bytearray, hash: str | None = None,
                          force_bpb: bool = False, sector_ids=None,
                          sector_errors=None, supp_data=None) -> DiskImage:
        """Load a raw sector dump.

        Geometry normally follows the boot sector's BPB; with *force_bpb*
        the standard format matching the dump size wins when they disagree.
        *sector_ids* and *sector_errors* take ``C:H:S:N`` overrides and
        *supp_data* ``C:H:S id=N error=N`` lines.
        """
        size = len(data)
        if size == 0 or size % SECTOR_SIZE:
            raise ParseError(f"unrecognized disk size: {size} bytes")
        geo = geometry_for_size(size)
        bpb = parse_bpb(data[:SECTOR_SIZE])
        heads, spt = (geo.heads, geo.sectors) if geo else (0, 0)
        if bpb and (bpb.heads, bpb.sectors_per_track) != (heads, spt):
            track_bytes = bpb.heads * bpb.sectors_per_track * SECTOR_SIZE
            if (not force_bpb or geo is None) and size % track_bytes == 0:
                heads, spt = bpb.heads, bpb.sectors_per_track
        if not heads:
            raise ParseError(f"unrecognized disk geometry ({size} bytes)")
        self._load_buffer(data, heads, spt)
        self.hash = hash

        for c, h, s, n in parse_overrides(sector_ids):
            if n is None:
                raise ParseError(f"sector ID override {c}:{h}:{s} has no ID")
            self._sector(c, h, s).sector_id = n
        for c, h, s, n in parse_overrides(sector_errors):
            self._sector(c, h, s).error = n or 0
        if supp_data:
            for c, h, s, fields in parse_supp_data(supp_data):
                sector = self._sector(c, h, s)
                try:
                    if "id" in fields:
                        sector.sector_id = int(fields["id"], 0)
                    if "error" in fields:
                        sector.error = int(fields["error"], 0)
                except ValueError as e:
                    raise ParseError(f"bad supplementary data for "
                                     f"{c}:{h}:{s}: {e}") from e

        self._scan(bytes(data))
        return self

    def build_from_psi(self, data: bytes | bytearray) -> DiskImage:
        """Load a PSI sector-image container."""
        try:
            sectors = decode_psi(data)
        except PSIError as e:
            raise ParseError(str(e)) from e
        if not sectors:
            raise ParseError("PSI image has no sectors")
        for s in sectors:
            if s.cylinder >= MAX_CYLINDERS or s.head >= MAX_HEADS:
                raise ParseError(f"sector {s.cylinder}:{s.head}:{s.sector_id} "
                                 f"is outside the diskette geometry")
        cylinders = max(s.cylinder for s in sectors) + 1
        heads = max(s.head for s in sectors) + 1
        tracks: list[list[list[Sector]]] = [
            [[] for _ in range(heads)] for _ in range(cylinders)]
        for s in sectors:
            tracks[s.cylinder][s.head].append(
                Sector(s.cylinder, s.head, s.sector_id, bytearray(s.data),
                       len(s.data), s.error))
        self._set_tracks(tracks)
        self._scan()
        return self

    def build_from_json(self, text: str) -> DiskImage:
        """Load either JSON schema."""
        try:
            doc = json.loads(text)
        except ValueError as e:
            raise ParseError(f"invalid JSON: {e}") from e
        info = {}
        if isinstance(doc, list):
            disk = doc
        elif isinstance(doc, dict) and isinstance(doc.get("diskData"), list):
            disk = doc["diskData"]
            info = doc.get("imageInfo") or {}
        else:
            raise ParseError("unrecognized disk image format")
        try:
            tracks = [[[self._sector_from_json(c, h, sd) for sd in trk]
                       for h, trk in enumerate(cyl)]
                      for c, cyl in enumerate(disk)]
        except (TypeError, KeyError, ValueError, struct.error) as e:
            raise ParseError(f"malformed sector data: {e}") from e
        if not tracks or not tracks[0]:
            raise ParseError("no disk data")
        self._set_tracks(tracks)
        if isinstance(info, dict):
            self.name = info.get("name") or self.name
            self.hash = info.get("hash")
            self.args = info.get("command", "")
        self._scan()
        return self

    @staticmethod
    def _sector_from_json(c: int, h: int, sd: dict) -> Sector:
        if "l" in sd:
            sid, length, words, error = sd["s"], sd["l"], sd["d"], sd.get("e")
        else:
            sid, length, words, error = (sd["sector"], sd["length"],
                                         sd["data"], sd.get("error"))
        if not isinstance(length, int) or length < 0:
            raise ValueError(f"bad sector length {length!r}")
        if error is not None and not isinstance(error, int):
            raise ValueError(f"bad sector error {error!r}")
        return Sector(c, h, int(sid), bytearray(_unpack_dwords(words, length)),
                      length, error)

    # ── accessors ──────────────────────────────────────────────────

    def get_name(self) -> str:
        return self.name

    def set_args(self, args: str):
        """Record the command line that produced this image."""
        self.args = args

    def get_size(self) -> int:
        return sum(s.length for s in self._sectors())

    @property
    def format_name(self) -> str:
        geo = geometry_for_size(self.get_size())
        return f"PC{geo.kb}K" if geo else "CHS"

    # ── serialisation ──────────────────────────────────────────────

    def get_data(self) -> bytes:
        """Flatten the image to its on-disk byte layout."""
        buf = bytearray()
        for s in self._sectors():
            if len(s.data) != s.length:
                raise DiskImageError(
                    f"sector {s.cylinder}:{s.head}:{s.sector_id} holds "
                    f"{len(s.data)} bytes, expected {s.length}")
            buf += s.data
        return bytes(buf)

    def get_psi(self) -> bytes:
        """Encode the image as a PSI container."""
        return encode_psi([PSISector(s.cylinder, s.head, s.sector_id,
                                     bytes(s.data), s.error)
                           for s in self._sectors()], comment=self.args)

    def get_json(self, hash_func=None, legacy: bool = False,
                 indent: int = 0) -> str:
        """Render the image as JSON.

        *hash_func* (bytes -> str) fingerprints the raw image and each file;
        *legacy* selects the older bare-array schema, which carries no
        image metadata.
        """
        if legacy:
            doc = [[[self._legacy_sector(s) for s in trk] for trk in cyl]
                   for cyl in self.tracks]
        else:
            info = {"type": "CHS", "name": self.name, "format": self.format_name}
            if hash_func is not None:
                info["hash"] = hash_func(self.get_data())
            elif self.hash:
                info["hash"] = self.hash
            info.update({
                "cylinders": self.cylinders,
                "heads": self.heads,
                "trackDefault": self.sectors_per_track,
                "sectorDefault": SECTOR_SIZE,
                "diskSize": self.get_size(),
                "version": JSON_VERSION,
            })
            if self.args:
                info["command"] = self.args
            doc = {
                "imageInfo": info,
                "volTable": self._vol_table(),
                "fileTable": self._file_table(hash_func),
                "diskData": [[[self._json_sector(s) for s in trk] for trk in cyl]
                             for cyl in self.tracks],
            }
        if indent:
            return json.dumps(doc, indent=indent)
        return json.dumps(doc, separators=(",", ":"))

    @staticmethod
    def _json_sector(s: Sector) -> dict:
        sd = {"c": s.cylinder, "h": s.head, "s": s.sector_id, "l": s.length,
              "d": _pack_dwords(s.data)}
        if s.error is not None:
            sd["e"] = s.error
        return sd

    @staticmethod
    def _legacy_sector(s: Sector) -> dict:
        sd = {"sector": s.sector_id, "length": s.length,
              "data": _pack_dwords(s.data)}
        if s.error is not None:
            sd["error"] = s.error
        return sd

    def _vol_table(self) -> list[dict]:
        if self.bpb is None:
            return []
        return [{
            "iVolume": 0,
            "label": self.label or "",
            "media": f"0x{self.bpb.media:02X}",
            "clusterSize": self.bpb.cluster_bytes,
            "clusters": self.bpb.clusters,
            "rootEntries": self.bpb.root_entries,
            "freeBytes": self.free_bytes,
        }]

    def _file_table(self, hash_func=None) -> list[dict]:
        table = []
        for f in self.files:
            item = {"path": f.path, "attr": f"0x{f.attr:02x}",
                    "date": _date_str(f.date), "size": f.size}
            if hash_func is not None and not f.is_dir:
                item["hash"] = hash_func(f.data)
            table.append(item)
        return table

    # ── inspection ─────────────────────────────────────────────────

    def get_file_manifest(self, hash_func=None) -> list[dict]:
        """One dict per file or directory, in directory traversal order.

        Directories never carry a ``hash``.
        """
        items = []
        for f in self.files:
            item = {"name": f.name, "path": f.path, "attr": f.attr,
                    "size": f.size, "date": _date_str(f.date)}
            if hash_func is not None and not f.is_dir:
                item["hash"] = hash_func(f.data)
            items.append(item)
        return items

    def get_file_listing(self, volume: int = -1, depth: int = 0) -> str:
        """DOS-style DIR listing of the volume.

        *volume* -1 lists every volume (there is at most one); *depth* > 0
        stops descending at that many directory levels.
        """
        if self.bpb is None or volume not in (-1, 0):
            return ""
        dirs: dict[str, list[FileInfo]] = {"": []}
        dir_info: dict[str, FileInfo] = {}
        for f in self.files:
            dirs.setdefault(f.parent, []).append(f)
            if f.is_dir:
                dirs.setdefault(f.path, [])
                dir_info[f.path] = f

        if self.label:
            lines = [f" Volume in drive A is {self.label}"]
        else:
            lines = [" Volume in drive A has no label"]
        for path, entries in dirs.items():
            if depth and path.count("\\") >= depth:
                continue
            lines += ["", f" Directory of A:\\{path[1:]}", ""]
            rows = list(entries)
            if path:
                me = dir_info[path]
                rows = [FileInfo(path, ".", me.attr, me.date, -1),
                        FileInfo(path, "..", me.attr, me.date, -1)] + rows
            for f in rows:
                lines.append(self._listing_row(f))
            total = sum(f.size for f in entries if not f.is_dir)
            lines.append(f"{len(rows):>9} file(s) {total:>9} bytes")
        lines.append(f"{self.free_bytes:>26} bytes free")
        return "\n".join(lines) + "\n"

    @staticmethod
    def _listing_row(f: FileInfo) -> str:
        if f.name in (".", ".."):
            base, ext = f.name, ""
        else:
            base, _, ext = f.name.partition(".")
        size = "<DIR>    " if f.is_dir else f"{f.size:>9}"
        return f"{base:<8} {ext:<3} {size}  {_dos_date(f.date)}".rstrip()
