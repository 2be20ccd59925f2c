"""
psi.py — PSI sector-image container.

A PSI file is a stream of chunks; each chunk carries per-sector metadata
(ID numbers, read errors) that a flat .img cannot express.

Chunk layout:
    +0   id[4]         ASCII tag
    +4   size[4]       u32 BE
    +8   data[size]
    +..  crc[4]        u32 BE over id + size + data

Chunks:
    "PSI "   format[2] u16 BE (0), encoding[2] u16 BE
    "TEXT"   free-form comment
    "SECT"   cyl[2] u16 BE, head[1], sector[1], size[2] u16 BE, flags[1], fill[1]
    "DATA"   payload of the preceding SECT
    "END "   empty, terminates the stream

SECT flags:
    0x01   compressed: no DATA chunk follows, every byte equals *fill*
    0x08   data CRC error: the sector cannot be read back cleanly
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

# ── Constants ──────────────────────────────────────────────────────────

MAGIC = b"PSI "
CHUNK_SECT = b"SECT"
CHUNK_DATA = b"DATA"
CHUNK_TEXT = b"TEXT"
CHUNK_END = b"END "

FORMAT_VERSION = 0
ENCODING_MFM_DD = 0x0200

FLAG_COMPRESSED = 0x01
FLAG_CRC_DATA = 0x08

CRC_POLY = 0x1EDC6F41


class PSIError(ValueError):
    """Malformed or truncated PSI stream."""


@dataclass
class PSISector:
    """One sector as recorded in the container, in stream order."""
    cylinder: int
    head: int
    sector_id: int
    data: bytes
    error: int | None = None


# ── CRC ────────────────────────────────────────────────────────────────

def psi_crc(data: bytes | bytearray, crc: int = 0) -> int:
    """MSB-first CRC-32 (poly 0x1EDC6F41, init 0) used by PSI chunks."""
    for b in data:
        crc ^= b << 24
        for _ in range(8):
            if crc & 0x80000000:
                crc = ((crc << 1) ^ CRC_POLY) & 0xFFFFFFFF
            else:
                crc = (crc << 1) & 0xFFFFFFFF
    return crc


def _chunk(tag: bytes, payload: bytes = b"") -> bytes:
    head = tag + struct.pack(">I", len(payload))
    return head + payload + struct.pack(">I", psi_crc(head + payload))


# ── Decoding ───────────────────────────────────────────────────────────

def _chunks(buf: bytes | bytearray):
    """Yield (tag, payload) pairs, checking each chunk's CRC."""
    pos = 0
    while pos < len(buf):
        if pos + 8 > len(buf):
            raise PSIError(f"truncated chunk header at offset {pos}")
        tag = bytes(buf[pos : pos + 4])
        size = struct.unpack_from(">I", buf, pos + 4)[0]
        end = pos + 8 + size
        if end + 4 > len(buf):
            raise PSIError(f"truncated {tag!r} chunk at offset {pos}")
        stored = struct.unpack_from(">I", buf, end)[0]
        if psi_crc(buf[pos:end]) != stored:
            raise PSIError(f"CRC mismatch in {tag!r} chunk at offset {pos}")
        yield tag, bytes(buf[pos + 8 : end])
        pos = end + 4


def decode_psi(buf: bytes | bytearray) -> list[PSISector]:
    """Decode a PSI stream into its sectors, in stream order."""
    if bytes(buf[0:4]) != MAGIC:
        raise PSIError("missing PSI header")
    sectors: list[PSISector] = []
    pending: tuple[PSISector, int] | None = None
    ended = False
    for tag, payload in _chunks(buf):
        if tag == MAGIC:
            if len(payload) < 4:
                raise PSIError("short PSI header")
        elif tag == CHUNK_SECT:
            if pending is not None:
                raise PSIError("SECT chunk without DATA")
            if len(payload) < 8:
                raise PSIError("short SECT chunk")
            cyl, head, sec, size, flags, fill = struct.unpack_from(">HBBHBB", payload)
            error = 0 if flags & FLAG_CRC_DATA else None
            if flags & FLAG_COMPRESSED:
                sectors.append(PSISector(cyl, head, sec, bytes([fill]) * size, error))
            else:
                pending = (PSISector(cyl, head, sec, b"", error), size)
        elif tag == CHUNK_DATA:
            if pending is None:
                raise PSIError("DATA chunk without SECT")
            sector, size = pending
            if len(payload) != size:
                raise PSIError(f"sector {sector.cylinder}:{sector.head}:{sector.sector_id} "
                               f"has {len(payload)} bytes, expected {size}")
            sector.data = payload
            sectors.append(sector)
            pending = None
        elif tag == CHUNK_END:
            ended = True
            break
    if pending is not None:
        raise PSIError("stream ended inside a sector")
    if not ended:
        raise PSIError("missing END chunk")
    return sectors


# ── Encoding ───────────────────────────────────────────────────────────

def encode_psi(sectors: list[PSISector], comment: str = "") -> bytes:
    """Encode *sectors* (in order) as a PSI stream."""
    out = [_chunk(MAGIC, struct.pack(">HH", FORMAT_VERSION, ENCODING_MFM_DD))]
    if comment:
        out.append(_chunk(CHUNK_TEXT, comment.encode("utf-8")))
    for s in sectors:
        flags = FLAG_CRC_DATA if s.error is not None else 0
        data = bytes(s.data)
        fill = data[0] if data else 0
        if data and data == bytes([fill]) * len(data):
            flags |= FLAG_COMPRESSED
        out.append(_chunk(CHUNK_SECT, struct.pack(
            ">HBBHBB", s.cylinder, s.head, s.sector_id, len(data), flags, fill)))
        if not flags & FLAG_COMPRESSED:
            out.append(_chunk(CHUNK_DATA, data))
    out.append(_chunk(CHUNK_END))
    return b"".join(out)
