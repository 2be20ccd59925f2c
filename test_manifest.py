#!/usr/bin/env python3
"""Tests for per-file manifests."""

import unittest
from datetime import datetime

from diskimage import DiskImage
from fatfs import ATTR_SUBDIR
from filetree import FileRecord
from hashing import get_hash
from manifest import ManifestEntry, ManifestLedger, build_manifest, format_entry

WHEN = datetime(1987, 4, 2, 9, 30, 0)


def _file(name, data):
    return FileRecord(name, name, WHEN, 0, len(data), data)


def _dir(name, files):
    return FileRecord(name, name, WHEN, ATTR_SUBDIR, -1, b"", files)


def _disk():
    records = [
        _file("AUTOEXEC.BAT", b"@ECHO OFF\r\n"),
        _dir("DOCS", [_file("A.TXT", b"a"), _dir("OLD", [_file("B.TXT", b"b")])]),
        _file("COMMAND.COM", bytes(4000)),
    ]
    return DiskImage("sample").build_from_files(records)


class TestBuildManifest(unittest.TestCase):

    def test_files_only_in_traversal_order(self):
        """One entry per file, none for directories, pre-order."""
        entries = build_manifest(_disk())
        self.assertEqual([e.path for e in entries],
                         ["\\AUTOEXEC.BAT", "\\DOCS\\A.TXT",
                          "\\DOCS\\OLD\\B.TXT", "\\COMMAND.COM"])

    def test_digests(self):
        entries = build_manifest(_disk())
        self.assertEqual(entries[0].digest, get_hash(b"@ECHO OFF\r\n"))
        self.assertEqual(entries[-1].digest, get_hash(bytes(4000)))
        self.assertEqual(entries[-1].size, 4000)
        self.assertEqual(entries[0].date, "1987-04-02 09:30:00")

    def test_custom_hash(self):
        entries = build_manifest(_disk(), lambda data: f"len{len(data)}")
        self.assertEqual(entries[-1].digest, "len4000")

    def test_empty_disk(self):
        disk = DiskImage().build_from_buffer(bytes(163840))
        self.assertEqual(build_manifest(disk), [])


class TestFormat(unittest.TestCase):

    def test_line(self):
        entry = ManifestEntry("0123abcd", "A.TXT", "1987-04-02 09:30:00", "\\DOCS\\A.TXT")
        self.assertEqual(format_entry(entry, "/diskettes/pcx86/x/X.json"),
                         "0123abcd  A.TXT         1987-04-02 09:30:00  "
                         "/diskettes/pcx86/x/X.json:\\DOCS\\A.TXT")

    def test_no_source(self):
        entry = ManifestEntry("ff", "LONGNAME.EXT", "", "\\LONGNAME.EXT")
        self.assertEqual(format_entry(entry), "ff  LONGNAME.EXT    \\LONGNAME.EXT")


class TestLedger(unittest.TestCase):

    def test_concatenates_without_dedup(self):
        ledger = ManifestLedger()
        disk = _disk()
        ledger.add("one.json", disk)
        ledger.add("two.json", disk)
        self.assertEqual(ledger.manifests, 2)
        self.assertEqual(len(ledger), 8)
        lines = ledger.lines()
        self.assertTrue(lines[0].endswith("one.json:\\AUTOEXEC.BAT"))
        self.assertTrue(lines[4].endswith("two.json:\\AUTOEXEC.BAT"))


if __name__ == "__main__":
    unittest.main()
