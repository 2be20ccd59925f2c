#!/usr/bin/env python3
"""Tests for catalog parsing, listing sync and the collection sweep."""

import contextlib
import io
import json
import os
import tempfile
import unittest
from datetime import datetime

import pytest

from catalog import (
    LISTING_CURRENT, LISTING_MISSING_INDEX, LISTING_NO_SECTION, LISTING_STALE,
    LISTING_UPDATED, CatalogDriver, Diskette, index_path_for, parse_diskettes,
    parse_options, sync_listing,
)
from diskimage import DiskImage
from diskio import write_disk
from filetree import FileRecord
from verifier import RECONCILED

WHEN = datetime(1983, 3, 8, 10, 0, 0)
DISK_PATH = "/diskettes/pcx86/test/DISK.json"


def _disk():
    return DiskImage("DISK").build_from_files([
        FileRecord("", "SAMPLE", WHEN, 0x08),
        FileRecord("A.COM", "A.COM", WHEN, 0, 3, b"\xb4\x4c\xcd"),
        FileRecord("B.TXT", "B.TXT", WHEN, 0, 6, b"hello\n"),
    ])


def _quiet(fn, *args, **kw):
    out = io.StringIO()
    with contextlib.redirect_stdout(out):
        result = fn(*args, **kw)
    return result, out.getvalue()


class TestParseDiskettes(unittest.TestCase):

    def test_nested_objects_and_arrays(self):
        library = {
            "@server": {"path": "/ignored.json"},
            "Operating Systems": {
                "PC DOS 1.00": {"path": "/diskettes/pcx86/sys/dos/PCDOS100.json",
                                "options": "--sectorID=0:0:1:1", "archive": "psi"},
            },
            "Games": [
                {"name": "Zork I", "path": "game/ZORK1.json"},
                {"path": "game/ROGUE.json"},
            ],
        }
        diskettes = parse_diskettes(library)
        self.assertEqual([d.name for d in diskettes],
                         ["PC DOS 1.00", "Zork I", "Games"])
        self.assertEqual(diskettes[0].archive, "psi")
        self.assertEqual(diskettes[0].options, "--sectorID=0:0:1:1")
        self.assertEqual(diskettes[1].path, "/diskettes/pcx86/game/ZORK1.json")
        self.assertIsNone(diskettes[2].archive)

    def test_top_level_diskette(self):
        diskettes = parse_diskettes({"path": "/x/DISK.json"})
        self.assertEqual(diskettes, [Diskette("/x/DISK.json", "DISK")])


class TestParseOptions(unittest.TestCase):

    def test_forms(self):
        opts = parse_options("--sectorID=0:0:1:5 --sectorError 0:0:2 --forceBPB "
                             "--sectorID=1:0:1:2 --suppData='/a b/index.md'")
        self.assertEqual(opts["sectorID"], ["0:0:1:5", "1:0:1:2"])
        self.assertEqual(opts["sectorError"], "0:0:2")
        self.assertIs(opts["forceBPB"], True)
        self.assertEqual(opts["suppData"], "/a b/index.md")

    def test_empty(self):
        self.assertEqual(parse_options(""), {})
        self.assertEqual(parse_options(None), {})


class TestSyncListing(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = self.tmp.name
        self.json_path = os.path.join(self.root, DISK_PATH.lstrip("/"))
        self.index = index_path_for(self.json_path)
        os.makedirs(os.path.dirname(self.index))
        self.diskette = Diskette(DISK_PATH, "Sample Disk")
        self.disk = _disk()

    def tearDown(self):
        self.tmp.cleanup()

    def _write_index(self, text):
        with open(self.index, "w", newline="") as f:
            f.write(text)

    def _read_index(self):
        with open(self.index, newline="") as f:
            return f.read()

    def test_index_location(self):
        self.assertEqual(self.index,
                         os.path.join(self.root, "software/pcx86/test/index.md"))

    def test_dry_run_leaves_index(self):
        text = "# Sample\n\n## Directory of Sample Disk\n\n    old\n\n## Notes\n"
        self._write_index(text)
        status, out = _quiet(sync_listing, self.disk, self.diskette, self.json_path)
        self.assertEqual(status, LISTING_STALE)
        self.assertEqual(self._read_index(), text)
        self.assertIn("out of date", out)

    def test_commit_rewrites_only_section(self):
        """Only the matching section body changes, and a second pass is a no-op."""
        text = ("# Sample\n\n## Directory of Other\n\n    keep me\n\n"
                "## Directory of Sample Disk\n\n    old\n\n## Notes\n\nfooter\n")
        self._write_index(text)
        status, out = _quiet(sync_listing, self.disk, self.diskette,
                             self.json_path, True)
        self.assertEqual(status, LISTING_UPDATED)
        self.assertIn("updated directory listing", out)
        new = self._read_index()
        self.assertIn("    keep me\n", new)
        self.assertNotIn("    old\n", new)
        self.assertIn("     Volume in drive A is SAMPLE\n", new)
        self.assertIn("    A        COM", new)
        self.assertTrue(new.endswith("\n\n## Notes\n\nfooter\n"))
        status, _ = _quiet(sync_listing, self.disk, self.diskette,
                           self.json_path, True)
        self.assertEqual(status, LISTING_CURRENT)
        self.assertEqual(self._read_index(), new)

    def test_section_at_end_of_file(self):
        text = "intro\n## Directory of Sample Disk\n\n    old\n"
        self._write_index(text)
        _quiet(sync_listing, self.disk, self.diskette, self.json_path, True)
        status, _ = _quiet(sync_listing, self.disk, self.diskette,
                           self.json_path, True)
        self.assertEqual(status, LISTING_CURRENT)

    def test_no_section(self):
        self._write_index("# Sample\n\nNo listing here.\n")
        status, out = _quiet(sync_listing, self.disk, self.diskette,
                             self.json_path, True)
        self.assertEqual(status, LISTING_NO_SECTION)
        self.assertIn('warning: no directory listing for "Sample Disk"', out)

    def test_missing_index(self):
        status, out = _quiet(sync_listing, self.disk, self.diskette,
                             os.path.join(self.root, "diskettes/pcx86/none/X.json"))
        self.assertEqual(status, LISTING_MISSING_INDEX)
        self.assertIn("missing index:", out)


@pytest.mark.sweep
class TestCatalogDriver(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = self.tmp.name
        configs = os.path.join(self.root, "configs", "pcx86")
        os.makedirs(configs)
        self.config = os.path.join(configs, "library.json")
        with open(self.config, "w") as f:
            json.dump({"Samples": {
                "Sample Disk": {"path": DISK_PATH},
                "Lost Disk": {"path": "/diskettes/pcx86/test/LOST.json"},
            }}, f)
        self.json_path = os.path.join(self.root, DISK_PATH.lstrip("/"))
        archive = os.path.join(os.path.dirname(self.json_path), "archive")
        os.makedirs(archive)
        disk = _disk()
        _quiet(write_disk, self.json_path, disk)
        with open(os.path.join(archive, "DISK.img"), "wb") as f:
            f.write(disk.get_data())

    def tearDown(self):
        self.tmp.cleanup()

    def test_find_configs(self):
        driver = CatalogDriver(self.root)
        self.assertEqual(driver.find_configs(), [self.config])
        self.assertEqual(CatalogDriver(self.root, "c1pjs").find_configs(), [])

    def test_full_sweep(self):
        """A diskette that fails to load does not stop its siblings."""
        driver = CatalogDriver(self.root, checkarchive=True, checkmanifests=True)
        summary, out = _quiet(driver.run)
        self.assertEqual(summary, "1 config(s), 1 manifest(s), 2 file(s)")
        self.assertTrue(out.rstrip().endswith(summary))
        self.assertIn("error:", out)
        self.assertEqual([r.status for r in driver.results], [RECONCILED])
        self.assertIn(f"manifest for {DISK_PATH} contains 2 file(s)", out)

    def test_diskette_error_isolated(self):
        """An exception from one diskette is reported and the sweep goes on."""
        with open(self.config, "w") as f:
            json.dump({"Samples": {
                "Bad Options": {"path": DISK_PATH, "options": "--suppData='/a b"},
                "Sample Disk": {"path": DISK_PATH},
            }}, f)
        driver = CatalogDriver(self.root, checkmanifests=True)
        summary, out = _quiet(driver.run)
        errors = [line for line in out.splitlines() if line.startswith("error:")]
        self.assertEqual(len(errors), 1)
        self.assertIn(DISK_PATH, errors[0])
        self.assertEqual(driver.ledger.manifests, 1)
        self.assertIn(f"manifest for {DISK_PATH} contains 2 file(s)", out)
        self.assertEqual(summary, "1 config(s), 1 manifest(s), 2 file(s)")
        self.assertTrue(out.rstrip().endswith(summary))

    def test_md5_lines(self):
        driver = CatalogDriver(self.root, checkmanifests="md5")
        _, out = _quiet(driver.run)
        self.assertIn(f"{DISK_PATH}:\\A.COM", out)
        self.assertIn(f"{DISK_PATH}:\\B.TXT", out)
        self.assertEqual(len(driver.ledger), 2)

    def test_no_tasks(self):
        summary, _ = _quiet(CatalogDriver(self.root).run)
        self.assertEqual(summary, "1 config(s), 0 manifest(s), 0 file(s)")

    def test_rebuild(self):
        with open(self.json_path, "rb") as f:
            before = f.read()
        driver = CatalogDriver(self.root, rebuild=True)
        _, out = _quiet(driver.run)
        self.assertIn(f"writing  {DISK_PATH}...", out)
        with open(self.json_path, "rb") as f:
            self.assertEqual(f.read(), before)

    def test_bad_config(self):
        with open(self.config, "w") as f:
            f.write("not json")
        summary, out = _quiet(CatalogDriver(self.root, checkmanifests=True).run)
        self.assertIn("error:", out)
        self.assertEqual(summary, "1 config(s), 0 manifest(s), 0 file(s)")


if __name__ == "__main__":
    unittest.main()
