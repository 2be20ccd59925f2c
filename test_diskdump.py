#!/usr/bin/env python3
"""Tests for the diskdump command line."""

import contextlib
import io
import json
import os
import stat
import tempfile
import unittest

import pytest

from diskdump import build_parser, main
from diskio import read_disk
from fatfs import DEFAULT_LABEL


def _run(*argv):
    out = io.StringIO()
    with contextlib.redirect_stdout(out):
        rc = main(list(argv))
    return rc, out.getvalue()


@pytest.mark.cli
class TestDiskDumpCLI(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.src = os.path.join(self.tmp.name, "src")
        os.makedirs(os.path.join(self.src, "SUB"))
        with open(os.path.join(self.src, "README.TXT"), "wb") as f:
            f.write(b"line one\nline two\n")
        with open(os.path.join(self.src, "SUB", "DATA.BIN"), "wb") as f:
            f.write(bytes(range(200)))
        self.json_path = os.path.join(self.tmp.name, "out.json")
        self.img_path = os.path.join(self.tmp.name, "out.img")

    def tearDown(self):
        self.tmp.cleanup()

    def test_no_command(self):
        rc, out = _run()
        self.assertIsNone(rc)
        self.assertIn("usage:", out)

    def test_build_json(self):
        rc, out = _run("build", self.src, "--output", self.json_path,
                       "--label", "default", "--normalize")
        self.assertIsNone(rc)
        self.assertIn("disk size: 163840", out)
        self.assertIn("replaced line endings in README.TXT", out)
        disk = read_disk(self.json_path)
        self.assertEqual(disk.label, DEFAULT_LABEL)
        readme = [f for f in disk.files if f.name == "README.TXT"][0]
        self.assertEqual(readme.data, b"line one\r\nline two\r\n")
        with open(self.json_path) as f:
            info = json.load(f)["imageInfo"]
        self.assertIn("build", info["command"])

    def test_build_target(self):
        _run("build", self.src, "--output", self.img_path, "--target", "720")
        self.assertEqual(os.path.getsize(self.img_path), 720 * 1024)

    def test_read_to_raw_is_read_only(self):
        _run("build", self.src, "--output", self.json_path)
        rc, out = _run("read", self.json_path, "--output", self.img_path)
        self.assertIsNone(rc)
        self.assertIn("writing  ", out)
        with open(self.img_path, "rb") as f:
            self.assertEqual(f.read(), read_disk(self.json_path).get_data())
        self.assertEqual(os.stat(self.img_path).st_mode & 0o222, 0)
        self.assertTrue(stat.S_ISREG(os.stat(self.img_path).st_mode))

    def test_overwrite_guard(self):
        _run("build", self.src, "--output", self.json_path)
        rc, out = _run("build", self.src, "--output", self.json_path)
        self.assertEqual(rc, 1)
        self.assertIn("out.json exists, use --overwrite to replace", out)
        rc, _ = _run("build", self.src, "--output", self.json_path, "--overwrite")
        self.assertIsNone(rc)

    def test_legacy_json(self):
        _run("build", self.src, "--output", self.img_path)
        _run("read", self.img_path, "--output", self.json_path, "--legacy")
        with open(self.json_path) as f:
            self.assertIsInstance(json.load(f), list)
        self.assertEqual(read_disk(self.json_path).get_data(),
                         read_disk(self.img_path).get_data())

    def test_list_and_dump(self):
        _run("build", self.src, "--output", self.img_path, "--label", "TOOLS")
        rc, out = _run("read", self.img_path, "--list", "--dump")
        self.assertIsNone(rc)
        self.assertIn(" Volume in drive A is TOOLS", out)
        self.assertIn(" Directory of A:\\SUB", out)
        self.assertIn("out.img:\\SUB\\DATA.BIN", out)

    def test_read_with_overrides(self):
        _run("build", self.src, "--output", self.img_path)
        _run("read", self.img_path, "--sectorid", "0:0:2:9",
             "--sectorerror", "0:0:3:10", "--output", self.json_path)
        track = read_disk(self.json_path).tracks[0][0]
        self.assertEqual(track[1].sector_id, 9)
        self.assertEqual(track[2].error, 10)

    def test_psi_output(self):
        _run("build", self.src, "--output", self.img_path)
        psi_path = os.path.join(self.tmp.name, "out.psi")
        _run("read", self.img_path, "--output", psi_path)
        self.assertEqual(read_disk(psi_path).get_data(),
                         read_disk(self.img_path).get_data())

    def test_read_missing(self):
        rc, out = _run("read", os.path.join(self.tmp.name, "nope.img"))
        self.assertEqual(rc, 1)
        self.assertIn("error:", out)

    def test_sweep(self):
        os.makedirs(os.path.join(self.tmp.name, "configs", "pcx86"))
        rc, out = _run("sweep", "--root", self.tmp.name, "--checkmanifests")
        self.assertIsNone(rc)
        self.assertIn("0 config(s), 0 manifest(s), 0 file(s)", out)

    def test_sweep_flags(self):
        args = build_parser().parse_args(
            ["sweep", "--checkarchive=DISK.img", "--checkmanifests", "--commit"])
        self.assertEqual(args.checkarchive, "DISK.img")
        self.assertIs(args.checkmanifests, True)
        self.assertTrue(args.commit)
        args = build_parser().parse_args(["sweep", "--checkmanifests=md5"])
        self.assertEqual(args.checkmanifests, "md5")
        self.assertIs(args.checkarchive, False)


if __name__ == "__main__":
    unittest.main()
