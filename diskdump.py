"""
diskdump.py — command-line front end.

    diskdump build DIR  [--output disk.json] [--label NAME] [--target 360]
    diskdump read DISK  [--list] [--dump] [--output disk.img]
    diskdump sweep      [--root SITE] [--checkarchive[=FILTER]] [--commit]
"""

from __future__ import annotations

import argparse
import os
import sys

from catalog import CatalogDriver
from diskio import read_dir, read_disk, read_file, write_disk
from filetree import MAX_FILES
from manifest import build_manifest, format_entry


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="diskdump",
        description="Convert, list and verify archived diskette images",
    )
    sub = parser.add_subparsers(dest="cmd")

    # Sector metadata overrides, shared by read and sweep
    overrides = argparse.ArgumentParser(add_help=False)
    overrides.add_argument("--sectorid", action="append", default=None,
                           metavar="C:H:S:N",
                           help="Override the ID of the sector at C:H:S")
    overrides.add_argument("--sectorerror", action="append", default=None,
                           metavar="C:H:S[:N]",
                           help="Mark the sector at C:H:S as failing after N bytes")
    overrides.add_argument("--suppdata", default=None, metavar="FILE",
                           help="Supplementary sector data (C:H:S id=N error=N lines)")

    # Output options, shared by build and read
    output = argparse.ArgumentParser(add_help=False)
    output.add_argument("-o", "--output", default=None,
                        help="Output file (.json for JSON, anything else raw)")
    output.add_argument("--overwrite", action="store_true",
                        help="Replace the output file if it exists")
    output.add_argument("--legacy", action="store_true",
                        help="Write the legacy JSON schema")
    output.add_argument("--indent", action="store_true",
                        help="Indent JSON output")
    output.add_argument("--list", action="store_true",
                        help="Print a directory listing")
    output.add_argument("--volume", type=int, default=-1,
                        help="Volume to list (default: all)")
    output.add_argument("--dump", action="store_true",
                        help="Print a manifest line for every file")

    # build — make a disk image from a directory
    p_build = sub.add_parser("build", parents=[output],
                             help="Build a disk image from a directory")
    p_build.add_argument("dir", help="Source directory")
    p_build.add_argument("--normalize", action="store_true",
                         help="Convert line endings of known text files to CRLF")
    p_build.add_argument("--label", default=None,
                         help="Volume label ('none', 'default' or a name; "
                              "default: directory name)")
    p_build.add_argument("--target", type=int, default=0,
                         help="Disk size in KB (default: smallest that fits)")
    p_build.add_argument("--maxfiles", type=int, default=MAX_FILES,
                         help=f"Maximum entries to read; 0 means the "
                         f"default ({MAX_FILES})")

    # read — load an existing image
    p_read = sub.add_parser("read", parents=[output, overrides],
                            help="Read a .img, .psi or .json disk image")
    p_read.add_argument("disk", help="Disk image path")
    p_read.add_argument("--forcebpb", action="store_true",
                        help="Trust the image size over the boot sector's BPB")

    # sweep — run catalog tasks over every configured diskette
    p_sweep = sub.add_parser("sweep", parents=[overrides],
                             help="Check every diskette in the site's configs")
    p_sweep.add_argument("--root", default=".",
                         help="Site root directory (default: .)")
    p_sweep.add_argument("--family", default="pcx86",
                         help="Machine family (default: pcx86)")
    p_sweep.add_argument("--rebuild", action="store_true",
                         help="Rewrite every JSON image")
    p_sweep.add_argument("--checklisting", action="store_true",
                         help="Compare directory listings with index.md")
    p_sweep.add_argument("--checkarchive", nargs="?", const=True, default=False,
                         metavar="FILTER",
                         help="Verify archived images (optionally only matching FILTER)")
    p_sweep.add_argument("--checkmanifests", nargs="?", const=True, default=False,
                         metavar="md5",
                         help="Build file manifests ('md5' prints every file)")
    p_sweep.add_argument("--ignore", default=None,
                         help="Skip archive checks for paths containing this")
    p_sweep.add_argument("--commit", action="store_true",
                         help="Write changes (default is a dry run)")
    p_sweep.add_argument("-v", "--verbose", action="store_true",
                         help="Report every config and diskette")

    return parser


def main(argv: list[str] | None = None):
    if argv is None:
        argv = sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd is None:
        parser.print_help()
        return

    if args.cmd == "sweep":
        driver = CatalogDriver(
            os.path.abspath(args.root), args.family,
            rebuild=args.rebuild, checklisting=args.checklisting,
            checkarchive=args.checkarchive, checkmanifests=args.checkmanifests,
            commit=args.commit, ignore=args.ignore, sector_ids=args.sectorid,
            sector_errors=args.sectorerror, supp_data=args.suppdata,
            verbose=args.verbose)
        driver.run()
        return

    if args.cmd == "build":
        disk = read_dir(args.dir, args.normalize, args.label, args.target,
                        args.maxfiles)
    else:
        supp = None
        if args.suppdata:
            supp = read_file(args.suppdata)
            if supp is None:
                print(f"error: {args.suppdata}: not found")
                return 1
        disk = read_disk(args.disk, args.forcebpb, args.sectorid,
                         args.sectorerror, supp)
    if disk is None:
        return 1

    disk.set_args(" ".join(argv))
    print(f"disk size: {disk.get_size()}")
    if args.list:
        print(disk.get_file_listing(args.volume), end="")
    if args.dump:
        for entry in build_manifest(disk):
            print(format_entry(entry, disk.get_name()))
    if args.output:
        if not write_disk(args.output, disk, args.legacy,
                          2 if args.indent else 0, args.overwrite):
            return 1


if __name__ == "__main__":
    sys.exit(main())
