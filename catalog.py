"""
catalog.py — sweep every diskette named in a site's configuration files.

Configuration documents live at <root>/configs/<family>/*.json and nest
diskette objects at any depth:

    {"Games": {"Zork I": {"path": "/diskettes/pcx86/game/zork1/ZORK1.json",
                          "options": "--sectorError=0:0:3:128",
                          "archive": "psi"}}}

For each diskette the requested tasks run in a fixed order: rebuild the
JSON, sync the directory listing in the matching index.md, verify the
archived original, and add the disk to the manifest ledger.
"""

from __future__ import annotations

import glob
import json
import os
import re
import shlex
from dataclasses import asdict, dataclass

from diskimage import DiskImage
from diskio import display_path, read_disk, read_file, read_json, write_disk, write_file
from manifest import ManifestLedger, format_entry
from verifier import ArchiveVerifier, VerifyResult

LISTING_DEPTH = 4
LISTING_INDENT = "    "

# Listing sync outcomes
LISTING_UPDATED = "updated"
LISTING_STALE = "stale"
LISTING_CURRENT = "current"
LISTING_MISSING_INDEX = "missing index"
LISTING_NO_SECTION = "no directory listing"
LISTING_EMPTY = "no listing"


@dataclass
class Diskette:
    path: str
    name: str
    options: str = ""
    archive: str | None = None


def parse_diskettes(library, machine: str = "/pcx86",
                    folder: str = "/diskettes") -> list[Diskette]:
    """Every object with a string ``path`` in *library*, in document order.

    A diskette without a ``name`` is named after its enclosing key.
    Relative paths are rooted at <folder><machine>/; keys starting with
    ``@`` hold metadata and are not searched.
    """
    diskettes: list[Diskette] = []

    def walk(node, key: str):
        if isinstance(node, dict):
            path = node.get("path")
            if isinstance(path, str):
                if not path.startswith("/") and "://" not in path:
                    path = f"{folder}{machine}/{path}"
                name = node.get("name") or key or os.path.splitext(
                    os.path.basename(path))[0]
                diskettes.append(Diskette(path, name, node.get("options") or "",
                                          node.get("archive")))
                return
            for k, v in node.items():
                if not k.startswith("@"):
                    walk(v, k)
        elif isinstance(node, list):
            for v in node:
                walk(v, key)

    walk(library, "")
    return diskettes


def parse_options(options: str | None) -> dict:
    """Split a diskette's option string into a dict.

    ``--key=value`` and ``--key value`` store strings, a bare ``--flag``
    stores True, and repeated keys collect into a list.
    """
    result: dict = {}
    if not options:
        return result
    tokens = shlex.split(options)
    i = 0
    while i < len(tokens):
        token = tokens[i]
        i += 1
        if not token.startswith("--"):
            continue
        key, eq, value = token[2:].partition("=")
        if not eq:
            if i < len(tokens) and not tokens[i].startswith("--"):
                value = tokens[i]
                i += 1
            else:
                value = True
        if key in result:
            prev = result[key]
            result[key] = (prev if isinstance(prev, list) else [prev]) + [value]
        else:
            result[key] = value
    return result


def index_path_for(json_path: str) -> str:
    """The index.md documenting the disk at *json_path*."""
    return os.path.join(
        os.path.dirname(json_path.replace("/diskettes/", "/software/")),
        "index.md")


def sync_listing(disk: DiskImage, diskette: Diskette, json_path: str,
                 commit: bool = False) -> str:
    """Refresh the ``## Directory of <name>`` section of the disk's index.md.

    The section body becomes the disk's listing, indented as a code block.
    The file is only rewritten in commit mode.
    """
    listing = disk.get_file_listing(0, LISTING_DEPTH)
    if not listing:
        return LISTING_EMPTY
    index = index_path_for(json_path)
    text = read_file(index)
    if text is None:
        print(f"\tmissing index: {index}")
        return LISTING_MISSING_INDEX
    pattern = re.compile(r"\n(##+)\s+Directory of " + re.escape(diskette.name)
                         + r"\n([\s\S]*?)\n(\S|$)")
    m = pattern.search(text)
    if m is None:
        print(f"\twarning: no directory listing for \"{diskette.name}\"")
        return LISTING_NO_SECTION

    old = m.group(2)
    body = "\n".join(LISTING_INDENT + line if line.strip() else ""
                     for line in listing.rstrip("\n").split("\n"))
    new = "\n" + body + ("\n" if old.endswith("\n") else "")
    if new == old:
        return LISTING_CURRENT
    if not commit:
        print(f"\tdirectory listing for \"{diskette.name}\" is out of date")
        return LISTING_STALE
    if not write_file(index, text[: m.start(2)] + new + text[m.end(2) :]):
        return LISTING_STALE
    print(f"\tupdated directory listing for \"{diskette.name}\"")
    return LISTING_UPDATED


class CatalogDriver:
    """Runs the requested tasks over every diskette of one machine family.

    *checkarchive* may be a substring that archive paths must contain;
    *checkmanifests* set to ``"md5"`` prints every ledger line.
    """

    def __init__(self, root_dir: str, family: str = "pcx86",
                 rebuild: bool = False, checklisting: bool = False,
                 checkarchive: bool | str = False,
                 checkmanifests: bool | str = False, commit: bool = False,
                 ignore: str | None = None, sector_ids=None,
                 sector_errors=None, supp_data: str | None = None,
                 verbose: bool = False):
        self.root_dir = root_dir
        self.family = family
        self.rebuild = rebuild
        self.checklisting = checklisting
        self.checkarchive = checkarchive
        self.checkmanifests = checkmanifests
        self.commit = commit
        self.verbose = verbose
        self.verifier = ArchiveVerifier(
            commit=commit,
            archive_filter=checkarchive if isinstance(checkarchive, str) else None,
            ignore=ignore, sector_ids=sector_ids, sector_errors=sector_errors,
            supp_data=supp_data, root_dir=root_dir)
        self.ledger = ManifestLedger()
        self.results: list[VerifyResult] = []
        self.configs = 0
        self.manifests = 0
        self.files = 0

    def _site_path(self, path: str) -> str:
        return os.path.join(self.root_dir, path.lstrip("/"))

    def find_configs(self) -> list[str]:
        return sorted(glob.glob(
            os.path.join(self.root_dir, "configs", self.family, "*.json")))

    def summary(self) -> str:
        return (f"{self.configs} config(s), {self.manifests} manifest(s), "
                f"{self.files} file(s)")

    def run(self, configs: list[str] | None = None) -> str:
        """Sweep *configs* (default: every config of the family)."""
        if configs is None:
            configs = self.find_configs()
        for config in configs:
            self.run_config(config)
        summary = self.summary()
        print(summary)
        return summary

    def run_config(self, config: str):
        if self.verbose:
            print(f"reading  {display_path(config, self.root_dir)}...")
        library = read_json(config)
        if library is not None:
            for diskette in parse_diskettes(library, f"/{self.family}"):
                try:
                    self.run_diskette(diskette)
                except Exception as e:
                    print(f"error: {diskette.path}: {e}")
        self.configs += 1

    def run_diskette(self, diskette: Diskette):
        json_path = self._site_path(diskette.path)
        if self.verbose:
            print(f"reading  {diskette.path}...")
        disk = read_disk(json_path)
        if disk is None:
            return
        options = parse_options(diskette.options)
        extra_args = f" {diskette.options}" if diskette.options else ""

        if self.rebuild and json_path.endswith(".json"):
            write_disk(json_path, disk, overwrite=True, root_dir=self.root_dir)

        if self.checklisting:
            sync_listing(disk, diskette, json_path, self.commit)

        if self.checkarchive:
            self.results.append(self.verifier.verify(
                json_path, options, diskette.archive, extra_args))

        if self.checkmanifests:
            entries = self.ledger.add(diskette.path, disk)
            if self.checkmanifests == "md5":
                for entry in entries:
                    print(format_entry(entry, diskette.path))
            elif self.verbose:
                dump = json.dumps([asdict(e) for e in entries], indent=2)
                print(f"manifest for {diskette.path}: {dump}")
            else:
                print(f"manifest for {diskette.path} contains "
                      f"{len(entries)} file(s)")
            self.manifests += 1
            self.files += len(entries)
