"""
verifier.py — prove a canonical JSON image still reproduces its archive.

For one catalog entry:

    canonical JSON ──load──▶ DiskImage
    archive (.img / .psi / folder) ──read──▶ DiskImage ──JSON──▶ <stem>.tmp.json
    <stem>.tmp.json ──parse──▶ DiskImage ──raw──▶ <stem>.tmp.img

The temporary image must match the archive, and so must the canonical
JSON's own raw form.  A mismatch is reported and the temporary image kept
for inspection.  In commit mode the temporary JSON replaces the canonical
one, even after a mismatch; otherwise it is removed.
"""

from __future__ import annotations

import contextlib
import os
from dataclasses import dataclass

from diskio import (
    compare_disks, display_path, read_dir, read_disk, read_file, write_disk,
)
from gateway import from_json_text, to_json_text, to_raw_buffer

RECONCILED = "reconciled"
FLAGGED = "flagged"
FAILED = "failed"
MISSING = "missing"
SKIPPED = "skipped"

ARCHIVE_FOLDER = "folder"


@dataclass
class VerifyResult:
    json_path: str
    archive_path: str = ""
    status: str = SKIPPED
    promoted: bool = False
    retained: str | None = None


def archive_path_for(json_path: str, kind: str | None = None) -> str:
    """Where the archived original of *json_path* lives.

    ``dir/NAME.json`` maps to ``dir/archive/NAME.img``, or to
    ``archive/NAME.img`` beside a ``disks`` folder.  *kind* replaces the
    extension; ``folder`` yields a directory path ending in a separator.
    """
    folder = os.path.dirname(json_path)
    if os.path.basename(folder) == "disks":
        archive_dir = os.path.normpath(os.path.join(folder, "..", "archive"))
    else:
        archive_dir = os.path.join(folder, "archive")
    stem = os.path.basename(json_path)
    if stem.lower().endswith(".json"):
        stem = stem[:-5]
    if kind == ARCHIVE_FOLDER:
        return os.path.join(archive_dir, stem) + os.sep
    return os.path.join(archive_dir, f"{stem}.{kind or 'img'}")


@contextlib.contextmanager
def scratch_files(*paths: str):
    """Remove *paths* on exit, except those added to the yielded set."""
    keep: set[str] = set()
    try:
        yield keep
    finally:
        for path in paths:
            if path in keep or not os.path.exists(path):
                continue
            try:
                os.remove(path)
            except OSError as e:
                print(f"warning: {path}: {e.strerror or e}")


def _option(options: dict | None, key: str):
    value = (options or {}).get(key)
    return None if isinstance(value, bool) else value


class ArchiveVerifier:
    """Rebuilds archived images and checks them against their JSON twins.

    Overrides given here apply to every entry and win over the per-entry
    ``sectorID``, ``sectorError`` and ``suppData`` options.
    """

    def __init__(self, commit: bool = False, archive_filter: str | None = None,
                 ignore: str | None = None, sector_ids=None, sector_errors=None,
                 supp_data: str | None = None, root_dir: str = "",
                 work_dir: str | None = None):
        self.commit = commit
        self.archive_filter = archive_filter
        self.ignore = ignore
        self.sector_ids = sector_ids
        self.sector_errors = sector_errors
        self.supp_data = supp_data
        self.root_dir = root_dir
        self.work_dir = work_dir

    def _site_path(self, path: str) -> str:
        if self.root_dir:
            return os.path.join(self.root_dir, path.lstrip("/"))
        return path

    def verify(self, json_path: str, options: dict | None = None,
               archive: str | None = None, extra_args: str = "") -> VerifyResult:
        result = VerifyResult(json_path)
        if not json_path.lower().endswith(".json"):
            return result
        if self.ignore and self.ignore in json_path:
            return result
        archive_path = archive_path_for(json_path, archive)
        result.archive_path = archive_path
        if self.archive_filter and self.archive_filter not in archive_path:
            return result

        canonical = read_disk(json_path)
        if canonical is None:
            result.status = FAILED
            return result
        if not os.path.exists(archive_path):
            print(f"warning: missing archive {display_path(archive_path, self.root_dir)}")
            result.status = MISSING
            return result

        print(f"reading  {display_path(archive_path, self.root_dir)}...")
        name = os.path.basename(archive_path.rstrip(os.sep))
        if archive_path.endswith(os.sep):
            command = f"--dir {name}"
            rebuilt = read_dir(archive_path)
        else:
            command = f"--disk {name}"
            supp = self.supp_data or _option(options, "suppData")
            rebuilt = read_disk(
                archive_path, False,
                self.sector_ids or _option(options, "sectorID"),
                self.sector_errors or _option(options, "sectorError"),
                read_file(self._site_path(supp)) if supp else None)
        if rebuilt is None:
            result.status = FAILED
            return result

        stem = name.split(".", 1)[0]
        work_dir = self.work_dir or os.path.dirname(json_path)
        tmp_json = os.path.join(work_dir, f"{stem}.tmp.json")
        tmp_img = os.path.join(work_dir, f"{stem}.tmp.img")
        rebuilt.set_args(f"{command} --output {stem}.json{extra_args}")

        with scratch_files(tmp_json, tmp_img) as keep:
            if not write_disk(tmp_json, rebuilt, overwrite=True,
                              root_dir=self.root_dir):
                result.status = FAILED
                return result
            if not archive_path.endswith(os.sep):
                matched = self._compare(rebuilt, canonical, json_path,
                                        archive_path, tmp_img)
                if matched is None:
                    result.status = FAILED
                    return result
                if not matched:
                    keep.add(tmp_img)
                    result.retained = tmp_img
            result.status = FLAGGED if result.retained else RECONCILED
            if self.commit:
                try:
                    os.replace(tmp_json, json_path)
                except OSError as e:
                    print(f"error: {json_path}: {e.strerror or e}")
                    result.status = FAILED
                    return result
                result.promoted = True
        return result

    def _compare(self, rebuilt, canonical, json_path: str,
                 archive_path: str, tmp_img: str) -> bool | None:
        """Write the round-tripped image to *tmp_img* and check it.

        Returns None when the round trip itself fails.
        """
        text = to_json_text(rebuilt)
        twin = from_json_text(text, rebuilt.get_name()) if text else None
        if twin is None or not write_disk(tmp_img, twin, overwrite=True,
                                          root_dir=self.root_dir):
            return None
        if archive_path.lower().endswith(".img"):
            reference = read_file(archive_path, None)
            rebuilt_ok = compare_disks(tmp_img, archive_path)
        else:
            reference = to_raw_buffer(rebuilt)
            rebuilt_ok = reference is not None and read_file(tmp_img, None) == reference
        shown = display_path(archive_path, self.root_dir)
        if not rebuilt_ok:
            print(f"warning: {shown} unsuccessfully rebuilt")
            return False
        if to_raw_buffer(canonical) != reference:
            print(f"warning: {shown} does not match "
                  f"{display_path(json_path, self.root_dir)}")
            return False
        return True
