# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Selection of a newer shim to replace the one the system booted from.

A shim is only useful together with the MokManager built alongside it (``mm<arch>.efi``), so a
candidate is eligible only when that companion sits in the same directory. A newer shim without
its MokManager is reported but never selected.
"""

import fnmatch
import logging
import os
import pathlib
import shutil
from dataclasses import dataclass
from typing import Iterable, List, Optional

import pefile
from boot_entry import BootEntry

logger = logging.getLogger(__name__)

DEFAULT_ESP_ROOT = pathlib.Path("/boot/efi")
DEFAULT_SEARCH_ROOTS = [
    pathlib.Path("/boot/efi"),
    pathlib.Path("/usr/share/shim"),
    pathlib.Path("/usr/lib/shim"),
]

LOADER_NAME_PATTERN = "shim*.efi"
BACKUP_TAG = "-backup"
COMPANION_PREFIX = "mm"
COMPANION_SUFFIX = ".efi"
SBAT_SECTION = ".sbat"


class LoaderNotFoundError(FileNotFoundError):
    """Raised when the currently active loader cannot be found on the ESP."""


@dataclass(frozen=True)
class LoaderCandidate:
    """LoaderCandidate represents one shim binary found on a search root.

    Attributes:
        path (pathlib.Path): The loader file.
        timestamp (int): Modification time in whole seconds.
        directory (pathlib.Path): The directory holding the loader.
        companion (Optional[pathlib.Path]): The MokManager next to the loader, if there is one.
    """

    path: pathlib.Path
    timestamp: int
    directory: pathlib.Path
    companion: Optional[pathlib.Path] = None

    @property
    def has_companion(self) -> bool:
        return self.companion is not None

    def to_dict(self) -> dict:
        """Return a JSON serializable description."""
        return {
            "path": str(self.path),
            "timestamp": self.timestamp,
            "companion": str(self.companion) if self.companion else None,
        }


@dataclass
class LoaderScan:
    """The result of one scan for a shim update.

    Attributes:
        current_path (pathlib.Path): The active loader on the ESP.
        candidates (List[LoaderCandidate]): Every loader newer than the active one, paired or not.
        selected (Optional[LoaderCandidate]): The candidate to install, or None if there is no update.
    """

    current_path: pathlib.Path
    candidates: List[LoaderCandidate]
    selected: Optional[LoaderCandidate]


def companion_name(platform_tag: str) -> str:
    """Return the MokManager filename for a platform, e.g. mmx64.efi."""
    return f"{COMPANION_PREFIX}{platform_tag}{COMPANION_SUFFIX}"


def is_loader_name(name: str) -> bool:
    """Return True for shim binaries that are not backups made by this tool."""
    lowered = name.lower()
    return fnmatch.fnmatchcase(lowered, LOADER_NAME_PATTERN) and BACKUP_TAG not in lowered


def backup_path(path: pathlib.Path) -> pathlib.Path:
    """Return the backup name for a file, e.g. shimx64-backup.efi."""
    return path.with_name(f"{path.stem}{BACKUP_TAG}{path.suffix}")


def file_timestamp(path: pathlib.Path) -> int:
    """Return the modification time of a file in whole seconds."""
    return int(path.stat().st_mtime)


def find_case_insensitive(directory: pathlib.Path, name: str) -> Optional[pathlib.Path]:
    """Find an entry of directory whose name matches name ignoring case."""
    exact = directory / name
    if exact.exists():
        return exact
    try:
        entries = sorted(os.listdir(directory))
    except OSError:
        return None
    for entry in entries:
        if entry.lower() == name.lower():
            return directory / entry
    return None


def resolve_loader_path(esp_root: pathlib.Path, loader_path: str) -> pathlib.Path:
    """Resolve a loader path from a boot entry to a file on the mounted ESP.

    FAT is case-insensitive, so every path segment is matched ignoring case.

    Raises:
        LoaderNotFoundError: If no such file exists.
    """
    current = esp_root
    for segment in loader_path.strip("/").split("/"):
        found = find_case_insensitive(current, segment)
        if found is None:
            raise LoaderNotFoundError(f"Unable to find {loader_path} under {esp_root}")
        current = found

    if not current.is_file():
        raise LoaderNotFoundError(f"{current} is not a file")
    return current


def find_companion(directory: pathlib.Path, platform_tag: str) -> Optional[pathlib.Path]:
    """Return the MokManager in directory, ignoring directories of that name."""
    companion = find_case_insensitive(directory, companion_name(platform_tag))
    if companion is None or companion.is_dir():
        return None
    return companion


def find_loader_candidates(
    search_roots: Iterable[pathlib.Path],
    platform_tag: str,
    newer_than: int = -1
) -> List[LoaderCandidate]:
    """Find every shim under the search roots that is newer than a timestamp.

    Roots and directories are walked in sorted order so repeated scans report candidates in
    the same order.

    Args:
        search_roots (Iterable[pathlib.Path]): Directories to search recursively.
        platform_tag (str): The architecture suffix used by MokManager, e.g. "x64".
        newer_than (int): Only report loaders modified strictly after this time.

    Returns:
        List[LoaderCandidate]: The candidates, with their companion if present.
    """
    candidates = []
    for root in search_roots:
        if not root.is_dir():
            logger.debug(f"Skipping missing search root {root}")
            continue

        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            directory = pathlib.Path(dirpath)
            for filename in sorted(filenames):
                if not is_loader_name(filename):
                    continue
                path = directory / filename
                try:
                    timestamp = file_timestamp(path)
                except OSError as e:
                    logger.warning(f"Skipping unreadable loader {path}: {e}")
                    continue
                if timestamp <= newer_than:
                    continue
                candidates.append(LoaderCandidate(
                    path=path,
                    timestamp=timestamp,
                    directory=directory,
                    companion=find_companion(directory, platform_tag),
                ))
    return candidates


def choose_loader_update(
    candidates: Iterable[LoaderCandidate],
    current_path: pathlib.Path,
    platform_tag: str
) -> Optional[LoaderCandidate]:
    """Pick the newest candidate that has a MokManager.

    Ties keep the candidate seen first. A winner that is the current loader is no update.
    """
    newest = None
    for candidate in candidates:
        if not candidate.has_companion:
            logger.info(
                f"Ignoring {candidate.path}: no {companion_name(platform_tag)} in {candidate.directory}"
            )
            continue
        if newest is None or candidate.timestamp > newest.timestamp:
            newest = candidate

    if newest is None:
        return None
    if str(newest.path).lower() == str(current_path).lower():
        return None
    return newest


def scan_loader_update(
    current: BootEntry,
    search_roots: Iterable[pathlib.Path],
    platform_tag: str,
    esp_root: pathlib.Path = DEFAULT_ESP_ROOT
) -> LoaderScan:
    """Scan the search roots once and select the newest shim that can replace the active one.

    Args:
        current (BootEntry): The active boot entry.
        search_roots (Iterable[pathlib.Path]): Directories to search recursively.
        platform_tag (str): The architecture suffix used by MokManager, e.g. "x64".
        esp_root (pathlib.Path): Where the ESP holding the current loader is mounted.

    Returns:
        LoaderScan: The active loader, every newer candidate and the selected one.

    Raises:
        LoaderNotFoundError: If the active loader is not present under esp_root.
    """
    current_path = resolve_loader_path(esp_root, current.loader_path)
    current_timestamp = file_timestamp(current_path)
    logger.debug(f"Current loader {current_path} modified at {current_timestamp}")

    candidates = find_loader_candidates(search_roots, platform_tag, current_timestamp)
    return LoaderScan(
        current_path=current_path,
        candidates=candidates,
        selected=choose_loader_update(candidates, current_path, platform_tag),
    )


def select_loader_update(
    current: BootEntry,
    search_roots: Iterable[pathlib.Path],
    platform_tag: str,
    esp_root: pathlib.Path = DEFAULT_ESP_ROOT
) -> Optional[LoaderCandidate]:
    """Select the newest shim that can replace the active one.

    Returns:
        Optional[LoaderCandidate]: The newest loader with a MokManager, or None if there is no
            update.

    Raises:
        LoaderNotFoundError: If the active loader is not present under esp_root.
    """
    return scan_loader_update(current, search_roots, platform_tag, esp_root).selected


def read_sbat(path: pathlib.Path) -> Optional[str]:
    """Return the SBAT metadata embedded in a loader, or None if it has none."""
    try:
        pe = pefile.PE(str(path), fast_load=True)
    except pefile.PEFormatError as e:
        logger.debug(f"{path} is not a PE image: {e}")
        return None

    try:
        for section in pe.sections:
            if section.Name.rstrip(b"\x00").decode("ascii", errors="replace") == SBAT_SECTION:
                return section.get_data().rstrip(b"\x00").decode("utf-8", errors="replace")
        return None
    finally:
        pe.close()


def apply_loader_update(candidate: LoaderCandidate, current_path: pathlib.Path, platform_tag: str) -> List[pathlib.Path]:
    """Install a selected shim and its MokManager over the active ones.

    The current loader, and the MokManager beside it if there is one, are first copied to
    ``<stem>-backup<suffix>``. An existing backup is never overwritten, so the oldest known-good
    loader survives repeated updates.

    Args:
        candidate (LoaderCandidate): The selected update, which must have a companion.
        current_path (pathlib.Path): The active loader on the ESP.
        platform_tag (str): The architecture suffix used by MokManager.

    Returns:
        List[pathlib.Path]: The backups of the replaced files, whether written now or kept.
    """
    if not candidate.has_companion:
        raise ValueError(f"{candidate.path} has no {companion_name(platform_tag)} and cannot be installed")

    backups = []
    current_companion = find_companion(current_path.parent, platform_tag)
    for existing in (current_path, current_companion):
        if existing is None:
            continue
        backup = backup_path(existing)
        if backup.exists():
            logger.warning(f"Keeping existing backup {backup}, {existing} is not backed up again")
        else:
            shutil.copy2(existing, backup)
            logger.info(f"Backed up {existing} to {backup}")
        backups.append(backup)

    companion_target = current_companion or current_path.parent / companion_name(platform_tag)
    shutil.copy2(candidate.path, current_path)
    logger.info(f"Installed {candidate.path} as {current_path}")
    if candidate.companion.resolve() != companion_target.resolve():
        shutil.copy2(candidate.companion, companion_target)
        logger.info(f"Installed {candidate.companion} as {companion_target}")

    return backups
