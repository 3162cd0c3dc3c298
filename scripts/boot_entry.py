# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Parsing of firmware boot entries as reported by efibootmgr.

A boot entry descriptor is the device path text of one ``BootXXXX`` variable, e.g.::

    ubuntu	HD(1,GPT,d244b70f-38d8-4330-86ae-7387f52e23bd,0x800,0x100000)/File(\\EFI\\ubuntu\\shimx64.efi)

Only the partition GUID and the loader file path are needed to inspect the boot chain.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

PARTITION_ID_PATTERN = re.compile(r"GPT,([^,]*),")
LOADER_PATH_PATTERN = re.compile(r"File\(([^)]*)\)")
BOOT_ENTRY_LINE_PATTERN = re.compile(r"^Boot([0-9A-Fa-f]{4})(\*)?\s+(.*)$")


class MalformedDescriptorError(ValueError):
    """Raised when a boot entry descriptor has no usable partition or loader path."""


@dataclass(frozen=True)
class BootEntry:
    """BootEntry represents the loader referenced by one firmware boot entry.

    Attributes:
        partition_id (str): The GPT partition GUID holding the loader.
        loader_path (str): The loader path relative to the partition root, using forward slashes.
        loader_filename (str): The final segment of loader_path.
        loader_directory (str): Everything in loader_path before the filename.
        description (str): The raw descriptor text the entry was parsed from.
    """

    partition_id: str
    loader_path: str
    loader_filename: str
    loader_directory: str
    description: str


@dataclass
class BootManagerListing:
    """The parsed output of ``efibootmgr -v``.

    Attributes:
        boot_current (Optional[str]): The id of the entry the firmware booted, e.g. "0003".
        boot_order (List[str]): Entry ids in boot order.
        entries (Dict[str, str]): Entry id to the entry text (label and device path).
    """

    boot_current: Optional[str] = None
    boot_order: List[str] = field(default_factory=list)
    entries: Dict[str, str] = field(default_factory=dict)


def parse_boot_entry(descriptor: str) -> BootEntry:
    """Parse one boot entry descriptor into a BootEntry.

    Args:
        descriptor (str): The descriptor text, containing ``GPT,<guid>,`` and ``File(<path>)``.

    Returns:
        BootEntry: The parsed entry.

    Raises:
        MalformedDescriptorError: If either marker is missing or the path does not split into a
            non-empty directory and filename.
    """
    partition_match = PARTITION_ID_PATTERN.search(descriptor)
    if partition_match is None:
        raise MalformedDescriptorError(f"No GPT partition found in boot entry: {descriptor!r}")

    path_match = LOADER_PATH_PATTERN.search(descriptor)
    if path_match is None:
        raise MalformedDescriptorError(f"No loader file found in boot entry: {descriptor!r}")

    loader_path = path_match.group(1).strip().replace("\\", "/")
    loader_directory, _, loader_filename = loader_path.rpartition("/")

    if not loader_path or not loader_filename or not loader_directory:
        raise MalformedDescriptorError(f"Unable to split loader path {loader_path!r} into directory and filename")

    return BootEntry(
        partition_id=partition_match.group(1),
        loader_path=loader_path,
        loader_filename=loader_filename,
        loader_directory=loader_directory,
        description=descriptor,
    )


def parse_efibootmgr_output(output_text: str) -> BootManagerListing:
    """Parse ``efibootmgr -v`` output into structured data.

    Args:
        output_text (str): The command output.

    Returns:
        BootManagerListing: The current entry, boot order and all entries.
    """
    listing = BootManagerListing()

    for line in output_text.splitlines():
        line = line.strip()

        if line.startswith("BootCurrent:"):
            listing.boot_current = line.split(":", 1)[1].strip() or None
        elif line.startswith("BootOrder:"):
            order = line.split(":", 1)[1].strip()
            listing.boot_order = [entry.strip() for entry in order.split(",") if entry.strip()]
        else:
            match = BOOT_ENTRY_LINE_PATTERN.match(line)
            if match:
                listing.entries[match.group(1).upper()] = match.group(3)

    logger.debug(f"Found {len(listing.entries)} boot entries, current is {listing.boot_current}")
    return listing
