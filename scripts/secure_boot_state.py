# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Detection of the Secure Boot state and of the active boot chain."""

import logging
from dataclasses import dataclass
from enum import Enum

from boot_entry import BootEntry, parse_boot_entry, parse_efibootmgr_output
from system_queries import SystemQueries

logger = logging.getLogger(__name__)

SHIM_LOADER_NAME = "shim"


class BootChain(Enum):
    """How the firmware hands control to the boot manager."""

    SHIM_MEDIATED = "shim"
    DIRECT_CONTROL = "direct"


class BootStateUnresolvableError(RuntimeError):
    """Raised when the boot entry the system started from cannot be identified."""


@dataclass(frozen=True)
class SecureBootState:
    """SecureBootState describes how the running system was booted.

    Attributes:
        enabled (bool): Whether the firmware reports Secure Boot as active.
        chain (BootChain): Whether the active entry goes through shim.
        boot_entry (BootEntry): The active boot entry.
    """

    enabled: bool
    chain: BootChain
    boot_entry: BootEntry

    def to_dict(self) -> dict:
        """Return a JSON serializable description."""
        return {
            "secureBootEnabled": self.enabled,
            "chain": self.chain.value,
            "partitionId": self.boot_entry.partition_id,
            "loaderPath": self.boot_entry.loader_path,
        }


def decode_secure_boot_flag(data: bytes) -> bool:
    """Decode the SecureBoot variable, whose last byte is 1 when Secure Boot is active."""
    return len(data) > 0 and data[-1] == 1


def classify_boot_chain(descriptor: str) -> BootChain:
    """Classify a boot entry as going through shim or not."""
    if SHIM_LOADER_NAME in descriptor.lower():
        return BootChain.SHIM_MEDIATED
    return BootChain.DIRECT_CONTROL


def probe_secure_boot_state(queries: SystemQueries) -> SecureBootState:
    """Determine the Secure Boot state and the active boot entry.

    Args:
        queries (SystemQueries): Access to firmware variables and efibootmgr.

    Returns:
        SecureBootState: The Secure Boot flag, boot chain and active entry.

    Raises:
        BootStateUnresolvableError: If no boot entry matches BootCurrent.
        MalformedDescriptorError: If the active entry has no usable loader path.
    """
    enabled = decode_secure_boot_flag(queries.secure_boot_variable())
    logger.debug(f"Secure Boot is {'enabled' if enabled else 'disabled'}")

    listing = parse_efibootmgr_output(queries.boot_manager_listing())
    if listing.boot_current is None:
        raise BootStateUnresolvableError("The firmware did not report a BootCurrent entry")

    descriptor = listing.entries.get(listing.boot_current.upper())
    if descriptor is None:
        raise BootStateUnresolvableError(f"No boot entry matches BootCurrent {listing.boot_current}")

    boot_entry = parse_boot_entry(descriptor)
    chain = classify_boot_chain(descriptor)
    logger.info(f"Booted from Boot{listing.boot_current}: {boot_entry.loader_path} ({chain.value})")

    return SecureBootState(enabled=enabled, chain=chain, boot_entry=boot_entry)
