# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Access to the firmware and key store state of the running system.

Everything the health check learns about the machine goes through SystemQueries so that the
parsing and classification code can be exercised without root, efivarfs or mokutil.
"""

import logging
import os
import pathlib
import subprocess
from enum import Enum
from typing import List, Protocol, runtime_checkable

from efivar_signature_listing import render_key_listing

logger = logging.getLogger(__name__)

EFIVARS_DIR = pathlib.Path("/sys/firmware/efi/efivars")

EFI_GLOBAL_VARIABLE_GUID = "8be4df61-93ca-11d2-aa0d-00e098032b8c"
EFI_IMAGE_SECURITY_DATABASE_GUID = "d719b2cb-3d3a-4596-a3bc-dad00e67656f"
SHIM_LOCK_GUID = "605dab50-e046-4300-abb6-3dd810dd8b23"

SECURE_BOOT_VARIABLE = ("SecureBoot", EFI_GLOBAL_VARIABLE_GUID)

# efivarfs prefixes every variable with its 32 bit attributes
EFIVARFS_ATTRIBUTE_SIZE = 4

# Keep tool output parseable regardless of the operator's locale
COMMAND_ENVIRONMENT = {**os.environ, "LC_ALL": "C"}

# mokutil exits non-zero when a store has no keys, e.g. "MokListRT is empty"
EMPTY_STORE_MARKER = "is empty"


class KeyStore(Enum):
    """The enrolled key stores that are audited, with how to list each one."""

    MOK = ("MOK", "--list-enrolled", "MokListRT", SHIM_LOCK_GUID)
    DB = ("db", "--db", "db", EFI_IMAGE_SECURITY_DATABASE_GUID)
    KEK = ("KEK", "--kek", "KEK", EFI_GLOBAL_VARIABLE_GUID)
    PK = ("PK", "--pk", "PK", EFI_GLOBAL_VARIABLE_GUID)

    def __init__(self, label: str, mokutil_option: str, variable_name: str, vendor_guid: str) -> None:
        self.label = label
        self.mokutil_option = mokutil_option
        self.variable_name = variable_name
        self.vendor_guid = vendor_guid


class SystemQueryError(RuntimeError):
    """Raised when the system cannot be queried."""


class ToolNotInstalledError(SystemQueryError):
    """Raised when a required command line tool is not installed."""


@runtime_checkable
class SystemQueries(Protocol):
    """Protocol for system queries to enable dependency injection for testing."""

    def secure_boot_variable(self) -> bytes:
        """Return the data of the SecureBoot variable."""
        ...

    def boot_manager_listing(self) -> str:
        """Return the output of ``efibootmgr -v``."""
        ...

    def key_listing(self, store: KeyStore) -> List[str]:
        """Return the enrolled key listing of a key store, one line per item."""
        ...


class RealSystemQueries:
    """Real system implementation for production use."""

    def __init__(self, efivars_dir: pathlib.Path = EFIVARS_DIR) -> None:
        """Initialize with the efivarfs mount point to read variables from."""
        self.efivars_dir = efivars_dir

    def _run(self, command: List[str]) -> subprocess.CompletedProcess:
        logger.debug(f"Running: {' '.join(command)}")
        try:
            return subprocess.run(
                command,
                capture_output=True,
                text=True,
                env=COMMAND_ENVIRONMENT,
                check=False,
            )
        except FileNotFoundError as e:
            raise ToolNotInstalledError(f"{command[0]} is not installed") from e

    def read_variable(self, name: str, guid: str) -> bytes:
        """Read a UEFI variable from efivarfs, without its attribute bytes.

        Raises:
            SystemQueryError: If the variable does not exist or cannot be read.
        """
        path = self.efivars_dir / f"{name}-{guid}"
        try:
            data = path.read_bytes()
        except OSError as e:
            raise SystemQueryError(f"Unable to read UEFI variable {name}: {e}") from e
        return data[EFIVARFS_ATTRIBUTE_SIZE:]

    def secure_boot_variable(self) -> bytes:
        """Return the data of the SecureBoot variable."""
        return self.read_variable(*SECURE_BOOT_VARIABLE)

    def boot_manager_listing(self) -> str:
        """Return the output of ``efibootmgr -v``."""
        result = self._run(["efibootmgr", "-v"])
        if result.returncode != 0:
            raise SystemQueryError(f"efibootmgr failed with exit code {result.returncode}: {result.stderr.strip()}")
        return result.stdout

    def key_listing(self, store: KeyStore) -> List[str]:
        """Return the key listing from mokutil, or from the raw variable if mokutil is missing."""
        try:
            result = self._run(["mokutil", store.mokutil_option])
        except ToolNotInstalledError:
            logger.info(f"mokutil not found, reading {store.variable_name} directly")
            return render_key_listing(self.read_variable(store.variable_name, store.vendor_guid))

        if result.returncode != 0:
            if EMPTY_STORE_MARKER in result.stdout + result.stderr:
                return []
            raise SystemQueryError(
                f"mokutil {store.mokutil_option} failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}"
            )
        return result.stdout.splitlines()
