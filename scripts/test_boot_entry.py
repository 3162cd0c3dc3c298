# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Unit tests for boot_entry.py."""
import pytest
from boot_entry import MalformedDescriptorError, parse_boot_entry, parse_efibootmgr_output

GUID = "d244b70f-38d8-4330-86ae-7387f52e23bd"

EFIBOOTMGR_OUTPUT = f"""BootCurrent: 0003
Timeout: 1 seconds
BootOrder: 0003,0000,0001
Boot0000* rEFInd Boot Manager\tHD(1,GPT,{GUID},0x800,0x100000)/File(\\EFI\\refind\\refind_x64.efi)
Boot0001  UEFI OS\tHD(1,GPT,{GUID},0x800,0x100000)/File(\\EFI\\BOOT\\BOOTX64.EFI)..BO
Boot0003* rEFInd via shim\tHD(1,GPT,{GUID},0x800,0x100000)/File(\\EFI\\refind\\shimx64.efi)
"""


def test_parse_boot_entry() -> None:
    """Test that the partition and loader path are extracted and normalized."""
    descriptor = f"ubuntu\tHD(1,GPT,{GUID},0x800,0x100000)/File(\\EFI\\ubuntu\\shimx64.efi)"
    entry = parse_boot_entry(descriptor)

    assert entry.partition_id == GUID
    assert entry.loader_path == "/EFI/ubuntu/shimx64.efi"
    assert entry.loader_filename == "shimx64.efi"
    assert entry.loader_directory == "/EFI/ubuntu"
    assert entry.description == descriptor


def test_parse_boot_entry_forward_slashes_kept() -> None:
    """Test that a path already using forward slashes is accepted."""
    entry = parse_boot_entry(f"HD(1,GPT,{GUID},0x800,0x100000)/File(/EFI/refind/refind_x64.efi)")
    assert entry.loader_path == "/EFI/refind/refind_x64.efi"
    assert entry.loader_filename == "refind_x64.efi"


@pytest.mark.parametrize(
    "descriptor",
    [
        "HD(1,MBR,0x1234,0x800,0x100000)/File(\\EFI\\ubuntu\\shimx64.efi)",
        f"HD(1,GPT,{GUID},0x800,0x100000)",
        f"HD(1,GPT,{GUID},0x800,0x100000)/File()",
        f"HD(1,GPT,{GUID},0x800,0x100000)/File(\\shimx64.efi)",
        f"HD(1,GPT,{GUID},0x800,0x100000)/File(\\EFI\\ubuntu\\)",
        "",
    ],
)
def test_parse_boot_entry_malformed(descriptor: str) -> None:
    """Test that descriptors missing a marker or path component are rejected."""
    with pytest.raises(MalformedDescriptorError):
        parse_boot_entry(descriptor)


def test_parse_efibootmgr_output() -> None:
    """Test parsing the current entry, the boot order and the entries."""
    listing = parse_efibootmgr_output(EFIBOOTMGR_OUTPUT)

    assert listing.boot_current == "0003"
    assert listing.boot_order == ["0003", "0000", "0001"]
    assert sorted(listing.entries) == ["0000", "0001", "0003"]
    assert "shimx64.efi" in listing.entries["0003"]
    assert listing.entries["0000"].startswith("rEFInd Boot Manager")


def test_parse_efibootmgr_output_empty() -> None:
    """Test that empty output gives an empty listing."""
    listing = parse_efibootmgr_output("")
    assert listing.boot_current is None
    assert listing.boot_order == []
    assert listing.entries == {}
