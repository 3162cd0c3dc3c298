# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Unit tests for sb_healthcheck.py."""
import os
import pathlib
from datetime import datetime, timezone
from typing import Dict, List

import jsonschema
import pytest
from loader_update import DEFAULT_SEARCH_ROOTS
from sb_healthcheck import parse_args, run_healthcheck
from system_queries import KeyStore, SystemQueryError
from validate_schema import REPORT_SCHEMA, validate_json_schema

GUID = "d244b70f-38d8-4330-86ae-7387f52e23bd"
T0 = 1_700_000_000

VALID_KEY = ["[key 1]", "Issuer: CN=Valid CA", "Not After : Jan 1 00:00:00 2090 GMT"]
EXPIRED_KEY = ["[key 1]", "Issuer: CN=Expired CA", "Not After : Oct 19 18:41:20 2011 GMT"]


class FakeSystemQueries:
    """In-memory system queries."""

    def __init__(self, secure_boot: bytes, boot_current: str, listings: Dict[KeyStore, List[str]]) -> None:
        self.secure_boot = secure_boot
        self.boot_current = boot_current
        self.listings = listings

    def secure_boot_variable(self) -> bytes:
        return self.secure_boot

    def boot_manager_listing(self) -> str:
        return (
            f"BootCurrent: {self.boot_current}\n"
            "BootOrder: 0001,0000\n"
            f"Boot0000* rEFInd\tHD(1,GPT,{GUID},0x800,0x100000)/File(\\EFI\\refind\\refind_x64.efi)\n"
            f"Boot0001* rEFInd (shim)\tHD(1,GPT,{GUID},0x800,0x100000)/File(\\EFI\\refind\\shimx64.efi)\n"
        )

    def key_listing(self, store: KeyStore) -> List[str]:
        if store not in self.listings:
            raise SystemQueryError(f"mokutil {store.mokutil_option} failed")
        return self.listings[store]


def make_file(path: pathlib.Path, timestamp: int, content: bytes) -> None:
    """Create a file with a given modification time."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    os.utime(path, (timestamp, timestamp))


@pytest.fixture
def system(tmp_path: pathlib.Path) -> pathlib.Path:
    """Create an ESP with an installed shim and a shim package with a newer one."""
    make_file(tmp_path / "esp" / "EFI" / "refind" / "shimx64.efi", T0, b"old shim")
    make_file(tmp_path / "esp" / "EFI" / "refind" / "mmx64.efi", T0, b"old mokmanager")
    make_file(tmp_path / "esp" / "EFI" / "refind" / "refind_x64.efi", T0, b"refind")
    make_file(tmp_path / "shim" / "shimx64.efi", T0 + 60, b"new shim")
    make_file(tmp_path / "shim" / "mmx64.efi", T0 + 60, b"new mokmanager")
    return tmp_path


def arguments(root: pathlib.Path, *extra: str) -> list:
    """Build a command line pointing at the test system."""
    return [
        "--esp", str(root / "esp"),
        "--search-root", str(root / "esp"),
        "--search-root", str(root / "shim"),
        "--platform", "x64",
        "--local-cert", str(root / "keys" / "refind_local.crt"),
        *extra,
    ]


def all_valid() -> Dict[KeyStore, List[str]]:
    """Return listings where every store has one valid key."""
    return {store: VALID_KEY for store in KeyStore}


def test_parse_args_defaults() -> None:
    """Test that default search roots are used when none are given."""
    args = parse_args([])
    assert args.search_roots == DEFAULT_SEARCH_ROOTS
    assert not args.update_shim


def test_healthy_system(system: pathlib.Path) -> None:
    """Test a run that finds a shim update and only valid keys."""
    queries = FakeSystemQueries(b"\x01", "0001", all_valid())

    exit_code, report = run_healthcheck(parse_args(arguments(system)), queries, confirm=lambda q: False)

    assert exit_code == 0
    assert report["secureBoot"]["chain"] == "shim"
    assert report["loaderUpdate"]["checked"]
    assert report["loaderUpdate"]["selected"]["path"] == str(system / "shim" / "shimx64.efi")
    assert not report["loaderUpdate"]["installed"]
    assert report["localCertificate"] is None
    assert [s["store"] for s in report["keyStores"]] == ["MOK", "db", "KEK", "PK"]
    assert report["summary"] == {"total": 4, "expired": 0, "expiringSoon": 0}
    assert (system / "esp" / "EFI" / "refind" / "shimx64.efi").read_bytes() == b"old shim"
    validate_json_schema(report, REPORT_SCHEMA)


def test_expired_key_fails(system: pathlib.Path) -> None:
    """Test that an expired enrolled key makes the run fail but still produces a report."""
    listings = all_valid()
    listings[KeyStore.DB] = EXPIRED_KEY + ["[key 2]", "Issuer: CN=Valid CA", "Not After : Jan 1 00:00:00 2090 GMT"]
    queries = FakeSystemQueries(b"\x01", "0001", listings)

    exit_code, report = run_healthcheck(parse_args(arguments(system)), queries, confirm=lambda q: False)

    assert exit_code == 1
    db = report["keyStores"][1]
    assert db["total"] == 2
    assert db["expired"] == 1
    assert db["records"][0]["status"] == "expired"
    assert report["summary"]["expired"] == 1


def test_update_shim_installs_after_confirmation(system: pathlib.Path) -> None:
    """Test that a confirmed update replaces the shim and MokManager and keeps backups."""
    questions = []

    def confirm(question: str) -> bool:
        questions.append(question)
        return True

    queries = FakeSystemQueries(b"\x01", "0001", all_valid())
    exit_code, report = run_healthcheck(parse_args(arguments(system, "--update-shim")), queries, confirm=confirm)

    refind_dir = system / "esp" / "EFI" / "refind"
    assert exit_code == 0
    assert report["loaderUpdate"]["installed"]
    assert len(questions) == 1
    assert (refind_dir / "shimx64.efi").read_bytes() == b"new shim"
    assert (refind_dir / "mmx64.efi").read_bytes() == b"new mokmanager"
    assert (refind_dir / "shimx64-backup.efi").read_bytes() == b"old shim"


def test_update_shim_declined(system: pathlib.Path) -> None:
    """Test that a declined update leaves the ESP untouched."""
    queries = FakeSystemQueries(b"\x01", "0001", all_valid())
    _, report = run_healthcheck(parse_args(arguments(system, "--update-shim")), queries, confirm=lambda q: False)

    assert not report["loaderUpdate"]["installed"]
    assert not (system / "esp" / "EFI" / "refind" / "shimx64-backup.efi").exists()


def test_direct_boot_skips_shim_check(system: pathlib.Path) -> None:
    """Test that the shim update check only runs when the system booted through shim."""
    queries = FakeSystemQueries(b"\x01", "0000", all_valid())
    exit_code, report = run_healthcheck(parse_args(arguments(system)), queries, confirm=lambda q: False)

    assert exit_code == 0
    assert report["secureBoot"]["chain"] == "direct"
    assert not report["loaderUpdate"]["checked"]
    assert report["loaderUpdate"]["selected"] is None


def test_missing_current_loader(system: pathlib.Path) -> None:
    """Test that a loader missing from the ESP only skips the update check."""
    (system / "esp" / "EFI" / "refind" / "shimx64.efi").unlink()
    queries = FakeSystemQueries(b"\x01", "0001", all_valid())

    exit_code, report = run_healthcheck(parse_args(arguments(system)), queries, confirm=lambda q: False)

    assert exit_code == 0
    assert not report["loaderUpdate"]["checked"]
    assert "shimx64.efi" in report["loaderUpdate"]["error"]


def test_dangling_loader_symlink_does_not_abort(system: pathlib.Path) -> None:
    """Test that a broken shim symlink in a search root is skipped and the audits still run."""
    os.symlink(system / "nowhere.efi", system / "shim" / "shimia32.efi")
    queries = FakeSystemQueries(b"\x01", "0001", all_valid())

    exit_code, report = run_healthcheck(parse_args(arguments(system)), queries, confirm=lambda q: False)

    assert exit_code == 0
    assert report["loaderUpdate"]["checked"]
    assert report["loaderUpdate"]["error"] is None
    assert [c["path"] for c in report["loaderUpdate"]["candidates"]] == [str(system / "shim" / "shimx64.efi")]
    assert report["loaderUpdate"]["selected"]["path"] == str(system / "shim" / "shimx64.efi")
    assert report["summary"]["total"] == 4
    validate_json_schema(report, REPORT_SCHEMA)


def test_secure_boot_disabled_abort(system: pathlib.Path) -> None:
    """Test that the operator can stop when Secure Boot is disabled."""
    queries = FakeSystemQueries(b"\x00", "0001", all_valid())
    assert run_healthcheck(parse_args(arguments(system)), queries, confirm=lambda q: False) == (1, None)


def test_secure_boot_disabled_continue(system: pathlib.Path) -> None:
    """Test that --yes continues when Secure Boot is disabled."""
    queries = FakeSystemQueries(b"\x00", "0001", all_valid())
    exit_code, report = run_healthcheck(parse_args(arguments(system, "--yes")), queries, confirm=lambda q: False)

    assert exit_code == 0
    assert report["secureBoot"]["secureBootEnabled"] is False


def test_unresolvable_boot_entry(system: pathlib.Path) -> None:
    """Test that an unknown BootCurrent aborts the run."""
    queries = FakeSystemQueries(b"\x01", "0009", all_valid())
    assert run_healthcheck(parse_args(arguments(system)), queries, confirm=lambda q: True) == (1, None)


def test_unlistable_store_reported(system: pathlib.Path) -> None:
    """Test that a store that cannot be listed is reported and the others are still audited."""
    listings = all_valid()
    del listings[KeyStore.PK]
    queries = FakeSystemQueries(b"\x01", "0001", listings)

    exit_code, report = run_healthcheck(parse_args(arguments(system)), queries, confirm=lambda q: False)

    assert exit_code == 0
    pk = report["keyStores"][3]
    assert pk["store"] == "PK"
    assert pk["total"] == 0
    assert "failed" in pk["error"]
    assert report["summary"]["total"] == 3


def test_local_certificate_checked(system: pathlib.Path, certificate_pem) -> None:
    """Test that an expired local signing certificate fails the run."""
    cert_path = system / "keys" / "refind_local.crt"
    cert_path.parent.mkdir()
    cert_path.write_bytes(certificate_pem("Locally generated rEFInd key", datetime(2015, 1, 1, tzinfo=timezone.utc)))
    queries = FakeSystemQueries(b"\x01", "0001", all_valid())

    exit_code, report = run_healthcheck(parse_args(arguments(system)), queries, confirm=lambda q: False)

    assert exit_code == 1
    assert report["localCertificate"]["status"] == "expired"
    assert report["localCertificate"]["subject"] == "CN=Locally generated rEFInd key"


def test_report_schema_rejects_bad_status() -> None:
    """Test that the report schema catches an unknown key status."""
    report = {
        "analysisTimestamp": "2024-01-01T00:00:00+00:00",
        "secureBoot": {"secureBootEnabled": True, "chain": "shim", "partitionId": GUID, "loaderPath": "/EFI/a.efi"},
        "loaderUpdate": {"checked": False, "candidates": [], "selected": None, "installed": False, "error": None},
        "localCertificate": None,
        "keyStores": [{
            "store": "MOK",
            "total": 1,
            "expired": 0,
            "expiringSoon": 0,
            "records": [{"index": "1", "issuer": "CN=x", "notAfter": "2000-01-01", "status": "revoked"}],
            "error": None,
        }],
        "summary": {"total": 1, "expired": 0, "expiringSoon": 0},
    }
    with pytest.raises(jsonschema.exceptions.ValidationError):
        validate_json_schema(report, REPORT_SCHEMA)
