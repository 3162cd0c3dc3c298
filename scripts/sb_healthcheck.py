# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Secure Boot health check for a boot manager installation.

This tool:
1. Reports whether the system booted with Secure Boot, and whether it booted through shim
2. Looks for a newer shim (with its MokManager) on the ESP and in the distribution's shim package
3. Checks when the locally generated signing certificate expires
4. Checks when the keys enrolled in MOK, db, KEK and PK expire

Examples:
    # Run the checks and print the results
    sudo python sb_healthcheck.py

    # Also save a JSON report
    sudo python sb_healthcheck.py --json-output report.json

    # Offer to install a newer shim if one is found
    sudo python sb_healthcheck.py --update-shim
"""

import argparse
import json
import logging
import pathlib
import platform
import sys
from typing import Callable, List, Optional, Tuple

from boot_entry import MalformedDescriptorError
from cert_expiration import CertificateStatus, ExpirationStatus, ExpirationThresholds, check_certificate_file
from key_listing_audit import KeyListingAudit, audit_key_listing, summarize_audits
from loader_update import (
    DEFAULT_ESP_ROOT,
    DEFAULT_SEARCH_ROOTS,
    LoaderNotFoundError,
    apply_loader_update,
    read_sbat,
    scan_loader_update,
)
from secure_boot_state import BootChain, BootStateUnresolvableError, SecureBootState, probe_secure_boot_state
from system_queries import KeyStore, RealSystemQueries, SystemQueries, SystemQueryError
from validate_schema import REPORT_SCHEMA, validate_json_schema

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_CERT = pathlib.Path("/etc/refind.d/keys/refind_local.crt")

# platform.machine() to the architecture suffix used in EFI binary names
PLATFORM_TAGS = {
    "x86_64": "x64",
    "amd64": "x64",
    "i386": "ia32",
    "i686": "ia32",
    "aarch64": "aa64",
    "arm64": "aa64",
    "armv7l": "arm",
    "riscv64": "riscv64",
}

ConfirmCallback = Callable[[str], bool]


def default_platform_tag() -> str:
    """Return the EFI architecture suffix of the running machine."""
    machine = platform.machine().lower()
    return PLATFORM_TAGS.get(machine, machine)


def ask_yes_no(question: str) -> bool:
    """Ask the operator a yes/no question on the terminal."""
    try:
        answer = input(f"{question} (y/N) ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def check_loader_update(
    state: SecureBootState,
    args: argparse.Namespace,
    confirm: ConfirmCallback
) -> dict:
    """Look for a newer shim and optionally install it.

    Returns:
        dict: The loaderUpdate section of the report.
    """
    result = {
        "checked": False,
        "currentLoader": None,
        "candidates": [],
        "selected": None,
        "sbat": None,
        "installed": False,
        "error": None,
    }

    if state.chain != BootChain.SHIM_MEDIATED:
        logger.info("The system did not boot through shim; skipping the shim update check")
        return result

    try:
        scan = scan_loader_update(state.boot_entry, args.search_roots, args.platform, args.esp)
    except LoaderNotFoundError as e:
        logger.error(f"Unable to check for a shim update: {e}")
        result["error"] = str(e)
        return result

    current_path = scan.current_path
    selected = scan.selected
    result["checked"] = True
    result["currentLoader"] = str(current_path)
    result["candidates"] = [candidate.to_dict() for candidate in scan.candidates]

    if selected is None:
        logger.info(f"No newer shim found for {current_path}")
        return result

    result["selected"] = selected.to_dict()
    result["sbat"] = read_sbat(selected.path)
    logger.warning(f"A newer shim is available: {selected.path} (with {selected.companion.name})")
    if result["sbat"]:
        logger.info(f"SBAT of {selected.path.name}:\n{result['sbat'].strip()}")

    if not args.update_shim:
        logger.info("Run again with --update-shim to install it")
        return result

    if args.yes or confirm(f"Install {selected.path} over {current_path}?"):
        apply_loader_update(selected, current_path, args.platform)
        result["installed"] = True
    else:
        logger.info("Shim update declined")

    return result


def check_local_certificate(path: pathlib.Path, thresholds: ExpirationThresholds) -> Optional[CertificateStatus]:
    """Check the expiration of the locally generated signing certificate."""
    try:
        status = check_certificate_file(path, thresholds)
    except ValueError as e:
        logger.warning(f"Unable to read local certificate {path}: {e}")
        return None

    if status is None:
        logger.info(f"No local signing certificate at {path}")
    elif status.status == ExpirationStatus.EXPIRED:
        logger.warning(f"Local signing certificate {path} expired on {status.not_after:%Y-%m-%d}")
    elif status.status == ExpirationStatus.EXPIRING_SOON:
        logger.warning(f"Local signing certificate {path} expires on {status.not_after:%Y-%m-%d}")
    else:
        logger.info(f"Local signing certificate {path} is valid until {status.not_after:%Y-%m-%d}")
    return status


def audit_key_stores(
    queries: SystemQueries,
    thresholds: ExpirationThresholds
) -> List[Tuple[KeyListingAudit, Optional[str]]]:
    """Audit every enrolled key store.

    Returns:
        List[Tuple[KeyListingAudit, Optional[str]]]: Each store's audit and the error that prevented
            listing it, if any.
    """
    results = []
    for store in KeyStore:
        try:
            lines = queries.key_listing(store)
        except SystemQueryError as e:
            logger.warning(f"Unable to list {store.label} keys: {e}")
            results.append((KeyListingAudit(store=store.label), str(e)))
            continue

        audit = audit_key_listing(lines, thresholds, store=store.label)
        for record in audit.records:
            if record.status == ExpirationStatus.EXPIRED:
                logger.warning(f"{store.label} key {record.index} ({record.issuer}) expired on {record.not_after:%Y-%m-%d}")
            elif record.status == ExpirationStatus.EXPIRING_SOON:
                logger.warning(f"{store.label} key {record.index} ({record.issuer}) expires on {record.not_after:%Y-%m-%d}")
            else:
                logger.debug(f"{store.label} key {record.index} ({record.issuer}) valid until {record.not_after:%Y-%m-%d}")

        logger.info(
            f"{store.label}: {audit.total} keys, {audit.expired_count} expired, "
            f"{audit.expiring_soon_count} expiring soon"
        )
        results.append((audit, None))
    return results


def run_healthcheck(
    args: argparse.Namespace,
    queries: SystemQueries,
    confirm: ConfirmCallback = ask_yes_no
) -> Tuple[int, Optional[dict]]:
    """Run every check once.

    Args:
        args (argparse.Namespace): The parsed command line.
        queries (SystemQueries): Access to the firmware and key stores.
        confirm (ConfirmCallback): Asks the operator a yes/no question.

    Returns:
        Tuple[int, Optional[dict]]: The exit code and the report (None if the run was aborted).
    """
    thresholds = ExpirationThresholds.capture()

    try:
        state = probe_secure_boot_state(queries)
    except (SystemQueryError, BootStateUnresolvableError, MalformedDescriptorError) as e:
        logger.error(f"Unable to determine the boot chain: {e}")
        return 1, None

    if state.enabled:
        logger.info("Secure Boot is enabled")
    else:
        logger.warning("Secure Boot is disabled")
        if not args.yes and not confirm("Secure Boot is disabled. Continue anyway?"):
            return 1, None

    loader_update = check_loader_update(state, args, confirm)
    local_certificate = check_local_certificate(args.local_cert, thresholds)
    store_results = audit_key_stores(queries, thresholds)
    summary = summarize_audits(audit for audit, _ in store_results)

    report = {
        "analysisTimestamp": thresholds.now.isoformat(),
        "secureBoot": state.to_dict(),
        "loaderUpdate": loader_update,
        "localCertificate": local_certificate.to_dict() if local_certificate else None,
        "keyStores": [{**audit.to_dict(), "error": error} for audit, error in store_results],
        "summary": summary.to_dict(),
    }
    validate_json_schema(report, REPORT_SCHEMA)

    local_expired = local_certificate is not None and local_certificate.status == ExpirationStatus.EXPIRED
    if summary.any_expired or local_expired:
        logger.warning("Expired keys found. Systems may refuse to boot binaries signed with them.")
        return 1, report
    if summary.any_expiring_soon:
        logger.warning("Some keys expire within a year. Plan to replace and re-enroll them.")
    return 0, report


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(
        description="Check the Secure Boot trust chain of a boot manager installation"
    )
    parser.add_argument("--esp", type=pathlib.Path, default=DEFAULT_ESP_ROOT,
                        help=f"Mount point of the EFI System Partition (default: {DEFAULT_ESP_ROOT})")
    parser.add_argument("--search-root", dest="search_roots", type=pathlib.Path, action="append",
                        help="Directory to search for shim updates; may be repeated "
                             f"(default: {', '.join(str(p) for p in DEFAULT_SEARCH_ROOTS)})")
    parser.add_argument("--platform", default=default_platform_tag(),
                        help="EFI architecture suffix, e.g. x64 or aa64 (default: this machine's)")
    parser.add_argument("--local-cert", type=pathlib.Path, default=DEFAULT_LOCAL_CERT,
                        help=f"Locally generated signing certificate (default: {DEFAULT_LOCAL_CERT})")
    parser.add_argument("--json-output", type=pathlib.Path,
                        help="Save the report as JSON to the specified file")
    parser.add_argument("--update-shim", action="store_true",
                        help="Offer to install a newer shim if one is found")
    parser.add_argument("-y", "--yes", action="store_true",
                        help="Answer yes to every question")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable verbose logging")
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse the command line, filling in the default search roots."""
    args = build_parser().parse_args(argv)
    if not args.search_roots:
        args.search_roots = list(DEFAULT_SEARCH_ROOTS)
    return args


def main() -> int:
    """Main entry point for the Secure Boot health check."""
    args = parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(levelname)s: %(message)s")

    try:
        exit_code, report = run_healthcheck(args, RealSystemQueries())
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user")
        return 1
    except OSError as e:
        logger.error(f"Unexpected error: {e}")
        return 1

    if report is not None and args.json_output:
        with open(args.json_output, "w") as f:
            json.dump(report, f, indent=2)
        logger.info(f"Report saved to: {args.json_output}")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
