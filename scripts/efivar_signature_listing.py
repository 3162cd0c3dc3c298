# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Render an EFI signature database as a key listing.

Used when mokutil is not installed: the raw ``db``, ``KEK``, ``PK`` or ``MokListRT`` variable is
decoded with edk2toollib and printed in the same ``[key N]`` layout mokutil uses, so the same
listing audit applies to both sources.
"""

import io
import logging
from typing import List

from cert_expiration import format_not_after
from cryptography import x509
from edk2toollib.uefi.authenticated_variables_structure_support import (
    EfiSignatureDatabase,
    EfiSignatureDataEfiCertSha256,
    EfiSignatureDataEfiCertX509,
)

logger = logging.getLogger(__name__)


def render_key_listing(signature_database: bytes) -> List[str]:
    """Describe every entry of an EFI signature database as key listing lines.

    X.509 entries produce an index, issuer and expiration line. Hash entries only produce an
    index and the hash, so they are never counted as keys by the listing audit.

    Args:
        signature_database (bytes): The variable payload (without efivarfs attribute bytes).

    Returns:
        List[str]: The listing lines.
    """
    if not signature_database:
        return []

    database = EfiSignatureDatabase(filestream=io.BytesIO(signature_database))

    lines = []
    key_number = 1
    for signature_list in database.esl_list:
        for signature_data in signature_list.signature_data_list:
            lines.append(f"[key {key_number}]")
            lines.append(f"Owner: {signature_data.signature_owner}")

            if isinstance(signature_data, EfiSignatureDataEfiCertX509):
                try:
                    cert = x509.load_der_x509_certificate(signature_data.signature_data)
                except ValueError as e:
                    logger.warning(f"Key {key_number} is not a valid certificate: {e}")
                else:
                    lines.append(f"Subject: {cert.subject.rfc4514_string()}")
                    lines.append(f"Issuer: {cert.issuer.rfc4514_string()}")
                    lines.append(f"Not After : {format_not_after(cert.not_valid_after_utc)}")
            elif isinstance(signature_data, EfiSignatureDataEfiCertSha256):
                lines.append(f"SHA256 hash: {signature_data.signature_data.hex()}")

            key_number += 1

    return lines
