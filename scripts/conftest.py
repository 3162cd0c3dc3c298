# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Shared pytest fixtures."""
from datetime import datetime, timedelta
from typing import Callable

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def make_certificate(common_name: str, not_after: datetime) -> x509.Certificate:
    """Create a self-signed certificate expiring at not_after."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_after - timedelta(days=3650))
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )


@pytest.fixture
def certificate_der() -> Callable[[str, datetime], bytes]:
    """Return a factory producing DER encoded self-signed certificates."""
    def factory(common_name: str, not_after: datetime) -> bytes:
        return make_certificate(common_name, not_after).public_bytes(serialization.Encoding.DER)
    return factory


@pytest.fixture
def certificate_pem() -> Callable[[str, datetime], bytes]:
    """Return a factory producing PEM encoded self-signed certificates."""
    def factory(common_name: str, not_after: datetime) -> bytes:
        return make_certificate(common_name, not_after).public_bytes(serialization.Encoding.PEM)
    return factory
