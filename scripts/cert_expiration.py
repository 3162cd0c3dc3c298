# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Certificate expiration classification.

Every certificate checked during one run is compared against the same ExpirationThresholds so
that the local signing key and the four enrolled key stores agree on what "now" is.
"""

import logging
import pathlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from cryptography import x509

logger = logging.getLogger(__name__)

EXPIRING_SOON_HORIZON = timedelta(days=365)
EXPIRING_SOON_HORIZON_SECONDS = int(EXPIRING_SOON_HORIZON.total_seconds())

# OpenSSL prints validity dates as "Jan  1 00:00:00 2000 GMT"
NOT_AFTER_FORMAT = "%b %d %H:%M:%S %Y"
NOT_AFTER_ZONES = ("GMT", "UTC")


class ExpirationStatus(Enum):
    """Classification of a certificate's remaining lifetime."""

    EXPIRED = "expired"
    EXPIRING_SOON = "expiring-soon"
    VALID = "valid"


class UnparseableExpirationDateError(ValueError):
    """Raised when a "Not After" date cannot be parsed."""


@dataclass(frozen=True)
class ExpirationThresholds:
    """The reference time and horizon shared by every classification in one run.

    Attributes:
        now (datetime): Timezone aware UTC reference time.
        soon_horizon_seconds (int): Certificates expiring within this many seconds are "expiring soon".
    """

    now: datetime
    soon_horizon_seconds: int = EXPIRING_SOON_HORIZON_SECONDS

    @classmethod
    def capture(cls) -> "ExpirationThresholds":
        """Capture the current time once for a run."""
        return cls(now=datetime.now(timezone.utc))

    def classify(self, not_after: datetime) -> ExpirationStatus:
        """Classify not_after against this reference time."""
        return classify_expiration(not_after, self.now, self.soon_horizon_seconds)


@dataclass
class CertificateStatus:
    """Expiration status of a single certificate file.

    Attributes:
        path (pathlib.Path): The certificate file.
        subject (str): The certificate subject in RFC 4514 form.
        not_after (datetime): The end of the validity period (UTC).
        status (ExpirationStatus): The classification of not_after.
    """

    path: pathlib.Path
    subject: str
    not_after: datetime
    status: ExpirationStatus

    def to_dict(self) -> dict:
        """Return a JSON serializable description."""
        return {
            "path": str(self.path),
            "subject": self.subject,
            "notAfter": self.not_after.isoformat(),
            "status": self.status.value,
        }


def classify_expiration(
    not_after: datetime,
    now: datetime,
    soon_horizon_seconds: int = EXPIRING_SOON_HORIZON_SECONDS
) -> ExpirationStatus:
    """Classify a certificate expiration time.

    A certificate expiring exactly at ``now`` is expiring soon, not expired.

    Args:
        not_after (datetime): The end of the certificate validity period.
        now (datetime): The reference time.
        soon_horizon_seconds (int): Width of the "expiring soon" window.

    Returns:
        ExpirationStatus: EXPIRED, EXPIRING_SOON or VALID.
    """
    delta = (not_after - now).total_seconds()
    if delta < 0:
        return ExpirationStatus.EXPIRED
    if delta < soon_horizon_seconds:
        return ExpirationStatus.EXPIRING_SOON
    return ExpirationStatus.VALID


def parse_not_after(text: str) -> datetime:
    """Parse an OpenSSL style validity date such as ``Jan  1 00:00:00 2000 GMT``.

    Args:
        text (str): The date text, with any amount of whitespace between fields.

    Returns:
        datetime: A timezone aware UTC datetime.

    Raises:
        UnparseableExpirationDateError: If the text is not in the expected format.
    """
    fields = text.split()
    if len(fields) != 5 or fields[-1] not in NOT_AFTER_ZONES:
        raise UnparseableExpirationDateError(f"Unrecognized expiration date: {text!r}")

    try:
        parsed = datetime.strptime(" ".join(fields[:-1]), NOT_AFTER_FORMAT)
    except ValueError as e:
        raise UnparseableExpirationDateError(f"Unrecognized expiration date: {text!r}") from e

    return parsed.replace(tzinfo=timezone.utc)


def format_not_after(value: datetime) -> str:
    """Format a datetime the way OpenSSL prints validity dates."""
    value = value.astimezone(timezone.utc)
    return f"{value:%b} {value.day:2d} {value:%H:%M:%S} {value.year} GMT"


def load_certificate(data: bytes) -> x509.Certificate:
    """Load a PEM or DER encoded certificate."""
    if b"-----BEGIN CERTIFICATE-----" in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def check_certificate_file(path: pathlib.Path, thresholds: ExpirationThresholds) -> Optional[CertificateStatus]:
    """Check the expiration of a certificate stored on disk.

    Args:
        path (pathlib.Path): A PEM or DER certificate.
        thresholds (ExpirationThresholds): The run's reference time.

    Returns:
        Optional[CertificateStatus]: The status, or None if the file does not exist.

    Raises:
        ValueError: If the file is not a certificate.
    """
    if not path.is_file():
        logger.debug(f"No certificate at {path}")
        return None

    cert = load_certificate(path.read_bytes())
    not_after = cert.not_valid_after_utc
    status = thresholds.classify(not_after)
    logger.debug(f"{path}: expires {not_after.isoformat()} ({status.value})")

    return CertificateStatus(
        path=path,
        subject=cert.subject.rfc4514_string(),
        not_after=not_after,
        status=status,
    )
