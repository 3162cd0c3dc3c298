# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Audit of enrolled key listings.

``mokutil --list-enrolled`` (and ``--db``, ``--kek``, ``--pk``) prints one block per key::

    [key 1]
    SHA1 Fingerprint: 7c:f1:...
    Certificate:
        Data:
            ...
            Issuer: C=GB, ST=Isle of Man, L=Douglas, O=Canonical Ltd., CN=Canonical Ltd. Master CA
            Validity
                Not Before: Apr 12 11:12:51 2012 GMT
                Not After : Apr 11 11:12:51 2042 GMT

Each block is turned into a KeyRecord once its index, issuer and expiration date have been seen.
Blocks missing any of them (hash entries, truncated output) are dropped.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from cert_expiration import (
    ExpirationStatus,
    ExpirationThresholds,
    UnparseableExpirationDateError,
    parse_not_after,
)

logger = logging.getLogger(__name__)

INDEX_MARKER = "[key"
ISSUER_MARKER = "Issuer:"
NOT_AFTER_MARKER = "Not After"


class ListingState(Enum):
    """States of the listing accumulator."""

    IDLE = "idle"
    INDEX_SEEN = "index-seen"


@dataclass
class KeyRecord:
    """KeyRecord represents one fully described key from a listing.

    Attributes:
        index (str): The key number as printed in the listing.
        issuer (str): The issuer distinguished name.
        not_after (datetime): The end of the validity period (UTC).
        status (ExpirationStatus): The classification of not_after.
    """

    index: str
    issuer: str
    not_after: datetime
    status: ExpirationStatus

    def to_dict(self) -> dict:
        """Return a JSON serializable description."""
        return {
            "index": self.index,
            "issuer": self.issuer,
            "notAfter": self.not_after.isoformat(),
            "status": self.status.value,
        }


@dataclass
class KeyListingAudit:
    """Result of auditing a single key listing.

    Attributes:
        store (str): Name of the audited key store, e.g. "MOK".
        records (List[KeyRecord]): Complete records in listing order.
        expired_count (int): Number of expired records.
        expiring_soon_count (int): Number of records expiring within the horizon.
        unparseable (List[str]): Indices dropped because their date could not be parsed.
    """

    store: str
    records: List[KeyRecord] = field(default_factory=list)
    expired_count: int = 0
    expiring_soon_count: int = 0
    unparseable: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        """The number of complete records."""
        return len(self.records)

    def add(self, record: KeyRecord) -> None:
        """Append a finalized record and update the counters."""
        self.records.append(record)
        if record.status == ExpirationStatus.EXPIRED:
            self.expired_count += 1
        elif record.status == ExpirationStatus.EXPIRING_SOON:
            self.expiring_soon_count += 1

    def to_dict(self) -> dict:
        """Return a JSON serializable description."""
        return {
            "store": self.store,
            "total": self.total,
            "expired": self.expired_count,
            "expiringSoon": self.expiring_soon_count,
            "unparseable": list(self.unparseable),
            "records": [record.to_dict() for record in self.records],
        }


@dataclass
class AuditSummary:
    """Totals folded over several listing audits."""

    total: int = 0
    expired_count: int = 0
    expiring_soon_count: int = 0

    @property
    def any_expired(self) -> bool:
        return self.expired_count > 0

    @property
    def any_expiring_soon(self) -> bool:
        return self.expiring_soon_count > 0

    def to_dict(self) -> dict:
        """Return a JSON serializable description."""
        return {
            "total": self.total,
            "expired": self.expired_count,
            "expiringSoon": self.expiring_soon_count,
        }


class _Frame:
    """The fields collected so far for the key currently being read."""

    def __init__(self) -> None:
        self.state = ListingState.IDLE
        self.index: Optional[str] = None
        self.issuer: Optional[str] = None
        self.not_after: Optional[datetime] = None
        self.status: Optional[ExpirationStatus] = None

    def start(self, index: str) -> None:
        self.reset()
        self.state = ListingState.INDEX_SEEN
        self.index = index

    def reset(self) -> None:
        self.state = ListingState.IDLE
        self.index = None
        self.issuer = None
        self.not_after = None
        self.status = None

    @property
    def complete(self) -> bool:
        return bool(self.index) and bool(self.issuer) and self.not_after is not None


def _parse_index(line: str) -> str:
    """Return N from a ``[key N]`` marker."""
    return line[len(INDEX_MARKER):].strip().rstrip("]").strip()


def audit_key_listing(
    lines: Iterable[str],
    thresholds: ExpirationThresholds,
    store: str = "MOK"
) -> KeyListingAudit:
    """Audit the expiration dates of every key in a key listing.

    Args:
        lines (Iterable[str]): The listing, one line per item.
        thresholds (ExpirationThresholds): The run's reference time.
        store (str): Name of the key store the listing came from.

    Returns:
        KeyListingAudit: The complete records and their counters.
    """
    audit = KeyListingAudit(store=store)
    frame = _Frame()

    for raw_line in lines:
        line = raw_line.strip()

        if line.startswith(INDEX_MARKER):
            if frame.state == ListingState.INDEX_SEEN:
                logger.debug(f"{store}: discarding incomplete key {frame.index}")
            frame.start(_parse_index(line))
            continue

        if frame.state == ListingState.IDLE:
            continue

        if line.startswith(ISSUER_MARKER):
            frame.issuer = line[len(ISSUER_MARKER):].strip()
        elif line.startswith(NOT_AFTER_MARKER):
            _, _, date_text = line.partition(":")
            try:
                frame.not_after = parse_not_after(date_text)
            except UnparseableExpirationDateError as e:
                logger.warning(f"{store}: key {frame.index} skipped: {e}")
                audit.unparseable.append(frame.index)
                frame.reset()
                continue
            frame.status = thresholds.classify(frame.not_after)

        if frame.complete:
            audit.add(KeyRecord(
                index=frame.index,
                issuer=frame.issuer,
                not_after=frame.not_after,
                status=frame.status,
            ))
            frame.reset()

    logger.debug(
        f"{store}: {audit.total} keys, {audit.expired_count} expired, {audit.expiring_soon_count} expiring soon"
    )
    return audit


def summarize_audits(audits: Iterable[KeyListingAudit]) -> AuditSummary:
    """Fold several listing audits into one summary."""
    summary = AuditSummary()
    for audit in audits:
        summary.total += audit.total
        summary.expired_count += audit.expired_count
        summary.expiring_soon_count += audit.expiring_soon_count
    return summary
