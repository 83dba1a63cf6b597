from __future__ import annotations

import logging
from collections.abc import Iterable

from commission_ledger.models import (
    DEFAULT_PROPOSAL_ID,
    CertificateSplitRow,
    CommissionAssignmentRecipient,
    CommissionAssignmentVersion,
)

logger = logging.getLogger(__name__)


def derive_broker_assignments(rows: Iterable[CertificateSplitRow]) -> list[CommissionAssignmentVersion]:
    """Broker-level redirections implied by rows paid to someone other than the earner.

    The most recent redirection per source broker wins; it applies to every
    proposal through the default proposal id.
    """
    latest: dict[str, tuple[CertificateSplitRow, str]] = {}
    for row in rows:
        paid = (row.paid_broker_id or "").strip()
        if not paid or paid == row.split_broker_id:
            continue
        current = latest.get(row.split_broker_id)
        if current is None or (row.effective_date, paid) > (current[0].effective_date, current[1]):
            latest[row.split_broker_id] = (row, paid)

    versions = []
    for broker_id in sorted(latest):
        row, recipient = latest[broker_id]
        version_id = f"CAV-{broker_id}"
        versions.append(
            CommissionAssignmentVersion(
                id=version_id,
                broker_id=broker_id,
                proposal_id=DEFAULT_PROPOSAL_ID,
                effective_from=row.effective_date,
                effective_to=None,
                total_assigned_percent=100.0,
                recipients=(CommissionAssignmentRecipient(version_id, recipient, 100.0),),
            )
        )
    logger.info("Derived %s broker-level commission assignments", len(versions))
    return versions


def merge_assignments(
    supplied: Iterable[CommissionAssignmentVersion],
    derived: Iterable[CommissionAssignmentVersion],
) -> list[CommissionAssignmentVersion]:
    supplied = list(supplied)
    brokers_with_supplied = {v.broker_id for v in supplied}
    merged = supplied + [v for v in derived if v.broker_id not in brokers_with_supplied]
    return sorted(merged, key=lambda v: (v.broker_id, v.proposal_id, v.effective_from, v.id))
