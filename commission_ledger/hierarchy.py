from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from commission_ledger.models import (
    STATUS_ACTIVE,
    TRANSFER_TYPES,
    CertificateSplitRow,
    Hierarchy,
    HierarchyParticipant,
    HierarchyVersion,
    is_invalid_group,
)

logger = logging.getLogger(__name__)

HierarchyKey = tuple[str, str, str | None]
SplitKey = tuple[str, int]
# (certificate date, certificate id, split sequence) of the first row that produced a key
DiscoveryMark = tuple[date, str, int]


@dataclass
class ParticipantSlot:
    split_percent: float
    schedule_code: str | None
    commission_rate: float | None

    def absorb(self, other: ParticipantSlot) -> None:
        self.split_percent = min(self.split_percent, other.split_percent)
        self.schedule_code = _min_optional(self.schedule_code, other.schedule_code)
        self.commission_rate = _min_optional(self.commission_rate, other.commission_rate)


@dataclass
class CandidateHierarchy:
    key: HierarchyKey
    first_seen: DiscoveryMark
    effective_date: date
    situs_state: str | None
    participants: dict[tuple[str, int], ParticipantSlot] = field(default_factory=dict)

    def absorb(self, other: CandidateHierarchy) -> None:
        if other.first_seen < self.first_seen:
            self.first_seen = other.first_seen
            self.situs_state = other.situs_state or self.situs_state
        self.effective_date = min(self.effective_date, other.effective_date)
        for slot_key, slot in other.participants.items():
            existing = self.participants.get(slot_key)
            if existing is None:
                self.participants[slot_key] = ParticipantSlot(
                    slot.split_percent, slot.schedule_code, slot.commission_rate
                )
            else:
                existing.absorb(slot)


@dataclass
class HierarchyPartial:
    candidates: dict[HierarchyKey, CandidateHierarchy] = field(default_factory=dict)
    transferee_count: int = 0


@dataclass
class HierarchyBuildResult:
    hierarchies: list[Hierarchy]
    versions: list[HierarchyVersion]
    participants: list[HierarchyParticipant]
    key_to_hierarchy: dict[HierarchyKey, str]
    transferee_count: int = 0


def _min_optional(left: Any, right: Any) -> Any:
    if left is None:
        return right
    if right is None:
        return left
    return min(left, right)


def _split_key(row: CertificateSplitRow) -> SplitKey:
    return row.certificate_id, row.split_sequence


def find_true_transferees(rows: Iterable[CertificateSplitRow]) -> set[tuple[str, int, str]]:
    """Brokers paid through a transfer/assignment who do not also earn on that certificate split.

    Self-payments (PaidBroker == SplitBroker) are never transfers, and a broker
    that is both a transferee and an earner on the same split stays a participant.
    """
    potential: set[tuple[str, int, str]] = set()
    earners: set[tuple[str, int, str]] = set()
    for row in rows:
        earners.add((row.certificate_id, row.split_sequence, row.split_broker_id))
        paid = (row.paid_broker_id or "").strip()
        if row.reassigned_type in TRANSFER_TYPES and paid and paid != row.split_broker_id:
            potential.add((row.certificate_id, row.split_sequence, paid))
    return potential - earners


def hierarchy_rows(rows: Iterable[CertificateSplitRow]) -> list[CertificateSplitRow]:
    """Rows that can take part in a hierarchy: a valid group and both broker ids present."""
    return [r for r in rows if not is_invalid_group(r.group_id) and r.writing_broker_id and r.split_broker_id]


def hierarchy_key(split_rows: list[CertificateSplitRow]) -> HierarchyKey:
    first = split_rows[0]
    upline = next((r.split_broker_id for r in split_rows if r.broker_sequence == 2), None)
    return first.group_id.strip(), first.writing_broker_id, upline


def collect_partial(rows: list[CertificateSplitRow]) -> HierarchyPartial:
    """Candidate hierarchies for one batch of certificates.

    A batch must hold every row of the certificates it contains.
    """
    partial = HierarchyPartial()
    rows = hierarchy_rows(rows)
    transferees = find_true_transferees(rows)
    partial.transferee_count = len(transferees)

    by_split: dict[SplitKey, list[CertificateSplitRow]] = {}
    for row in rows:
        by_split.setdefault(_split_key(row), []).append(row)

    for (cert_id, split_seq), split_rows in sorted(by_split.items()):
        split_rows.sort(key=lambda r: (r.broker_sequence, r.split_broker_id))
        key = hierarchy_key(split_rows)
        mark = (split_rows[0].effective_date, cert_id, split_seq)
        candidate = partial.candidates.get(key)
        if candidate is None:
            candidate = CandidateHierarchy(key, mark, split_rows[0].effective_date, split_rows[0].situs_state)
            partial.candidates[key] = candidate
        elif mark < candidate.first_seen:
            candidate.first_seen = mark
            candidate.situs_state = split_rows[0].situs_state or candidate.situs_state
        candidate.effective_date = min(candidate.effective_date, split_rows[0].effective_date)

        for row in split_rows:
            if (cert_id, split_seq, row.split_broker_id) in transferees:
                continue
            rate = row.certificate_rate if row.certificate_rate and row.certificate_rate > 0 else None
            slot = ParticipantSlot(row.split_percent, row.schedule_code or None, rate)
            existing = candidate.participants.get((row.split_broker_id, row.broker_sequence))
            if existing is None:
                candidate.participants[(row.split_broker_id, row.broker_sequence)] = slot
            else:
                existing.absorb(slot)
    return partial


def merge_partials(partials: Iterable[HierarchyPartial]) -> HierarchyPartial:
    merged = HierarchyPartial()
    for partial in partials:
        merged.transferee_count += partial.transferee_count
        for key in sorted(partial.candidates, key=_key_order):
            candidate = partial.candidates[key]
            existing = merged.candidates.get(key)
            if existing is None:
                merged.candidates[key] = CandidateHierarchy(
                    candidate.key, candidate.first_seen, candidate.effective_date, candidate.situs_state
                )
                existing = merged.candidates[key]
            existing.absorb(candidate)
    return merged


def _key_order(key: HierarchyKey) -> tuple[str, str, str]:
    return key[0], key[1], key[2] or ""


def dense_levels(participants: dict[tuple[str, int], ParticipantSlot]) -> list[tuple[int, str, ParticipantSlot]]:
    ranks = {level: rank for rank, level in enumerate(sorted({lvl for _, lvl in participants}), start=1)}
    return sorted(
        ((ranks[level], broker, slot) for (broker, level), slot in participants.items()),
        key=lambda item: (item[0], item[1]),
    )


def structural_signature(levels: list[tuple[int, str, ParticipantSlot]]) -> str:
    return ",".join(
        f"{level}|{broker}|{slot.schedule_code or ''}|{slot.split_percent:.4f}" for level, broker, slot in levels
    )


def assemble(merged: HierarchyPartial) -> HierarchyBuildResult:
    """Assign stable ids and collapse structurally identical candidates per group."""
    by_group: dict[str, list[CandidateHierarchy]] = {}
    for candidate in merged.candidates.values():
        by_group.setdefault(candidate.key[0], []).append(candidate)

    hierarchies: list[Hierarchy] = []
    versions: list[HierarchyVersion] = []
    participants: list[HierarchyParticipant] = []
    key_to_hierarchy: dict[HierarchyKey, str] = {}

    for group_id in sorted(by_group):
        candidates = sorted(by_group[group_id], key=lambda c: (c.first_seen, _key_order(c.key)))
        by_signature: dict[str, int] = {}
        group_hierarchies: list[Hierarchy] = []
        for candidate in candidates:
            levels = dense_levels(candidate.participants)
            if not levels:
                continue
            signature = structural_signature(levels)
            index = by_signature.get(signature)
            if index is not None:
                # candidates arrive in discovery order, so the first holder already has the earliest date
                key_to_hierarchy[candidate.key] = group_hierarchies[index].id
                continue

            hierarchy_id = f"H-{group_id}-{len(group_hierarchies) + 1}"
            version_id = f"{hierarchy_id}-V1"
            by_signature[signature] = len(group_hierarchies)
            group_hierarchies.append(
                Hierarchy(
                    id=hierarchy_id,
                    group_id=group_id,
                    writing_broker_id=candidate.key[1],
                    first_upline_id=candidate.key[2],
                    signature=signature,
                    effective_date=candidate.effective_date,
                    current_version_id=version_id,
                    situs_state=candidate.situs_state,
                )
            )
            key_to_hierarchy[candidate.key] = hierarchy_id
            for level, broker, slot in levels:
                participants.append(
                    HierarchyParticipant(
                        id=f"{version_id}-P{broker}-L{level}",
                        hierarchy_version_id=version_id,
                        broker_id=broker,
                        level=level,
                        split_percent=slot.split_percent,
                        schedule_code=slot.schedule_code,
                        commission_rate=slot.commission_rate,
                    )
                )

        for hierarchy in group_hierarchies:
            hierarchies.append(hierarchy)
            versions.append(
                HierarchyVersion(
                    id=hierarchy.current_version_id,
                    hierarchy_id=hierarchy.id,
                    version=1,
                    status=STATUS_ACTIVE,
                    effective_from=hierarchy.effective_date,
                )
            )

    return HierarchyBuildResult(hierarchies, versions, participants, key_to_hierarchy, merged.transferee_count)


def certificate_batches(rows: Iterable[CertificateSplitRow], batch_size: int) -> Iterator[list[CertificateSplitRow]]:
    by_cert: dict[str, list[CertificateSplitRow]] = {}
    for row in rows:
        by_cert.setdefault(row.certificate_id, []).append(row)
    batch: list[CertificateSplitRow] = []
    count = 0
    for cert_id in sorted(by_cert):
        batch.extend(by_cert[cert_id])
        count += 1
        if count >= batch_size:
            yield batch
            batch, count = [], 0
    if batch:
        yield batch


def build_hierarchies(
    rows: Iterable[CertificateSplitRow],
    batch_size: int = 5000,
    map_func: Callable[..., Iterable[HierarchyPartial]] = map,
) -> HierarchyBuildResult:
    """Discover hierarchies batch by batch, then merge and number them serially.

    ``map_func`` may be an executor's ``map``; partials are merged in batch order
    and candidate keys in canonical order, so the result does not depend on which
    worker finished first.
    """
    partials = list(map_func(collect_partial, certificate_batches(rows, batch_size)))
    merged = merge_partials(partials)
    result = assemble(merged)
    logger.info(
        "Hierarchies: %s candidates -> %s hierarchies, %s participants, %s true transferees",
        len(merged.candidates),
        len(result.hierarchies),
        len(result.participants),
        result.transferee_count,
    )
    return result
