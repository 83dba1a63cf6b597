from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date

from commission_ledger.config import EntropyThresholds
from commission_ledger.entropy import EntropyDecision, route_group
from commission_ledger.hashing import ContentHashRegistry, canonical_json, split_config
from commission_ledger.hierarchy import HierarchyKey, certificate_batches, hierarchy_key, hierarchy_rows
from commission_ledger.models import (
    ENTRY_TYPE_HUMAN_ERROR,
    ENTRY_TYPE_STRUCTURAL,
    REASON_BUSINESS_ENTROPY,
    REASON_HUMAN_ERROR_OUTLIER,
    REASON_INVALID_GROUP,
    REASON_SPLIT_MISMATCH,
    WILDCARD_PLAN,
    CertificateSplitRow,
    PolicyHierarchyAssignment,
    PolicyHierarchyParticipant,
    PremiumSplitParticipant,
    PremiumSplitVersion,
    Proposal,
    ProposalKeyMapping,
    is_invalid_group,
    normalize_plan_code,
)

logger = logging.getLogger(__name__)

PHA_ENTRY_TYPES = {
    REASON_INVALID_GROUP: ENTRY_TYPE_STRUCTURAL,
    REASON_SPLIT_MISMATCH: ENTRY_TYPE_HUMAN_ERROR,
    REASON_BUSINESS_ENTROPY: ENTRY_TYPE_STRUCTURAL,
    REASON_HUMAN_ERROR_OUTLIER: ENTRY_TYPE_HUMAN_ERROR,
}
_SKIPPED_PRODUCTS = {"", WILDCARD_PLAN, "N/A", "NULL"}


@dataclass
class PreparedCertificate:
    certificate_id: str
    group_id: str | None
    effective_date: date
    product_code: str
    plan_code: str
    situs_state: str | None
    splits: dict[int, list[CertificateSplitRow]]
    route_reason: str | None = None
    canonical: str | None = None
    content_hash: str | None = None

    @property
    def effective_year(self) -> int:
        return self.effective_date.year


@dataclass
class ProposalBuildResult:
    proposals: list[Proposal] = field(default_factory=list)
    split_versions: list[PremiumSplitVersion] = field(default_factory=list)
    split_participants: list[PremiumSplitParticipant] = field(default_factory=list)
    key_mappings: list[ProposalKeyMapping] = field(default_factory=list)
    phas: list[PolicyHierarchyAssignment] = field(default_factory=list)
    entropy_decisions: dict[str, EntropyDecision] = field(default_factory=dict)

    def pha_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for pha in self.phas:
            counts[pha.non_conformant_reason] = counts.get(pha.non_conformant_reason, 0) + 1
        return counts


def split_percent_mismatch(splits: dict[int, list[CertificateSplitRow]], tolerance: float) -> bool:
    total = 0.0
    for rows in splits.values():
        pct = rows[0].split_percent
        if any(abs(r.split_percent - pct) > tolerance for r in rows):
            return True
        total += pct
    return abs(total - 100.0) > tolerance


def prepare_certificate(rows: list[CertificateSplitRow], tolerance: float) -> PreparedCertificate:
    # identical duplicate source rows collapse before hashing
    rows = sorted(set(rows), key=lambda r: (r.split_sequence, r.broker_sequence, r.split_broker_id))
    first = rows[0]
    splits: dict[int, list[CertificateSplitRow]] = {}
    for row in rows:
        splits.setdefault(row.split_sequence, []).append(row)

    prepared = PreparedCertificate(
        certificate_id=first.certificate_id,
        group_id=first.group_id.strip() if first.group_id else None,
        effective_date=first.effective_date,
        product_code=first.product_code.strip(),
        plan_code=normalize_plan_code(first.plan_code),
        situs_state=first.situs_state,
        splits=splits,
    )
    if is_invalid_group(first.group_id):
        prepared.route_reason = REASON_INVALID_GROUP
    elif split_percent_mismatch(splits, tolerance):
        prepared.route_reason = REASON_SPLIT_MISMATCH
    else:
        prepared.canonical = canonical_json(split_config(rows))
    return prepared


def prepare_batch(rows: list[CertificateSplitRow], tolerance: float) -> list[PreparedCertificate]:
    by_cert: dict[str, list[CertificateSplitRow]] = {}
    for row in rows:
        by_cert.setdefault(row.certificate_id, []).append(row)
    return [prepare_certificate(by_cert[cert_id], tolerance) for cert_id in sorted(by_cert)]


def _pha_records(prepared: list[PreparedCertificate]) -> list[PolicyHierarchyAssignment]:
    counters: dict[str, int] = {}
    records = []
    for cert in prepared:
        group_label = cert.group_id or "UNKNOWN"
        for split_seq in sorted(cert.splits):
            rows = cert.splits[split_seq]
            counters[group_label] = counters.get(group_label, 0) + 1
            records.append(
                PolicyHierarchyAssignment(
                    id=f"PHA-{group_label}-{counters[group_label]}",
                    policy_id=cert.certificate_id,
                    group_id=cert.group_id or None,
                    writing_broker_id=rows[0].writing_broker_id,
                    split_sequence=split_seq,
                    split_percent=rows[0].split_percent,
                    non_conformant_reason=cert.route_reason,
                    entry_type=PHA_ENTRY_TYPES[cert.route_reason],
                    effective_date=cert.effective_date,
                    participants=tuple(
                        dict.fromkeys(
                            PolicyHierarchyParticipant(r.split_broker_id, r.broker_sequence, r.schedule_code or None)
                            for r in rows
                        )
                    ),
                )
            )
    return records


def _apply_entropy(
    candidates: list[PreparedCertificate], thresholds: EntropyThresholds
) -> dict[str, EntropyDecision]:
    sizes: dict[str, dict[str, int]] = {}
    for cert in candidates:
        group_sizes = sizes.setdefault(cert.group_id, {})
        group_sizes[cert.content_hash] = group_sizes.get(cert.content_hash, 0) + 1

    decisions = {group_id: route_group(group_id, sizes[group_id], thresholds) for group_id in sorted(sizes)}
    for cert in candidates:
        decision = decisions[cert.group_id]
        if decision.high_entropy:
            cert.route_reason = REASON_BUSINESS_ENTROPY
        elif cert.content_hash in decision.outlier_hashes:
            cert.route_reason = REASON_HUMAN_ERROR_OUTLIER
    return decisions


def _build_proposals(
    candidates: list[PreparedCertificate], key_to_hierarchy: dict[HierarchyKey, str], result: ProposalBuildResult
) -> None:
    clusters: dict[tuple[str, str], list[PreparedCertificate]] = {}
    for cert in candidates:
        clusters.setdefault((cert.group_id, cert.content_hash), []).append(cert)

    # deterministic numbering: earliest certificate date, then group, then discovery order
    ordered = sorted(
        clusters.items(),
        key=lambda item: (
            min(c.effective_date for c in item[1]),
            item[0][0],
            min(c.certificate_id for c in item[1]),
        ),
    )
    per_group: dict[str, int] = {}
    mapped: set[tuple[str, int, str, str, str]] = set()
    for (group_id, content_hash), certs in ordered:
        per_group[group_id] = per_group.get(group_id, 0) + 1
        proposal_id = f"PROP-{group_id}-{per_group[group_id]}"
        certs = sorted(certs, key=lambda c: (c.effective_date, c.certificate_id))
        first = certs[0]
        split_groups = sorted(first.splits.values(), key=lambda rows: canonical_json(split_config(rows)))

        proposal = Proposal(
            id=proposal_id,
            group_id=group_id,
            content_hash=content_hash,
            broker_id=split_groups[0][0].writing_broker_id,
            situs_state=first.situs_state,
            product_codes=set(),
            plan_codes=set(),
            effective_date_from=first.effective_date,
            effective_date_to=None,
            date_range_from=first.effective_year,
            date_range_to=first.effective_year,
        )
        for cert in certs:
            expand_proposal(proposal, cert)
            mapping_key = (group_id, cert.effective_year, cert.product_code, cert.plan_code, proposal_id)
            if mapping_key not in mapped:
                mapped.add(mapping_key)
                result.key_mappings.append(
                    ProposalKeyMapping(
                        group_id=group_id,
                        effective_year=cert.effective_year,
                        product_code=cert.product_code,
                        plan_code=cert.plan_code,
                        proposal_id=proposal_id,
                        content_hash=content_hash,
                    )
                )
        result.proposals.append(proposal)

        version_id = f"PSV-{proposal_id}"
        result.split_versions.append(
            PremiumSplitVersion(
                id=version_id,
                proposal_id=proposal_id,
                group_id=group_id,
                effective_from=proposal.effective_date_from,
                effective_to=None,
                total_split_percent=round(sum(rows[0].split_percent for rows in split_groups), 4),
            )
        )
        for seq, rows in enumerate(split_groups, start=1):
            result.split_participants.append(
                PremiumSplitParticipant(
                    id=f"PSP-{proposal_id}-{seq}",
                    version_id=version_id,
                    sequence=seq,
                    split_percent=rows[0].split_percent,
                    writing_broker_id=rows[0].writing_broker_id,
                    hierarchy_id=_hierarchy_id(rows, key_to_hierarchy),
                )
            )


def _hierarchy_id(rows: list[CertificateSplitRow], key_to_hierarchy: dict[HierarchyKey, str]) -> str | None:
    linked = hierarchy_rows(rows)
    return key_to_hierarchy.get(hierarchy_key(linked)) if linked else None


def expand_proposal(proposal: Proposal, cert: PreparedCertificate) -> None:
    """Widen an existing proposal so it also covers ``cert``."""
    if cert.product_code.upper() not in _SKIPPED_PRODUCTS:
        proposal.product_codes.add(cert.product_code)
    if cert.plan_code != WILDCARD_PLAN:
        proposal.plan_codes.add(cert.plan_code)
    proposal.date_range_from = min(proposal.date_range_from, cert.effective_year)
    proposal.date_range_to = max(proposal.date_range_to, cert.effective_year)
    if cert.effective_date < proposal.effective_date_from:
        proposal.effective_date_from = cert.effective_date
    if cert.certificate_id not in proposal.certificate_ids:
        proposal.certificate_ids.append(cert.certificate_id)


def resolve_proposals(
    rows: Iterable[CertificateSplitRow],
    registry: ContentHashRegistry,
    key_to_hierarchy: dict[HierarchyKey, str],
    tolerance: float = 0.01,
    entropy: EntropyThresholds | None = None,
    batch_size: int = 5000,
    map_func: Callable[..., Iterable[list[PreparedCertificate]]] = map,
) -> ProposalBuildResult:
    """Group certificates into proposals by (group, content hash).

    Canonical configs are computed per batch; hashes are registered serially in
    certificate order so a collision aborts before anything is grouped.
    """
    batches = list(certificate_batches(rows, batch_size))
    prepared: list[PreparedCertificate] = []
    for batch_result in map_func(prepare_batch, batches, [tolerance] * len(batches)):
        prepared.extend(batch_result)
    prepared.sort(key=lambda c: c.certificate_id)

    candidates = []
    for cert in prepared:
        if cert.route_reason is None:
            cert.content_hash = registry.register(cert.canonical, context=f"certificate {cert.certificate_id}")
            candidates.append(cert)

    result = ProposalBuildResult()
    if entropy is not None and entropy.enabled:
        result.entropy_decisions = _apply_entropy(candidates, entropy)
        candidates = [c for c in candidates if c.route_reason is None]

    _build_proposals(candidates, key_to_hierarchy, result)
    result.phas = _pha_records([c for c in prepared if c.route_reason is not None])
    logger.info(
        "Proposals: %s certificates -> %s proposals, %s key mappings, %s PHA rows %s",
        len(prepared),
        len(result.proposals),
        len(result.key_mappings),
        len(result.phas),
        result.pha_counts(),
    )
    return result
