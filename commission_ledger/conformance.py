from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from commission_ledger.config import ConformanceThresholds
from commission_ledger.models import (
    CONFORMANT,
    MATCH_MULTIPLE,
    MATCH_NONE,
    MATCH_ONE,
    NEARLY_CONFORMANT,
    NON_CONFORMANT,
    WILDCARD_PLAN,
    CertificateConformance,
    CertificateSplitRow,
    GroupConformanceStats,
    GroupInfo,
    ProposalKeyMapping,
    is_invalid_group,
    normalize_plan_code,
)

logger = logging.getLogger(__name__)

MappingKey = tuple[str, int, str, str]
EXPORTABLE = frozenset({CONFORMANT, NEARLY_CONFORMANT})


@dataclass
class ConformanceResult:
    certificates: list[CertificateConformance]
    groups: list[GroupConformanceStats]

    def exportable_groups(self) -> set[str]:
        return {g.group_id for g in self.groups if g.classification in EXPORTABLE}

    def withheld_groups(self) -> set[str]:
        return {g.group_id for g in self.groups if g.classification not in EXPORTABLE}


def index_mappings(mappings: Iterable[ProposalKeyMapping]) -> dict[MappingKey, set[str]]:
    index: dict[MappingKey, set[str]] = {}
    for m in mappings:
        index.setdefault((m.group_id, m.effective_year, m.product_code, m.plan_code), set()).add(m.proposal_id)
    return index


def lookup(index: Mapping[MappingKey, set[str]], group_id: str, year: int, product: str, plan: str) -> set[str]:
    """Exact plan first; the wildcard row is only consulted when the exact key has none."""
    exact = index.get((group_id, year, product, plan))
    if exact:
        return exact
    return index.get((group_id, year, product, WILDCARD_PLAN), set())


def classify_group(percentage: float, thresholds: ConformanceThresholds) -> str:
    if percentage >= thresholds.conformant_pct:
        return CONFORMANT
    if percentage >= thresholds.nearly_conformant_pct:
        return NEARLY_CONFORMANT
    return NON_CONFORMANT


def classify(
    rows: Iterable[CertificateSplitRow],
    mappings: Iterable[ProposalKeyMapping],
    thresholds: ConformanceThresholds | None = None,
    groups: Mapping[str, GroupInfo] | None = None,
) -> ConformanceResult:
    thresholds = thresholds or ConformanceThresholds()
    groups = groups or {}
    index = index_mappings(mappings)

    # one entry per certificate before counting, so duplicated source rows cannot shift a group
    certificates: dict[str, tuple[str, int, str, str]] = {}
    for row in rows:
        if row.certificate_id in certificates or is_invalid_group(row.group_id):
            continue
        certificates[row.certificate_id] = (
            row.group_id.strip(),
            row.effective_date.year,
            row.product_code.strip(),
            normalize_plan_code(row.plan_code),
        )

    cert_results: list[CertificateConformance] = []
    totals: dict[str, list[int]] = {}
    for cert_id in sorted(certificates):
        group_id, year, product, plan = certificates[cert_id]
        matched = lookup(index, group_id, year, product, plan)
        if len(matched) == 1:
            status = MATCH_ONE
        elif not matched:
            status = MATCH_NONE
        else:
            status = MATCH_MULTIPLE
        cert_results.append(
            CertificateConformance(
                certificate_id=cert_id,
                group_id=group_id,
                effective_year=year,
                product_code=product,
                plan_code=plan,
                match_count=len(matched),
                matched_proposal_ids=tuple(sorted(matched)),
                status=status,
            )
        )
        counts = totals.setdefault(group_id, [0, 0])
        counts[0] += 1
        if status == MATCH_ONE:
            counts[1] += 1

    group_stats = []
    for group_id in sorted(totals):
        total, conformant = totals[group_id]
        pct = round(conformant / total * 100, 2)
        info = groups.get(group_id)
        group_stats.append(
            GroupConformanceStats(
                group_id=group_id,
                total_certificates=total,
                conformant_certificates=conformant,
                non_conformant_certificates=total - conformant,
                conformance_percentage=pct,
                classification=classify_group(pct, thresholds),
                group_name=info.group_name if info else None,
                situs_state=info.situs_state if info else None,
            )
        )

    result = ConformanceResult(cert_results, group_stats)
    by_class: dict[str, int] = {}
    for g in group_stats:
        by_class[g.classification] = by_class.get(g.classification, 0) + 1
    logger.info("Conformance: %s certificates, %s groups %s", len(cert_results), len(group_stats), by_class)
    return result
