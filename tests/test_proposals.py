from __future__ import annotations

import unittest
from datetime import date

from commission_ledger.config import EntropyThresholds
from commission_ledger.errors import HashCollisionError
from commission_ledger.hashing import ContentHashRegistry
from commission_ledger.hierarchy import build_hierarchies
from commission_ledger.models import (
    ENTRY_TYPE_HUMAN_ERROR,
    ENTRY_TYPE_STRUCTURAL,
    REASON_BUSINESS_ENTROPY,
    REASON_HUMAN_ERROR_OUTLIER,
    REASON_INVALID_GROUP,
    REASON_SPLIT_MISMATCH,
    CertificateSplitRow,
)
from commission_ledger.proposals import resolve_proposals


def _row(
    cert: str,
    split_seq: int,
    broker: str,
    pct: float,
    *,
    level: int = 1,
    writing: str | None = None,
    group: str | None = "G100",
    product: str = "DEN",
    plan: str | None = "A",
    eff: date = date(2023, 1, 1),
) -> CertificateSplitRow:
    return CertificateSplitRow(
        certificate_id=cert,
        split_sequence=split_seq,
        broker_sequence=level,
        group_id=group,
        product_code=product,
        plan_code=plan,
        effective_date=eff,
        split_percent=pct,
        writing_broker_id=writing or broker,
        split_broker_id=broker,
        schedule_code="SCH-STD",
    )


def _resolve(rows, registry=None, entropy=None, batch_size=5000):
    hierarchies = build_hierarchies(rows)
    return resolve_proposals(
        rows,
        registry if registry is not None else ContentHashRegistry(),
        hierarchies.key_to_hierarchy,
        entropy=entropy,
        batch_size=batch_size,
    ), hierarchies


class ProposalResolverTests(unittest.TestCase):
    def test_two_way_split_builds_one_proposal(self) -> None:
        rows = [_row("C100", 1, "B1", 70), _row("C100", 2, "B2", 30)]
        result, hierarchies = _resolve(rows)
        self.assertEqual(len(result.proposals), 1)
        proposal = result.proposals[0]
        self.assertEqual(proposal.id, "PROP-G100-1")
        self.assertEqual(proposal.certificate_ids, ["C100"])
        self.assertEqual(len(proposal.content_hash), 64)
        self.assertEqual(len(result.split_participants), 2)
        self.assertEqual(sorted(p.split_percent for p in result.split_participants), [30.0, 70.0])
        self.assertEqual(result.split_versions[0].id, "PSV-PROP-G100-1")
        self.assertEqual(result.split_versions[0].total_split_percent, 100.0)
        linked = {p.writing_broker_id: p.hierarchy_id for p in result.split_participants}
        self.assertEqual(linked["B1"], hierarchies.key_to_hierarchy[("G100", "B1", None)])
        self.assertEqual(linked["B2"], hierarchies.key_to_hierarchy[("G100", "B2", None)])
        self.assertEqual(result.phas, [])

    def test_blank_upline_broker_still_links_hierarchy(self) -> None:
        rows = [_row("C110", 1, "B1", 100), _row("C110", 1, "", 100, level=2, writing="B1")]
        result, hierarchies = _resolve(rows)
        self.assertEqual(len(result.proposals), 1)
        expected = hierarchies.key_to_hierarchy[("G100", "B1", None)]
        self.assertEqual([p.hierarchy_id for p in result.split_participants], [expected])

    def test_zero_group_routes_to_pha(self) -> None:
        result, _ = _resolve([_row("C200", 1, "B1", 100, group="00000")])
        self.assertEqual(result.proposals, [])
        self.assertEqual(len(result.phas), 1)
        pha = result.phas[0]
        self.assertEqual(pha.is_non_conforming, 1)
        self.assertEqual(pha.non_conformant_reason, REASON_INVALID_GROUP)
        self.assertEqual(pha.entry_type, ENTRY_TYPE_STRUCTURAL)
        self.assertEqual(pha.policy_id, "C200")
        self.assertEqual([p.broker_id for p in pha.participants], ["B1"])

    def test_blank_group_gets_unknown_pha_id(self) -> None:
        result, _ = _resolve([_row("C201", 1, "B1", 100, group=None)])
        self.assertEqual(result.phas[0].id, "PHA-UNKNOWN-1")

    def test_split_mismatch_routes_every_split_to_pha(self) -> None:
        rows = [_row("C300", 1, "B1", 70), _row("C300", 2, "B2", 20)]
        result, _ = _resolve(rows)
        self.assertEqual(result.proposals, [])
        self.assertEqual([p.non_conformant_reason for p in result.phas], [REASON_SPLIT_MISMATCH] * 2)
        self.assertEqual([p.entry_type for p in result.phas], [ENTRY_TYPE_HUMAN_ERROR] * 2)
        self.assertEqual([p.id for p in result.phas], ["PHA-G100-1", "PHA-G100-2"])

    def test_inconsistent_percent_within_one_split_is_a_mismatch(self) -> None:
        rows = [_row("C301", 1, "B1", 100), _row("C301", 1, "B2", 90, level=2, writing="B1")]
        result, _ = _resolve(rows)
        self.assertEqual(result.pha_counts(), {REASON_SPLIT_MISMATCH: 1})

    def test_hash_collision_is_fatal(self) -> None:
        rows = [_row("C1", 1, "B1", 100), _row("C2", 1, "B1", 60), _row("C2", 2, "B2", 40)]
        registry = ContentHashRegistry(hash_func=lambda _text: "FIXED")
        with self.assertRaises(HashCollisionError):
            _resolve(rows, registry=registry)

    def test_matching_certificates_expand_one_proposal(self) -> None:
        rows = [
            _row("C2", 1, "B1", 100, product="VIS", plan="B", eff=date(2024, 3, 1)),
            _row("C1", 1, "B1", 100, product="DEN", plan="A", eff=date(2023, 2, 1)),
            _row("C3", 1, "B1", 100, product="DEN", plan="N/A", eff=date(2023, 7, 1)),
        ]
        result, _ = _resolve(rows)
        self.assertEqual(len(result.proposals), 1)
        proposal = result.proposals[0]
        self.assertEqual(proposal.product_codes, {"DEN", "VIS"})
        self.assertEqual(proposal.plan_codes, {"A", "B"})
        self.assertEqual((proposal.date_range_from, proposal.date_range_to), (2023, 2024))
        self.assertEqual(proposal.effective_date_from, date(2023, 2, 1))
        self.assertIsNone(proposal.effective_date_to)
        self.assertEqual(proposal.certificate_ids, ["C1", "C3", "C2"])
        keys = {(m.effective_year, m.product_code, m.plan_code) for m in result.key_mappings}
        self.assertEqual(keys, {(2023, "DEN", "A"), (2023, "DEN", "*"), (2024, "VIS", "B")})

    def test_numbering_follows_earliest_certificate_date(self) -> None:
        rows = [
            _row("C1", 1, "B1", 100, eff=date(2024, 1, 1)),
            _row("C2", 1, "B2", 100, eff=date(2023, 1, 1)),
            _row("C3", 1, "B3", 100, group="G050", eff=date(2023, 6, 1)),
        ]
        result, _ = _resolve(rows)
        by_cert = {p.certificate_ids[0]: p.id for p in result.proposals}
        self.assertEqual(by_cert, {"C2": "PROP-G100-1", "C1": "PROP-G100-2", "C3": "PROP-G050-1"})

    def test_reruns_yield_identical_ids_and_hashes(self) -> None:
        rows = []
        for i in range(20):
            rows += [
                _row(f"C{i:02d}", 1, f"B{i % 4}", 50, group=f"G{i % 3}", eff=date(2023, 1 + i % 12, 1)),
                _row(f"C{i:02d}", 2, f"B{(i + 1) % 4}", 50, group=f"G{i % 3}", eff=date(2023, 1 + i % 12, 1)),
            ]
        first, _ = _resolve(rows)
        second, _ = _resolve(list(reversed(rows)), batch_size=3)
        self.assertEqual(
            [(p.id, p.content_hash, p.certificate_ids) for p in first.proposals],
            [(p.id, p.content_hash, p.certificate_ids) for p in second.proposals],
        )
        self.assertEqual(first.key_mappings, second.key_mappings)

    def test_duplicate_source_rows_do_not_change_the_hash(self) -> None:
        rows = [_row("C1", 1, "B1", 100)]
        single, _ = _resolve(rows)
        doubled, _ = _resolve(rows + rows)
        self.assertEqual(single.proposals[0].content_hash, doubled.proposals[0].content_hash)


class EntropyRoutingTests(unittest.TestCase):
    def test_small_clusters_become_outliers(self) -> None:
        rows = [_row(f"C{i}", 1, "B1", 100) for i in range(8)]
        rows += [_row("C8", 1, "B2", 100), _row("C9", 1, "B2", 100)]
        result, _ = _resolve(rows, entropy=EntropyThresholds(enabled=True))
        self.assertEqual(len(result.proposals), 1)
        self.assertEqual(result.pha_counts(), {REASON_HUMAN_ERROR_OUTLIER: 2})
        self.assertFalse(result.entropy_decisions["G100"].high_entropy)

    def test_heterogeneous_group_routes_entirely(self) -> None:
        rows = [_row(f"C{i}", 1, f"B{i}", 100) for i in range(4)]
        result, _ = _resolve(rows, entropy=EntropyThresholds(enabled=True))
        self.assertEqual(result.proposals, [])
        self.assertEqual(result.pha_counts(), {REASON_BUSINESS_ENTROPY: 4})

    def test_disabled_router_changes_nothing(self) -> None:
        rows = [_row(f"C{i}", 1, f"B{i}", 100) for i in range(4)]
        result, _ = _resolve(rows, entropy=EntropyThresholds(enabled=False))
        self.assertEqual(len(result.proposals), 4)
        self.assertEqual(result.phas, [])


if __name__ == "__main__":
    unittest.main()
