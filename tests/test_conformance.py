from __future__ import annotations

import unittest
from datetime import date

from commission_ledger.conformance import classify, classify_group, index_mappings, lookup
from commission_ledger.config import ConformanceThresholds
from commission_ledger.models import (
    CONFORMANT,
    MATCH_MULTIPLE,
    MATCH_NONE,
    MATCH_ONE,
    NEARLY_CONFORMANT,
    NON_CONFORMANT,
    CertificateSplitRow,
    GroupInfo,
    ProposalKeyMapping,
)


def _row(cert: str, group: str | None = "G100", product: str = "DEN", plan: str | None = "A", year: int = 2023):
    return CertificateSplitRow(
        certificate_id=cert,
        split_sequence=1,
        broker_sequence=1,
        group_id=group,
        product_code=product,
        plan_code=plan,
        effective_date=date(year, 3, 1),
        split_percent=100.0,
        writing_broker_id="B1",
        split_broker_id="B1",
    )


def _mapping(proposal: str, plan: str = "A", group: str = "G100", product: str = "DEN", year: int = 2023):
    return ProposalKeyMapping(group, year, product, plan, proposal, "HASH")


class LookupTests(unittest.TestCase):
    def test_exact_plan_wins_over_wildcard(self) -> None:
        index = index_mappings([_mapping("P1", "A"), _mapping("P2", "*")])
        self.assertEqual(lookup(index, "G100", 2023, "DEN", "A"), {"P1"})
        self.assertEqual(lookup(index, "G100", 2023, "DEN", "B"), {"P2"})
        self.assertEqual(lookup(index, "G100", 2024, "DEN", "A"), set())

    def test_group_thresholds(self) -> None:
        thresholds = ConformanceThresholds()
        self.assertEqual(classify_group(100.0, thresholds), CONFORMANT)
        self.assertEqual(classify_group(95.0, thresholds), NEARLY_CONFORMANT)
        self.assertEqual(classify_group(94.99, thresholds), NON_CONFORMANT)


class ClassifyTests(unittest.TestCase):
    def test_certificate_statuses(self) -> None:
        rows = [_row("C1"), _row("C2", plan="B"), _row("C3", product="VIS")]
        mappings = [_mapping("P1", "A"), _mapping("P2", "B"), _mapping("P3", "B")]
        result = classify(rows, mappings)
        statuses = {c.certificate_id: (c.status, c.matched_proposal_ids) for c in result.certificates}
        self.assertEqual(statuses["C1"], (MATCH_ONE, ("P1",)))
        self.assertEqual(statuses["C2"], (MATCH_MULTIPLE, ("P2", "P3")))
        self.assertEqual(statuses["C3"], (MATCH_NONE, ()))
        self.assertEqual(result.groups[0].classification, NON_CONFORMANT)

    def test_null_plan_matches_the_wildcard_row(self) -> None:
        result = classify([_row("C1", plan="N/A")], [_mapping("P1", "*")])
        self.assertEqual(result.certificates[0].status, MATCH_ONE)
        self.assertEqual(result.certificates[0].plan_code, "*")

    def test_nineteen_of_twenty_is_nearly_conformant(self) -> None:
        rows = [_row(f"C{i:02d}") for i in range(19)] + [_row("C99", product="VIS")]
        result = classify(rows, [_mapping("P1")])
        stats = result.groups[0]
        self.assertEqual((stats.total_certificates, stats.conformant_certificates), (20, 19))
        self.assertEqual(stats.conformance_percentage, 95.0)
        self.assertEqual(stats.classification, NEARLY_CONFORMANT)
        self.assertEqual(result.exportable_groups(), {"G100"})

    def test_eighteen_of_twenty_is_withheld(self) -> None:
        rows = [_row(f"C{i:02d}") for i in range(18)] + [_row("C98", product="VIS"), _row("C99", product="VIS")]
        result = classify(rows, [_mapping("P1")])
        self.assertEqual(result.groups[0].conformance_percentage, 90.0)
        self.assertEqual(result.withheld_groups(), {"G100"})
        self.assertEqual(result.exportable_groups(), set())

    def test_duplicate_rows_do_not_move_the_percentage(self) -> None:
        rows = [_row("C1"), _row("C2", product="VIS")]
        single = classify(rows, [_mapping("P1")])
        doubled = classify(rows + [_row("C1")] * 5, [_mapping("P1")])
        self.assertEqual(single.groups, doubled.groups)
        self.assertEqual(doubled.groups[0].conformance_percentage, 50.0)

    def test_invalid_groups_are_not_classified(self) -> None:
        rows = [_row("C1"), _row("C2", group="00000"), _row("C3", group=None)]
        result = classify(rows, [_mapping("P1")])
        self.assertEqual([c.certificate_id for c in result.certificates], ["C1"])
        self.assertEqual([g.group_id for g in result.groups], ["G100"])

    def test_group_details_are_attached(self) -> None:
        groups = {"G100": GroupInfo("G100", group_name="Acme", group_size=40, situs_state="TX")}
        stats = classify([_row("C1")], [_mapping("P1")], groups=groups).groups[0]
        self.assertEqual((stats.group_name, stats.situs_state), ("Acme", "TX"))
        self.assertEqual(stats.classification, CONFORMANT)


if __name__ == "__main__":
    unittest.main()
