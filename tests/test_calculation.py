from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal

from commission_ledger.calculation import STAGES, CalculationEngine, money, split_among_recipients
from commission_ledger.models import (
    DEFAULT_PROPOSAL_ID,
    ENTRY_ASSIGNED,
    ENTRY_ORIGINAL,
    RATE_CERTIFICATE,
    RATE_NONE,
    RATE_PARTICIPANT,
    RATE_SCHEDULE,
    TRACE_NO_HIERARCHY_VERSION,
    TRACE_NO_PARTICIPANTS,
    TRACE_NO_POLICY,
    TRACE_NO_PROPOSAL,
    TRACE_NO_SPLIT_VERSION,
    TRACE_NON_POSITIVE_PREMIUM,
    CommissionAssignmentRecipient,
    CommissionAssignmentVersion,
    GroupInfo,
    HierarchyParticipant,
    HierarchyVersion,
    Policy,
    PremiumSplitParticipant,
    PremiumSplitVersion,
    PremiumTransaction,
    Proposal,
    ScheduleRate,
)

START = date(2023, 1, 1)


def _policy(cert: str = "C1", group: str = "G100", eff: date = START, state: str | None = "TX") -> Policy:
    return Policy(cert, group, "DEN", "A", state, eff)


def _premium(pid: str = "PT1", cert: str = "C1", amount: str = "1000.00", when: date = date(2023, 6, 1)):
    return PremiumTransaction(pid, cert, when, Decimal(amount))


def _proposal(pid: str = "P1", group: str = "G100", certs: list[str] | None = None, start: date = START) -> Proposal:
    return Proposal(
        id=pid,
        group_id=group,
        content_hash="HASH",
        broker_id="B1",
        situs_state=None,
        product_codes={"DEN"},
        plan_codes={"A"},
        effective_date_from=start,
        effective_date_to=None,
        date_range_from=start.year,
        date_range_to=start.year,
        certificate_ids=certs or [],
    )


def _participant(version: str, broker: str, level: int = 1, schedule: str | None = "SCH", rate: float | None = None):
    return HierarchyParticipant(f"{version}-P{broker}", version, broker, level, 100.0, schedule, rate)


def _engine(
    splits: list[tuple[float, str | None]] | None = None,
    participants: list[HierarchyParticipant] | None = None,
    proposals: list[Proposal] | None = None,
    with_split_version: bool = True,
    **kwargs,
) -> CalculationEngine:
    proposals = proposals or [_proposal()]
    splits = splits or [(100.0, "H1")]
    split_versions = []
    split_participants = []
    if with_split_version:
        for proposal in proposals:
            version_id = f"PSV-{proposal.id}"
            split_versions.append(PremiumSplitVersion(version_id, proposal.id, proposal.group_id, START, None, 100.0))
            for seq, (pct, hierarchy_id) in enumerate(splits, start=1):
                split_participants.append(
                    PremiumSplitParticipant(f"PSP-{proposal.id}-{seq}", version_id, seq, pct, "B1", hierarchy_id)
                )
    hierarchy_ids = sorted({h for _, h in splits if h})
    versions = [HierarchyVersion(f"{h}-V1", h, 1, "Active", START) for h in hierarchy_ids]
    if participants is None:
        participants = [_participant(f"{h}-V1", "B1", rate=5.0) for h in hierarchy_ids]
    kwargs.setdefault("policies", {"C1": _policy()})
    return CalculationEngine(
        proposals=proposals,
        split_versions=split_versions,
        split_participants=split_participants,
        hierarchy_versions=versions,
        hierarchy_participants=participants,
        **kwargs,
    )


def _cav(cav_id: str, proposal: str, pct: float, recipients: dict[str, float], broker: str = "B1"):
    return CommissionAssignmentVersion(
        id=cav_id,
        broker_id=broker,
        proposal_id=proposal,
        effective_from=START,
        effective_to=None,
        total_assigned_percent=pct,
        recipients=tuple(CommissionAssignmentRecipient(cav_id, r, p) for r, p in recipients.items()),
    )


class CommissionCalculationTests(unittest.TestCase):
    def test_certificate_rate_on_a_fifty_percent_split(self) -> None:
        engine = _engine(splits=[(50.0, "H1"), (50.0, "H2")], certificate_rates={("C1", "B1"): 5.0})
        result = engine.run([_premium()])
        self.assertEqual(len(result.gl_entries), 2)
        entry = result.gl_entries[0]
        self.assertEqual(entry.premium_amount, Decimal("500.00"))
        self.assertEqual(entry.commission_amount, Decimal("25.00"))
        self.assertEqual(entry.rate_source, RATE_CERTIFICATE)
        self.assertEqual(entry.entry_type, ENTRY_ORIGINAL)
        report = result.traceability[0]
        self.assertEqual(report.total_commission, Decimal("50.00"))
        self.assertEqual((report.hierarchy_count, report.participant_count), (2, 2))
        self.assertEqual(report.is_clean, 1)

    def test_participant_rate_is_used_without_certificate_rate(self) -> None:
        result = _engine().run([_premium()])
        self.assertEqual(result.gl_entries[0].rate_source, RATE_PARTICIPANT)
        self.assertEqual(result.gl_entries[0].commission_amount, Decimal("50.00"))

    def test_assignment_reconciles_to_the_cent(self) -> None:
        engine = _engine(
            participants=[_participant("H1-V1", "B1", rate=3.333)],
            assignments=[_cav("CAV-B1", DEFAULT_PROPOSAL_ID, 33.3, {"R1": 50.0, "R2": 50.0})],
        )
        result = engine.run([_premium()])
        lines = [(e.broker_id, e.entry_type, e.commission_amount) for e in result.gl_entries]
        self.assertEqual(
            lines,
            [
                ("B1", ENTRY_ORIGINAL, Decimal("22.23")),
                ("R1", ENTRY_ASSIGNED, Decimal("5.55")),
                ("R2", ENTRY_ASSIGNED, Decimal("5.55")),
            ],
        )
        self.assertEqual(sum(e.commission_amount for e in result.gl_entries), Decimal("33.33"))
        self.assertEqual(result.gl_entries[1].source_broker_id, "B1")
        traces = result.broker_traceability
        self.assertEqual([t.is_assigned for t in traces], [0, 1, 1])
        self.assertEqual(traces[1].assigned_from_broker_id, "B1")
        self.assertEqual(result.traceability[0].has_assignments, 1)

    def test_proposal_specific_assignment_beats_default(self) -> None:
        engine = _engine(
            assignments=[
                _cav("CAV-DEFAULT", DEFAULT_PROPOSAL_ID, 100.0, {"R1": 100.0}),
                _cav("CAV-P1", "P1", 50.0, {"R2": 100.0}),
            ],
        )
        result = engine.run([_premium()])
        self.assertEqual(
            [(e.broker_id, e.commission_amount) for e in result.gl_entries],
            [("B1", Decimal("25.00")), ("R2", Decimal("25.00"))],
        )
        self.assertEqual(result.gl_entries[1].assignment_version_id, "CAV-P1")

    def test_assignment_without_recipients_is_ignored(self) -> None:
        engine = _engine(assignments=[_cav("CAV-B1", DEFAULT_PROPOSAL_ID, 100.0, {})])
        result = engine.run([_premium()])
        self.assertEqual([e.broker_id for e in result.gl_entries], ["B1"])

    def test_remainder_goes_to_the_last_recipient(self) -> None:
        cav = _cav("CAV", DEFAULT_PROPOSAL_ID, 100.0, {"A": 1.0, "B": 1.0, "C": 1.0})
        shares = split_among_recipients(Decimal("10.00"), cav)
        self.assertEqual(shares, (("A", Decimal("3.33")), ("B", Decimal("3.33")), ("C", Decimal("3.34"))))

    def test_money_rounds_half_up(self) -> None:
        self.assertEqual(money(Decimal("0.125")), Decimal("0.13"))
        self.assertEqual(money(Decimal("2.675")), Decimal("2.68"))


class RateResolutionTests(unittest.TestCase):
    def _schedule_engine(self, rates: list[ScheduleRate], **kwargs) -> CalculationEngine:
        return _engine(participants=[_participant("H1-V1", "B1", schedule="SCH")], schedule_rates=rates, **kwargs)

    def test_first_year_and_renewal_rates(self) -> None:
        rate = ScheduleRate("SCH", "DEN", None, None, None, 10.0, 4.0)
        engine = self._schedule_engine([rate], policies={"C1": _policy(eff=date(2022, 3, 1))})
        result = engine.run([_premium("PT1", when=date(2023, 2, 28)), _premium("PT2", when=date(2023, 3, 1))])
        first, renewal = result.gl_entries
        self.assertEqual((first.rate_percent, first.is_first_year, first.basis_year), (10.0, True, 2))
        self.assertEqual((renewal.rate_percent, renewal.is_first_year, renewal.basis_year), (4.0, False, 2))
        self.assertEqual(first.rate_source, RATE_SCHEDULE)

    def test_leap_day_anniversary(self) -> None:
        rate = ScheduleRate("SCH", "DEN", None, None, None, 10.0, 4.0)
        engine = self._schedule_engine([rate], policies={"C1": _policy(eff=date(2024, 2, 29))})
        result = engine.run([_premium("PT1", when=date(2025, 2, 28)), _premium("PT2", when=date(2025, 3, 1))])
        self.assertEqual([e.is_first_year for e in result.gl_entries], [True, False])

    def test_exact_state_and_narrowest_group_size_win(self) -> None:
        rates = [
            ScheduleRate("SCH", "DEN", None, None, None, 3.0, 3.0),
            ScheduleRate("SCH", "DEN", "TX", 0, 999999, 4.0, 4.0),
            ScheduleRate("SCH", "DEN", "TX", 0, 50, 6.0, 6.0),
            ScheduleRate("SCH", "DEN", "TX", 51, 200, 8.0, 8.0),
            ScheduleRate("SCH", "DEN", "CA", 0, 50, 9.0, 9.0),
        ]
        engine = self._schedule_engine(rates, groups={"G100": GroupInfo("G100", group_size=40)})
        self.assertEqual(engine.run([_premium()]).gl_entries[0].rate_percent, 6.0)

    def test_missing_rate_is_not_a_failure(self) -> None:
        result = self._schedule_engine([]).run([_premium()])
        self.assertEqual(result.gl_entries, [])
        report = result.traceability[0]
        self.assertEqual(report.has_errors, 0)
        self.assertEqual(report.is_clean, 0)
        self.assertEqual(result.rows[0].rate_source, RATE_NONE)
        self.assertEqual(result.rows[0].commission_amount, Decimal("0.00"))


class FailureTraceabilityTests(unittest.TestCase):
    def _error(self, engine: CalculationEngine, premium: PremiumTransaction) -> str | None:
        result = engine.run([premium])
        self.assertEqual(result.gl_entries, [])
        report = result.traceability[0]
        self.assertEqual(report.has_errors, 1)
        self.assertEqual(report.total_commission, Decimal("0.00"))
        return report.error_messages

    def test_each_failure_reason(self) -> None:
        self.assertEqual(self._error(_engine(), _premium(amount="0")), TRACE_NON_POSITIVE_PREMIUM)
        self.assertEqual(self._error(_engine(), _premium(amount="-5.00")), TRACE_NON_POSITIVE_PREMIUM)
        self.assertEqual(self._error(_engine(), _premium(cert="C404")), TRACE_NO_POLICY)
        self.assertEqual(
            self._error(_engine(policies={"C1": _policy(group="G999")}), _premium()), TRACE_NO_PROPOSAL
        )
        self.assertEqual(self._error(_engine(with_split_version=False), _premium()), TRACE_NO_SPLIT_VERSION)
        self.assertEqual(self._error(_engine(splits=[(100.0, None)]), _premium()), TRACE_NO_HIERARCHY_VERSION)
        self.assertEqual(self._error(_engine(participants=[]), _premium()), TRACE_NO_PARTICIPANTS)

    def test_premium_before_proposal_start_has_no_proposal(self) -> None:
        engine = _engine()
        self.assertEqual(self._error(engine, _premium(when=date(2022, 12, 31))), TRACE_NO_PROPOSAL)

    def test_partial_premium_keeps_resolved_splits(self) -> None:
        engine = _engine(splits=[(60.0, "H1"), (40.0, None)])
        result = engine.run([_premium()])
        self.assertEqual([e.commission_amount for e in result.gl_entries], [Decimal("30.00")])
        report = result.traceability[0]
        self.assertEqual(report.has_errors, 1)
        self.assertEqual(report.error_messages, TRACE_NO_HIERARCHY_VERSION)
        self.assertEqual(report.total_commission, Decimal("30.00"))
        self.assertEqual(report.is_clean, 0)

    def test_failure_counts(self) -> None:
        result = _engine().run([_premium("PT1", cert="C404"), _premium("PT2", amount="0"), _premium("PT3")])
        self.assertEqual(result.failure_counts(), {TRACE_NO_POLICY: 1, TRACE_NON_POSITIVE_PREMIUM: 1})
        self.assertEqual([r.id for r in result.traceability], ["TRACE-PT1", "TRACE-PT2", "TRACE-PT3"])


class StageTests(unittest.TestCase):
    def test_proposal_listing_the_certificate_is_preferred(self) -> None:
        proposals = [_proposal("P1", start=date(2023, 3, 1)), _proposal("P2", certs=["C1"])]
        engine = _engine(proposals=proposals)
        result = engine.run([_premium()])
        self.assertEqual(result.gl_entries[0].proposal_id, "P2")

    def test_later_proposal_wins_otherwise(self) -> None:
        proposals = [_proposal("P1"), _proposal("P2", start=date(2023, 3, 1))]
        result = _engine(proposals=proposals).run([_premium()])
        self.assertEqual(result.gl_entries[0].proposal_id, "P2")

    def test_stage_rows_are_kept_on_request(self) -> None:
        engine = _engine(
            splits=[(50.0, "H1"), (50.0, "H2")],
            participants=[
                _participant("H1-V1", "B1", rate=5.0),
                _participant("H1-V1", "B2", level=2, rate=1.0),
                _participant("H2-V1", "B3", rate=5.0),
            ],
        )
        result = engine.run([_premium()], keep_stages=True)
        self.assertEqual(list(result.stage_rows), list(STAGES))
        self.assertEqual(result.stage_counts["premium_context"], 1)
        self.assertEqual(result.stage_counts["split_explosion"], 2)
        self.assertEqual(result.stage_counts["participant_expansion"], 3)
        self.assertEqual(len(result.gl_entries), 3)
        self.assertEqual(_engine().run([_premium()]).stage_rows, {})


if __name__ == "__main__":
    unittest.main()
