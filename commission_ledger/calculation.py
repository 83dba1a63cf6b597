"""Eight-stage commission cascade.

Every stage takes the complete row list of the previous stage and returns a new
list; rows are frozen and carry an ``error`` once a stage fails to resolve them,
after which later stages pass them through untouched.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from commission_ledger.models import (
    DEFAULT_PROPOSAL_ID,
    ENTRY_ASSIGNED,
    ENTRY_ORIGINAL,
    RATE_CERTIFICATE,
    RATE_NONE,
    RATE_PARTICIPANT,
    RATE_SCHEDULE,
    STATUS_ACTIVE,
    TRACE_NO_HIERARCHY_VERSION,
    TRACE_NO_PARTICIPANTS,
    TRACE_NO_POLICY,
    TRACE_NO_PROPOSAL,
    TRACE_NO_SPLIT_VERSION,
    TRACE_NON_POSITIVE_PREMIUM,
    BrokerTraceability,
    CommissionAssignmentVersion,
    GLJournalEntry,
    GroupInfo,
    HierarchyParticipant,
    HierarchyVersion,
    Policy,
    PremiumSplitParticipant,
    PremiumSplitVersion,
    PremiumTransaction,
    Proposal,
    ScheduleRate,
    TraceabilityReport,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
MAX_GROUP_SIZE = 999999

STAGES = (
    "premium_context",
    "proposal_resolution",
    "split_explosion",
    "hierarchy_resolution",
    "participant_expansion",
    "rate_resolution",
    "commission_calculation",
    "assignment_redirection",
)


def money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _dec(value: float) -> Decimal:
    return Decimal(str(value))


def _in_window(when: date, start: date, end: date | None) -> bool:
    return start <= when and (end is None or when <= end)


@dataclass(frozen=True)
class CalculationRow:
    premium_transaction_id: str
    certificate_id: str
    transaction_date: date
    premium_amount: Decimal
    group_id: str | None = None
    product_code: str | None = None
    state: str | None = None
    group_size: int | None = None
    certificate_effective_date: date | None = None
    is_first_year: bool | None = None
    basis_year: int | None = None
    proposal_id: str | None = None
    split_version_id: str | None = None
    split_sequence: int | None = None
    split_percent: float | None = None
    split_premium_amount: Decimal | None = None
    hierarchy_id: str | None = None
    hierarchy_version_id: str | None = None
    broker_id: str | None = None
    tier_level: int | None = None
    schedule_code: str | None = None
    participant_rate: float | None = None
    rate_percent: float | None = None
    rate_source: str | None = None
    commission_amount: Decimal | None = None
    assignment_version_id: str | None = None
    assigned_amount: Decimal = Decimal("0.00")
    retained_amount: Decimal = Decimal("0.00")
    recipients: tuple[tuple[str, Decimal], ...] = ()
    error: str | None = None


@dataclass
class CalculationResult:
    rows: list[CalculationRow]
    gl_entries: list[GLJournalEntry]
    traceability: list[TraceabilityReport]
    broker_traceability: list[BrokerTraceability]
    stage_counts: dict[str, int] = field(default_factory=dict)
    stage_rows: dict[str, list[CalculationRow]] = field(default_factory=dict)

    def failure_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for report in self.traceability:
            if report.has_errors:
                counts[report.error_messages] = counts.get(report.error_messages, 0) + 1
        return counts


class CalculationEngine:
    def __init__(
        self,
        policies: Mapping[str, Policy],
        proposals: Iterable[Proposal],
        split_versions: Iterable[PremiumSplitVersion],
        split_participants: Iterable[PremiumSplitParticipant],
        hierarchy_versions: Iterable[HierarchyVersion],
        hierarchy_participants: Iterable[HierarchyParticipant],
        schedule_rates: Iterable[ScheduleRate] = (),
        certificate_rates: Mapping[tuple[str, str], float] | None = None,
        assignments: Iterable[CommissionAssignmentVersion] = (),
        groups: Mapping[str, GroupInfo] | None = None,
    ) -> None:
        self.policies = policies
        self.groups = groups or {}
        self.certificate_rates = certificate_rates or {}

        self.proposals_by_group: dict[str, list[Proposal]] = {}
        for proposal in sorted(proposals, key=lambda p: p.id):
            self.proposals_by_group.setdefault(proposal.group_id, []).append(proposal)

        self.split_versions: dict[str, list[PremiumSplitVersion]] = {}
        for version in split_versions:
            self.split_versions.setdefault(version.proposal_id, []).append(version)
        self.split_participants: dict[str, list[PremiumSplitParticipant]] = {}
        for sp in sorted(split_participants, key=lambda p: p.sequence):
            self.split_participants.setdefault(sp.version_id, []).append(sp)

        self.hierarchy_versions: dict[str, list[HierarchyVersion]] = {}
        for hv in hierarchy_versions:
            self.hierarchy_versions.setdefault(hv.hierarchy_id, []).append(hv)
        self.hierarchy_participants: dict[str, list[HierarchyParticipant]] = {}
        for hp in sorted(hierarchy_participants, key=lambda p: (p.level, p.broker_id)):
            self.hierarchy_participants.setdefault(hp.hierarchy_version_id, []).append(hp)

        self.schedule_rates: dict[tuple[str, str], list[ScheduleRate]] = {}
        for rate in schedule_rates:
            self.schedule_rates.setdefault((rate.schedule_code, rate.product_code), []).append(rate)

        self.assignments: dict[str, list[CommissionAssignmentVersion]] = {}
        for cav in assignments:
            self.assignments.setdefault(cav.broker_id, []).append(cav)

    # Stage 1
    def premium_context(self, premiums: Iterable[PremiumTransaction]) -> list[CalculationRow]:
        rows = []
        for premium in sorted(premiums, key=lambda p: p.id):
            row = CalculationRow(
                premium_transaction_id=premium.id,
                certificate_id=premium.certificate_id,
                transaction_date=premium.transaction_date,
                premium_amount=premium.premium_amount,
            )
            if premium.premium_amount <= 0:
                rows.append(replace(row, error=TRACE_NON_POSITIVE_PREMIUM))
                continue
            policy = self.policies.get(premium.certificate_id)
            if policy is None:
                rows.append(replace(row, error=TRACE_NO_POLICY))
                continue
            group = self.groups.get(policy.group_id or "")
            effective = policy.effective_date
            try:
                anniversary = effective.replace(year=effective.year + 1)
            except ValueError:
                anniversary = date(effective.year + 1, 3, 1)
            rows.append(
                replace(
                    row,
                    group_id=policy.group_id,
                    product_code=policy.product_code,
                    state=policy.state or (group.situs_state if group else None),
                    group_size=group.group_size if group else None,
                    certificate_effective_date=effective,
                    is_first_year=premium.transaction_date < anniversary,
                    basis_year=max(1, premium.transaction_date.year - effective.year + 1),
                )
            )
        return rows

    # Stage 2
    def resolve_proposal(self, row: CalculationRow) -> Proposal | None:
        candidates = [
            p
            for p in self.proposals_by_group.get(row.group_id or "", [])
            if _in_window(row.transaction_date, p.effective_date_from, p.effective_date_to)
        ]
        if not candidates:
            return None
        return max(
            candidates,
            key=lambda p: (
                row.certificate_id in p.certificate_ids,
                row.product_code in p.product_codes,
                p.effective_date_from,
            ),
        )

    def proposal_resolution(self, rows: list[CalculationRow]) -> list[CalculationRow]:
        out = []
        for row in rows:
            if row.error:
                out.append(row)
                continue
            proposal = self.resolve_proposal(row)
            if proposal is None:
                out.append(replace(row, error=TRACE_NO_PROPOSAL))
            else:
                out.append(replace(row, proposal_id=proposal.id))
        return out

    # Stage 3
    def split_explosion(self, rows: list[CalculationRow]) -> list[CalculationRow]:
        out = []
        for row in rows:
            if row.error:
                out.append(row)
                continue
            active = [
                v
                for v in self.split_versions.get(row.proposal_id, [])
                if v.status == STATUS_ACTIVE and _in_window(row.transaction_date, v.effective_from, v.effective_to)
            ]
            if not active:
                out.append(replace(row, error=TRACE_NO_SPLIT_VERSION))
                continue
            version = max(active, key=lambda v: (v.effective_from, v.id))
            for sp in self.split_participants.get(version.id, []):
                out.append(
                    replace(
                        row,
                        split_version_id=version.id,
                        split_sequence=sp.sequence,
                        split_percent=sp.split_percent,
                        split_premium_amount=money(row.premium_amount * _dec(sp.split_percent) / HUNDRED),
                        hierarchy_id=sp.hierarchy_id,
                    )
                )
        return out

    # Stage 4
    def hierarchy_resolution(self, rows: list[CalculationRow]) -> list[CalculationRow]:
        out = []
        for row in rows:
            if row.error:
                out.append(row)
                continue
            active = [
                v
                for v in self.hierarchy_versions.get(row.hierarchy_id or "", [])
                if v.status == STATUS_ACTIVE and _in_window(row.transaction_date, v.effective_from, v.effective_to)
            ]
            if not active:
                out.append(replace(row, error=TRACE_NO_HIERARCHY_VERSION))
                continue
            version = max(active, key=lambda v: (v.effective_from, v.version))
            out.append(replace(row, hierarchy_version_id=version.id))
        return out

    # Stage 5
    def participant_expansion(self, rows: list[CalculationRow]) -> list[CalculationRow]:
        out = []
        for row in rows:
            if row.error:
                out.append(row)
                continue
            participants = self.hierarchy_participants.get(row.hierarchy_version_id, [])
            if not participants:
                out.append(replace(row, error=TRACE_NO_PARTICIPANTS))
                continue
            for hp in participants:
                out.append(
                    replace(
                        row,
                        broker_id=hp.broker_id,
                        tier_level=hp.level,
                        schedule_code=hp.schedule_code,
                        participant_rate=hp.commission_rate,
                    )
                )
        return out

    # Stage 6
    def schedule_rate(self, row: CalculationRow) -> float | None:
        if not row.schedule_code:
            return None
        matches = []
        for rate in self.schedule_rates.get((row.schedule_code, row.product_code or ""), []):
            if rate.state is not None and rate.state != row.state:
                continue
            low = rate.group_size_from or 0
            high = rate.group_size_to if rate.group_size_to is not None else MAX_GROUP_SIZE
            if row.group_size and not low <= row.group_size <= high:
                continue
            matches.append(rate)
        if not matches:
            return None
        best = min(
            matches,
            key=lambda r: (
                r.state is None,
                (r.group_size_to if r.group_size_to is not None else MAX_GROUP_SIZE) - (r.group_size_from or 0),
                r.schedule_id or "",
            ),
        )
        if row.is_first_year:
            return best.first_year_rate if best.first_year_rate is not None else best.renewal_rate
        return best.renewal_rate if best.renewal_rate is not None else best.first_year_rate

    def rate_resolution(self, rows: list[CalculationRow]) -> list[CalculationRow]:
        out = []
        for row in rows:
            if row.error:
                out.append(row)
                continue
            cert_rate = self.certificate_rates.get((row.certificate_id, row.broker_id))
            if cert_rate is not None:
                rate, source = cert_rate, RATE_CERTIFICATE
            elif row.participant_rate is not None and row.participant_rate > 0:
                rate, source = row.participant_rate, RATE_PARTICIPANT
            else:
                scheduled = self.schedule_rate(row)
                if scheduled is not None:
                    rate, source = scheduled, RATE_SCHEDULE
                else:
                    rate, source = 0.0, RATE_NONE
            out.append(replace(row, rate_percent=rate, rate_source=source))
        return out

    # Stage 7
    def commission_calculation(self, rows: list[CalculationRow]) -> list[CalculationRow]:
        return [
            row
            if row.error
            else replace(row, commission_amount=money(row.split_premium_amount * _dec(row.rate_percent) / HUNDRED))
            for row in rows
        ]

    # Stage 8
    def active_assignment(self, row: CalculationRow) -> CommissionAssignmentVersion | None:
        candidates = [
            cav
            for cav in self.assignments.get(row.broker_id or "", [])
            if cav.status == STATUS_ACTIVE
            and cav.recipients
            and cav.proposal_id in (row.proposal_id, DEFAULT_PROPOSAL_ID)
            and _in_window(row.transaction_date, cav.effective_from, cav.effective_to)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda c: (c.proposal_id != DEFAULT_PROPOSAL_ID, c.effective_from, c.id))

    def assignment_redirection(self, rows: list[CalculationRow]) -> list[CalculationRow]:
        out = []
        for row in rows:
            if row.error:
                out.append(row)
                continue
            cav = self.active_assignment(row)
            if cav is None:
                out.append(replace(row, retained_amount=row.commission_amount))
                continue
            assigned = money(row.commission_amount * _dec(cav.total_assigned_percent) / HUNDRED)
            out.append(
                replace(
                    row,
                    assignment_version_id=cav.id,
                    assigned_amount=assigned,
                    retained_amount=row.commission_amount - assigned,
                    recipients=split_among_recipients(assigned, cav),
                )
            )
        return out

    def run(self, premiums: Iterable[PremiumTransaction], keep_stages: bool = False) -> CalculationResult:
        stage_counts: dict[str, int] = {}
        stage_rows: dict[str, list[CalculationRow]] = {}

        rows = self.premium_context(premiums)
        for name in STAGES:
            if name != "premium_context":
                rows = getattr(self, name)(rows)
            stage_counts[name] = len(rows)
            if keep_stages:
                stage_rows[name] = rows
            logger.debug("Stage %s produced %s rows", name, len(rows))

        result = build_outputs(rows)
        result.stage_counts = stage_counts
        result.stage_rows = stage_rows
        logger.info(
            "Calculation: %s premiums -> %s GL entries, %s failed reports",
            len(result.traceability),
            len(result.gl_entries),
            sum(1 for r in result.traceability if r.has_errors),
        )
        return result


def split_among_recipients(
    assigned: Decimal, cav: CommissionAssignmentVersion
) -> tuple[tuple[str, Decimal], ...]:
    """Pro-rata shares of ``assigned``; the last recipient takes the rounding remainder."""
    recipients = sorted(cav.recipients, key=lambda r: r.recipient_broker_id)
    weight = sum(_dec(r.percentage) for r in recipients)
    shares = []
    remaining = assigned
    for i, recipient in enumerate(recipients):
        if i == len(recipients) - 1 or weight == 0:
            amount = remaining
        else:
            amount = money(assigned * _dec(recipient.percentage) / weight)
        remaining -= amount
        shares.append((recipient.recipient_broker_id, amount))
        if weight == 0:
            break
    return tuple(shares)


def _gl_entry(row: CalculationRow, gl_id: str, broker_id: str, amount: Decimal, entry_type: str) -> GLJournalEntry:
    return GLJournalEntry(
        id=gl_id,
        premium_transaction_id=row.premium_transaction_id,
        policy_id=row.certificate_id,
        broker_id=broker_id,
        commission_amount=amount,
        entry_type=entry_type,
        premium_amount=row.split_premium_amount,
        rate_percent=row.rate_percent,
        rate_source=row.rate_source,
        transaction_date=row.transaction_date,
        product_code=row.product_code,
        state=row.state,
        group_id=row.group_id,
        proposal_id=row.proposal_id,
        hierarchy_id=row.hierarchy_id,
        hierarchy_version_id=row.hierarchy_version_id,
        split_sequence=row.split_sequence,
        split_percent=row.split_percent,
        tier_level=row.tier_level,
        is_first_year=row.is_first_year,
        basis_year=row.basis_year,
        source_broker_id=row.broker_id if entry_type == ENTRY_ASSIGNED else None,
        assignment_version_id=row.assignment_version_id,
    )


def build_outputs(rows: list[CalculationRow]) -> CalculationResult:
    """GL entries, one traceability report per premium and one broker trace per GL entry."""
    gl_entries: list[GLJournalEntry] = []
    broker_traces: list[BrokerTraceability] = []
    reports: list[TraceabilityReport] = []

    by_premium: dict[str, list[CalculationRow]] = {}
    for row in rows:
        by_premium.setdefault(row.premium_transaction_id, []).append(row)

    for premium_id in sorted(by_premium):
        premium_rows = by_premium[premium_id]
        report_id = f"TRACE-{premium_id}"
        premium_gl: list[GLJournalEntry] = []

        for row in premium_rows:
            if row.error:
                continue
            lines = []
            if row.retained_amount != 0:
                lines.append((row.broker_id, row.retained_amount, ENTRY_ORIGINAL))
            for recipient_id, amount in row.recipients:
                if amount != 0:
                    lines.append((recipient_id, amount, ENTRY_ASSIGNED))
            for broker_id, amount, entry_type in lines:
                entry = _gl_entry(row, f"GL-{len(gl_entries) + 1}", broker_id, amount, entry_type)
                gl_entries.append(entry)
                premium_gl.append(entry)
                broker_traces.append(
                    BrokerTraceability(
                        id=f"BT-{entry.id}",
                        traceability_report_id=report_id,
                        gl_entry_id=entry.id,
                        broker_id=broker_id,
                        level=row.tier_level,
                        level_name=f"Level {row.tier_level}",
                        split_sequence=row.split_sequence,
                        split_percent=row.split_percent,
                        rate_percent=row.rate_percent,
                        rate_source=row.rate_source,
                        commission_amount=amount,
                        hierarchy_id=row.hierarchy_id,
                        hierarchy_version_id=row.hierarchy_version_id,
                        is_assigned=1 if entry_type == ENTRY_ASSIGNED else 0,
                        assigned_from_broker_id=row.broker_id if entry_type == ENTRY_ASSIGNED else None,
                        entry_type=entry_type,
                    )
                )

        errors: list[str] = []
        for row in premium_rows:
            if row.error and row.error not in errors:
                errors.append(row.error)
        resolved = [r for r in premium_rows if not r.error]
        first = premium_rows[0]
        has_assignments = any(r.assignment_version_id for r in resolved)
        reports.append(
            TraceabilityReport(
                id=report_id,
                premium_transaction_id=premium_id,
                policy_id=first.certificate_id,
                transaction_date=first.transaction_date,
                premium_amount=first.premium_amount,
                total_commission=sum((e.commission_amount for e in premium_gl), Decimal("0.00")),
                proposal_id=first.proposal_id,
                group_id=first.group_id,
                product_code=first.product_code,
                state=first.state,
                is_first_year=first.is_first_year,
                basis_year=first.basis_year,
                hierarchy_count=len({r.hierarchy_id for r in resolved}),
                participant_count=len(resolved),
                has_assignments=1 if has_assignments else 0,
                has_errors=1 if errors else 0,
                error_messages="; ".join(errors) if errors else None,
                is_clean=1 if not errors and all(r.rate_source != RATE_NONE for r in resolved) else 0,
            )
        )

    return CalculationResult(rows, gl_entries, reports, broker_traces)
