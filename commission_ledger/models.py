from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

REASSIGNED_NONE = "None"
REASSIGNED_TRANSFERRED = "Transferred"
REASSIGNED_ASSIGNED = "Assigned"
REASSIGNED_TYPES = frozenset({REASSIGNED_NONE, REASSIGNED_TRANSFERRED, REASSIGNED_ASSIGNED})
TRANSFER_TYPES = frozenset({REASSIGNED_TRANSFERRED, REASSIGNED_ASSIGNED})

STATUS_ACTIVE = "Active"

DEFAULT_PROPOSAL_ID = "__DEFAULT__"
WILDCARD_PLAN = "*"

# PHA reasons
REASON_INVALID_GROUP = "Invalid GroupId"
REASON_SPLIT_MISMATCH = "Split percent mismatch"
REASON_BUSINESS_ENTROPY = "BusinessDrivenEntropy"
REASON_HUMAN_ERROR_OUTLIER = "HumanErrorOutlier"

# PHA entry types
ENTRY_TYPE_HUMAN_ERROR = 1
ENTRY_TYPE_STRUCTURAL = 2

# Traceability failure reasons
TRACE_NON_POSITIVE_PREMIUM = "Non-positive premium amount"
TRACE_NO_POLICY = "No matching policy"
TRACE_NO_PROPOSAL = "No matching proposal"
TRACE_NO_SPLIT_VERSION = "No matching split version"
TRACE_NO_HIERARCHY_VERSION = "No active hierarchy version"
TRACE_NO_PARTICIPANTS = "No hierarchy participants"

# Rate sources
RATE_CERTIFICATE = "CertificateRate"
RATE_PARTICIPANT = "ParticipantRate"
RATE_SCHEDULE = "ScheduleLookup"
RATE_NONE = "NoRate"

ENTRY_ORIGINAL = "Original"
ENTRY_ASSIGNED = "Assigned"

CONFORMANT = "Conformant"
NEARLY_CONFORMANT = "Nearly Conformant"
NON_CONFORMANT = "Non-Conformant"
MATCH_ONE = "Conformant"
MATCH_NONE = "No Match"
MATCH_MULTIPLE = "Multiple Matches"

_ZERO_GROUP = re.compile(r"^G?0+$")
_NULL_PLANS = {"", "NULL", "N/A"}


def is_invalid_group(group_id: str | None) -> bool:
    """Null, blank or all-zero group ids mark direct-to-consumer policies."""
    if group_id is None:
        return True
    group_id = group_id.strip()
    return not group_id or bool(_ZERO_GROUP.match(group_id))


def normalize_plan_code(plan_code: str | None) -> str:
    if plan_code is None or plan_code.strip().upper() in _NULL_PLANS:
        return WILDCARD_PLAN
    return plan_code.strip()


@dataclass(frozen=True)
class CertificateSplitRow:
    certificate_id: str
    split_sequence: int
    broker_sequence: int
    group_id: str | None
    product_code: str
    plan_code: str | None
    effective_date: date
    split_percent: float
    writing_broker_id: str
    split_broker_id: str
    paid_broker_id: str | None = None
    reassigned_type: str = REASSIGNED_NONE
    schedule_code: str | None = None
    certificate_rate: float | None = None
    situs_state: str | None = None


@dataclass(frozen=True)
class HierarchyParticipant:
    id: str
    hierarchy_version_id: str
    broker_id: str
    level: int
    split_percent: float
    schedule_code: str | None
    commission_rate: float | None = None


@dataclass(frozen=True)
class HierarchyVersion:
    id: str
    hierarchy_id: str
    version: int
    status: str
    effective_from: date
    effective_to: date | None = None


@dataclass(frozen=True)
class Hierarchy:
    id: str
    group_id: str
    writing_broker_id: str
    first_upline_id: str | None
    signature: str
    effective_date: date
    current_version_id: str
    situs_state: str | None = None


@dataclass
class Proposal:
    id: str
    group_id: str
    content_hash: str
    broker_id: str | None
    situs_state: str | None
    product_codes: set[str]
    plan_codes: set[str]
    effective_date_from: date
    effective_date_to: date | None
    date_range_from: int
    date_range_to: int
    certificate_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PremiumSplitVersion:
    id: str
    proposal_id: str
    group_id: str
    effective_from: date
    effective_to: date | None
    total_split_percent: float
    status: str = STATUS_ACTIVE


@dataclass(frozen=True)
class PremiumSplitParticipant:
    id: str
    version_id: str
    sequence: int
    split_percent: float
    writing_broker_id: str
    hierarchy_id: str | None


@dataclass(frozen=True)
class ProposalKeyMapping:
    group_id: str
    effective_year: int
    product_code: str
    plan_code: str
    proposal_id: str
    content_hash: str


@dataclass(frozen=True)
class PolicyHierarchyParticipant:
    broker_id: str
    level: int
    schedule_code: str | None


@dataclass(frozen=True)
class PolicyHierarchyAssignment:
    id: str
    policy_id: str
    group_id: str | None
    writing_broker_id: str
    split_sequence: int
    split_percent: float
    non_conformant_reason: str
    entry_type: int
    effective_date: date
    participants: tuple[PolicyHierarchyParticipant, ...] = ()
    is_non_conforming: int = 1


@dataclass(frozen=True)
class CertificateConformance:
    certificate_id: str
    group_id: str
    effective_year: int
    product_code: str
    plan_code: str
    match_count: int
    matched_proposal_ids: tuple[str, ...]
    status: str


@dataclass(frozen=True)
class GroupConformanceStats:
    group_id: str
    total_certificates: int
    conformant_certificates: int
    non_conformant_certificates: int
    conformance_percentage: float
    classification: str
    group_name: str | None = None
    situs_state: str | None = None


@dataclass(frozen=True)
class GroupInfo:
    group_id: str
    group_name: str | None = None
    group_size: int | None = None
    situs_state: str | None = None


@dataclass(frozen=True)
class Policy:
    certificate_id: str
    group_id: str | None
    product_code: str
    plan_code: str | None
    state: str | None
    effective_date: date


@dataclass(frozen=True)
class PremiumTransaction:
    id: str
    certificate_id: str
    transaction_date: date
    premium_amount: Decimal


@dataclass(frozen=True)
class ScheduleRate:
    schedule_code: str
    product_code: str
    state: str | None
    group_size_from: int | None
    group_size_to: int | None
    first_year_rate: float | None
    renewal_rate: float | None
    schedule_id: str | None = None


@dataclass(frozen=True)
class CommissionAssignmentRecipient:
    version_id: str
    recipient_broker_id: str
    percentage: float


@dataclass(frozen=True)
class CommissionAssignmentVersion:
    id: str
    broker_id: str
    proposal_id: str
    effective_from: date
    effective_to: date | None
    total_assigned_percent: float
    recipients: tuple[CommissionAssignmentRecipient, ...] = ()
    status: str = STATUS_ACTIVE


@dataclass(frozen=True)
class GLJournalEntry:
    id: str
    premium_transaction_id: str
    policy_id: str
    broker_id: str
    commission_amount: Decimal
    entry_type: str
    premium_amount: Decimal
    rate_percent: float
    rate_source: str
    transaction_date: date
    product_code: str
    state: str | None
    group_id: str | None
    proposal_id: str | None
    hierarchy_id: str | None
    hierarchy_version_id: str | None
    split_sequence: int
    split_percent: float
    tier_level: int
    is_first_year: bool
    basis_year: int
    source_broker_id: str | None = None
    assignment_version_id: str | None = None


@dataclass(frozen=True)
class TraceabilityReport:
    id: str
    premium_transaction_id: str
    policy_id: str
    transaction_date: date
    premium_amount: Decimal
    total_commission: Decimal
    proposal_id: str | None
    group_id: str | None
    product_code: str | None
    state: str | None
    is_first_year: bool | None
    basis_year: int | None
    hierarchy_count: int
    participant_count: int
    has_assignments: int
    has_errors: int
    error_messages: str | None
    is_clean: int


@dataclass(frozen=True)
class BrokerTraceability:
    id: str
    traceability_report_id: str
    gl_entry_id: str
    broker_id: str
    level: int
    level_name: str
    split_sequence: int
    split_percent: float
    rate_percent: float
    rate_source: str
    commission_amount: Decimal
    hierarchy_id: str | None
    hierarchy_version_id: str | None
    is_assigned: int
    assigned_from_broker_id: str | None
    entry_type: str
