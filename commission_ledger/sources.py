from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path

from commission_ledger.config import DebugCaps, RetryPolicy
from commission_ledger.errors import DataQualityError
from commission_ledger.models import (
    DEFAULT_PROPOSAL_ID,
    REASSIGNED_NONE,
    REASSIGNED_TYPES,
    STATUS_ACTIVE,
    CertificateSplitRow,
    CommissionAssignmentRecipient,
    CommissionAssignmentVersion,
    GroupInfo,
    Policy,
    PremiumTransaction,
    ScheduleRate,
)
from commission_ledger.retry import with_retry

logger = logging.getLogger(__name__)

CERTIFICATES_FILE = "certificates.csv"
PREMIUMS_FILE = "premiums.csv"
GROUPS_FILE = "groups.csv"
SCHEDULE_RATES_FILE = "schedule_rates.csv"
COMMISSION_DETAILS_FILE = "commission_details.csv"
COMMISSION_ASSIGNMENTS_FILE = "commission_assignments.csv"


def _read_csv(path: Path) -> list[dict[str, str]]:
    if not path.exists():
        return []
    with path.open(newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


def _text(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _float(value: str | None) -> float | None:
    value = _text(value)
    return None if value is None else float(value)


def _int(value: str | None) -> int | None:
    value = _text(value)
    return None if value is None else int(float(value))


def _date(value: str | None) -> date | None:
    value = _text(value)
    return None if value is None else date.fromisoformat(value[:10])


def _required_date(value: str | None) -> date:
    parsed = _date(value)
    if parsed is None:
        raise ValueError("missing date")
    return parsed


@dataclass
class SourceData:
    certificates: list[CertificateSplitRow] = field(default_factory=list)
    premiums: list[PremiumTransaction] = field(default_factory=list)
    groups: dict[str, GroupInfo] = field(default_factory=dict)
    schedule_rates: list[ScheduleRate] = field(default_factory=list)
    certificate_rates: dict[tuple[str, str], float] = field(default_factory=dict)
    assignments: list[CommissionAssignmentVersion] = field(default_factory=list)

    def policies(self) -> dict[str, Policy]:
        policies: dict[str, Policy] = {}
        for row in sorted(self.certificates, key=lambda r: (r.certificate_id, r.split_sequence, r.broker_sequence)):
            if row.certificate_id in policies:
                continue
            group = self.groups.get((row.group_id or "").strip())
            policies[row.certificate_id] = Policy(
                certificate_id=row.certificate_id,
                group_id=row.group_id.strip() if row.group_id else None,
                product_code=row.product_code,
                plan_code=row.plan_code,
                state=row.situs_state or (group.situs_state if group else None),
                effective_date=row.effective_date,
            )
        return policies

    def counts(self) -> dict[str, int]:
        return {
            "certificate_rows": len(self.certificates),
            "certificates": len({r.certificate_id for r in self.certificates}),
            "premiums": len(self.premiums),
            "groups": len(self.groups),
            "schedule_rates": len(self.schedule_rates),
            "certificate_rates": len(self.certificate_rates),
            "assignments": len(self.assignments),
        }


def parse_certificate(row: dict[str, str], rates: dict[tuple[str, str], float]) -> CertificateSplitRow:
    cert_id = row["CertificateId"].strip()
    split_broker = (row.get("SplitBrokerId") or "").strip()
    reassigned = _text(row.get("ReassignedType")) or REASSIGNED_NONE
    if reassigned not in REASSIGNED_TYPES:
        logger.debug("Unknown ReassignedType %r on certificate %s", reassigned, cert_id)
        reassigned = REASSIGNED_NONE
    try:
        return _certificate_row(row, cert_id, split_broker, reassigned, rates)
    except (KeyError, AttributeError, ValueError) as exc:
        raise DataQualityError(f"Unparseable certificate row ({exc})", cert_id) from exc


def _certificate_row(
    row: dict[str, str], cert_id: str, split_broker: str, reassigned: str, rates: dict[tuple[str, str], float]
) -> CertificateSplitRow:
    return CertificateSplitRow(
        certificate_id=cert_id,
        split_sequence=int(row["SplitSequence"]),
        broker_sequence=int(row["BrokerSequence"]),
        group_id=row.get("GroupId"),
        product_code=(row.get("ProductCode") or "").strip(),
        plan_code=row.get("PlanCode"),
        effective_date=_required_date(row["EffectiveDate"]),
        split_percent=float(row["SplitPercent"]),
        writing_broker_id=row["WritingBrokerId"].strip(),
        split_broker_id=split_broker,
        paid_broker_id=_text(row.get("PaidBrokerId")),
        reassigned_type=reassigned,
        schedule_code=_text(row.get("ScheduleCode")),
        certificate_rate=rates.get((cert_id, split_broker)),
        situs_state=_text(row.get("SitusState")),
    )


def parse_certificates(rows: list[dict[str, str]], rates: dict[tuple[str, str], float]) -> list[CertificateSplitRow]:
    parsed = []
    for row in rows:
        if not (row.get("CertificateId") or "").strip():
            continue
        try:
            parsed.append(parse_certificate(row, rates))
        except DataQualityError as exc:
            logger.warning("Skipping certificate row: %s", exc)
    return parsed


def read_certificate_rates(path: Path) -> dict[tuple[str, str], float]:
    """Lowest positive RealCommissionRate per (certificate, split broker)."""
    rates: dict[tuple[str, str], float] = {}
    for row in _read_csv(path):
        rate = _float(row.get("RealCommissionRate"))
        if rate is None or rate <= 0:
            continue
        key = (row["CertificateId"].strip(), row["SplitBrokerId"].strip())
        rates[key] = min(rate, rates.get(key, rate))
    return rates


def parse_premium(row: dict[str, str]) -> PremiumTransaction:
    premium_id = (row.get("PremiumTransactionId") or "").strip()
    try:
        return PremiumTransaction(
            id=premium_id,
            certificate_id=row["CertificateId"].strip(),
            transaction_date=_required_date(row["TransactionDate"]),
            premium_amount=Decimal((row.get("PremiumAmount") or "").strip() or "0"),
        )
    except (KeyError, AttributeError, ValueError, InvalidOperation) as exc:
        raise DataQualityError(f"Unparseable premium row ({exc!r})", premium_id) from exc


def read_premiums(path: Path) -> list[PremiumTransaction]:
    premiums = []
    for row in _read_csv(path):
        try:
            premiums.append(parse_premium(row))
        except DataQualityError as exc:
            logger.warning("Skipping premium row: %s", exc)
    return premiums


def read_groups(path: Path) -> dict[str, GroupInfo]:
    groups = {}
    for row in _read_csv(path):
        group_id = row["GroupId"].strip()
        groups[group_id] = GroupInfo(
            group_id=group_id,
            group_name=_text(row.get("GroupName")),
            group_size=_int(row.get("GroupSize")),
            situs_state=_text(row.get("SitusState")),
        )
    return groups


def read_schedule_rates(path: Path) -> list[ScheduleRate]:
    return [
        ScheduleRate(
            schedule_code=row["ScheduleCode"].strip(),
            product_code=row["ProductCode"].strip(),
            state=_text(row.get("State")),
            group_size_from=_int(row.get("GroupSizeFrom")),
            group_size_to=_int(row.get("GroupSizeTo")),
            first_year_rate=_float(row.get("FirstYearRate")),
            renewal_rate=_float(row.get("RenewalRate")),
            schedule_id=_text(row.get("ScheduleId")),
        )
        for row in _read_csv(path)
    ]


def read_assignments(path: Path) -> list[CommissionAssignmentVersion]:
    """One CSV row per recipient; version columns repeat on every row."""
    headers: dict[str, dict[str, str]] = {}
    recipients: dict[str, list[CommissionAssignmentRecipient]] = {}
    for row in _read_csv(path):
        version_id = row["VersionId"].strip()
        headers.setdefault(version_id, row)
        recipient = _text(row.get("RecipientBrokerId"))
        if recipient:
            recipients.setdefault(version_id, []).append(
                CommissionAssignmentRecipient(version_id, recipient, _float(row.get("Percentage")) or 0.0)
            )
    return [
        CommissionAssignmentVersion(
            id=version_id,
            broker_id=row["BrokerId"].strip(),
            proposal_id=_text(row.get("ProposalId")) or DEFAULT_PROPOSAL_ID,
            effective_from=_date(row["EffectiveFrom"]),
            effective_to=_date(row.get("EffectiveTo")),
            total_assigned_percent=_float(row.get("TotalAssignedPercent")) or 0.0,
            recipients=tuple(recipients.get(version_id, [])),
            status=_text(row.get("Status")) or STATUS_ACTIVE,
        )
        for version_id, row in headers.items()
    ]


def apply_debug_caps(data: SourceData, caps: DebugCaps) -> SourceData:
    """Trim inputs to the configured debug record counts."""
    certificates = data.certificates
    group_cap = caps.cap("groups")
    if group_cap is not None:
        keep = set(sorted({(r.group_id or "").strip() for r in certificates})[:group_cap])
        certificates = [r for r in certificates if (r.group_id or "").strip() in keep]
    broker_cap = caps.cap("brokers")
    if broker_cap is not None:
        keep = set(sorted({r.writing_broker_id for r in certificates})[:broker_cap])
        certificates = [r for r in certificates if r.writing_broker_id in keep]
    policy_cap = caps.cap("policies")
    if policy_cap is not None:
        keep = set(sorted({r.certificate_id for r in certificates})[:policy_cap])
        certificates = [r for r in certificates if r.certificate_id in keep]

    cert_ids = {r.certificate_id for r in certificates}
    premiums = [p for p in data.premiums if p.certificate_id in cert_ids]
    premium_cap = caps.cap("premiums")
    if premium_cap is not None:
        premiums = sorted(premiums, key=lambda p: p.id)[:premium_cap]

    return SourceData(
        certificates=certificates,
        premiums=premiums,
        groups=data.groups,
        schedule_rates=data.schedule_rates,
        certificate_rates=data.certificate_rates,
        assignments=data.assignments,
    )


def load_sources(data_dir: Path, caps: DebugCaps | None = None, retry: RetryPolicy | None = None) -> SourceData:
    retry = retry or RetryPolicy()

    def _read(name: str, reader):
        return with_retry(
            lambda: reader(data_dir / name),
            operation=f"read {name}",
            attempts=retry.attempts,
            base_delay_seconds=retry.base_delay_seconds,
            max_delay_seconds=retry.max_delay_seconds,
        )

    rates = _read(COMMISSION_DETAILS_FILE, read_certificate_rates)
    raw_certificates = _read(CERTIFICATES_FILE, _read_csv)
    data = SourceData(
        certificates=parse_certificates(raw_certificates, rates),
        premiums=_read(PREMIUMS_FILE, read_premiums),
        groups=_read(GROUPS_FILE, read_groups),
        schedule_rates=_read(SCHEDULE_RATES_FILE, read_schedule_rates),
        certificate_rates=rates,
        assignments=_read(COMMISSION_ASSIGNMENTS_FILE, read_assignments),
    )
    if caps is not None and caps.enabled:
        data = apply_debug_caps(data, caps)
    logger.info("Loaded sources from %s: %s", data_dir, data.counts())
    return data
