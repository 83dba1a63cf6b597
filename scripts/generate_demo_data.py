#!/usr/bin/env python3
"""Generate synthetic certificate and premium data for the ledger pipeline.

Creates (under --output):
- certificates.csv
- premiums.csv
- groups.csv
- schedule_rates.csv
- commission_details.csv
- commission_assignments.csv

A handful of deliberate data-quality cases are mixed in: direct-to-consumer
certificates with zero group ids, split percents that do not add up, broker
transfers, self-payments and certificate-level rate overrides.
"""

from __future__ import annotations

import argparse
import csv
import random
from datetime import date, timedelta
from pathlib import Path
from typing import Iterable

PRODUCTS = ["DEN", "VIS", "LIFE", "STD"]
PLANS = ["A", "B", "", "N/A"]
STATES = ["TX", "FL", "CA", "NY", "IL"]
SCHEDULES = ["SCH-STD", "SCH-PREM", "SCH-RET"]
GROUP_WORDS = ["Acme", "Northwind", "Contoso", "Globex", "Initech", "Umbrella", "Hooli", "Vandelay"]

CERTIFICATE_FIELDS = [
    "CertificateId", "SplitSequence", "BrokerSequence", "GroupId", "ProductCode", "PlanCode",
    "EffectiveDate", "SplitPercent", "WritingBrokerId", "SplitBrokerId", "PaidBrokerId",
    "ReassignedType", "ScheduleCode", "SitusState",
]


def broker_id(idx: int) -> str:
    return f"B{idx:04d}"


def iso(d: date) -> str:
    return d.isoformat()


def write_csv(path: Path, rows: Iterable[dict], fieldnames: list[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def split_layout(rng: random.Random) -> list[int]:
    return rng.choice([[100], [100], [70, 30], [50, 50], [60, 40]])


def generate(args: argparse.Namespace) -> None:
    rng = random.Random(args.seed)
    out = args.output

    groups = []
    for g in range(1, args.groups + 1):
        groups.append(
            {
                "GroupId": f"G{g:05d}",
                "GroupName": f"{rng.choice(GROUP_WORDS)} {g}",
                "GroupSize": rng.choice([12, 45, 120, 480, 2500]),
                "SitusState": rng.choice(STATES),
            }
        )

    # a few chains per group keep proposals small and shared across certificates
    chains: dict[str, list[list[list[str]]]] = {}
    for group in groups:
        options = []
        for _ in range(rng.randint(1, 3)):
            layout = []
            for _ in split_layout(rng):
                depth = rng.randint(1, 3)
                layout.append([broker_id(rng.randint(1, args.brokers)) for _ in range(depth)])
            options.append(layout)
        chains[group["GroupId"]] = options

    certificates: list[dict] = []
    details: list[dict] = []
    premiums: list[dict] = []
    start = date(2022, 1, 1)
    for c in range(1, args.certificates + 1):
        cert_id = f"C{c:06d}"
        group = rng.choice(groups)
        group_id = group["GroupId"]
        if rng.random() < 0.03:
            group_id = rng.choice(["00000", "G00000", ""])
        effective = start + timedelta(days=rng.randint(0, 900))
        product = rng.choice(PRODUCTS)
        plan = rng.choice(PLANS)
        layout = rng.choice(chains[group["GroupId"]])
        percents = [100] if len(layout) == 1 else [100 // len(layout)] * len(layout)
        percents[-1] = 100 - sum(percents[:-1])
        if rng.random() < 0.02:
            percents[0] += 5

        for split_seq, (chain, pct) in enumerate(zip(layout, percents), start=1):
            writing = chain[0]
            for level, split_broker in enumerate(chain, start=1):
                paid, reassigned = split_broker, "None"
                roll = rng.random()
                if roll < 0.03:
                    paid, reassigned = broker_id(rng.randint(1, args.brokers)), "Assigned"
                elif roll < 0.05:
                    reassigned = "Transferred"
                certificates.append(
                    {
                        "CertificateId": cert_id,
                        "SplitSequence": split_seq,
                        "BrokerSequence": level,
                        "GroupId": group_id,
                        "ProductCode": product,
                        "PlanCode": plan,
                        "EffectiveDate": iso(effective),
                        "SplitPercent": pct,
                        "WritingBrokerId": writing,
                        "SplitBrokerId": split_broker,
                        "PaidBrokerId": paid,
                        "ReassignedType": reassigned,
                        "ScheduleCode": SCHEDULES[(level - 1) % len(SCHEDULES)],
                        "SitusState": group["SitusState"],
                    }
                )
                if level == 1 and rng.random() < 0.05:
                    details.append(
                        {
                            "CertificateId": cert_id,
                            "SplitBrokerId": split_broker,
                            "RealCommissionRate": rng.choice([4.0, 5.0, 7.5]),
                        }
                    )

        for month in range(rng.randint(1, 6)):
            amount = round(rng.uniform(40, 900), 2)
            if rng.random() < 0.01:
                amount = 0.0
            premiums.append(
                {
                    "PremiumTransactionId": f"P{len(premiums) + 1:07d}",
                    "CertificateId": cert_id,
                    "TransactionDate": iso(effective + timedelta(days=30 * month + rng.randint(0, 20))),
                    "PremiumAmount": f"{amount:.2f}",
                }
            )

    schedule_rates = []
    for schedule in SCHEDULES:
        for product in PRODUCTS:
            base = {"SCH-STD": 3.0, "SCH-PREM": 5.0, "SCH-RET": 1.5}[schedule]
            schedule_rates.append(
                {
                    "ScheduleId": f"{schedule}-{product}",
                    "ScheduleCode": schedule,
                    "ProductCode": product,
                    "State": "",
                    "GroupSizeFrom": "",
                    "GroupSizeTo": "",
                    "FirstYearRate": base + 2,
                    "RenewalRate": base,
                }
            )

    assignments = [
        {
            "VersionId": "CAV-DEMO-1",
            "BrokerId": broker_id(1),
            "ProposalId": "",
            "EffectiveFrom": iso(start),
            "EffectiveTo": "",
            "TotalAssignedPercent": 25,
            "Status": "Active",
            "RecipientBrokerId": broker_id(2),
            "Percentage": 25,
        }
    ]

    write_csv(out / "groups.csv", groups, ["GroupId", "GroupName", "GroupSize", "SitusState"])
    write_csv(out / "certificates.csv", certificates, CERTIFICATE_FIELDS)
    write_csv(out / "commission_details.csv", details, ["CertificateId", "SplitBrokerId", "RealCommissionRate"])
    write_csv(
        out / "premiums.csv",
        premiums,
        ["PremiumTransactionId", "CertificateId", "TransactionDate", "PremiumAmount"],
    )
    write_csv(
        out / "schedule_rates.csv",
        schedule_rates,
        ["ScheduleId", "ScheduleCode", "ProductCode", "State", "GroupSizeFrom", "GroupSizeTo", "FirstYearRate", "RenewalRate"],
    )
    write_csv(
        out / "commission_assignments.csv",
        assignments,
        [
            "VersionId", "BrokerId", "ProposalId", "EffectiveFrom", "EffectiveTo",
            "TotalAssignedPercent", "Status", "RecipientBrokerId", "Percentage",
        ],
    )

    print(f"Generated {args.certificates} certificates ({len(certificates)} split rows) in {out}")
    print(f"  Premium transactions: {len(premiums)}")
    print(f"  Certificate rate overrides: {len(details)}")


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Generate synthetic ledger source data.")
    p.add_argument("--seed", type=int, default=42)
    p.add_argument("--groups", type=int, default=25)
    p.add_argument("--brokers", type=int, default=60)
    p.add_argument("--certificates", type=int, default=1500)
    p.add_argument("--output", type=Path, default=Path("data"))
    return p.parse_args()


if __name__ == "__main__":
    generate(parse_args())
