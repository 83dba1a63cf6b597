from __future__ import annotations

import hashlib
import json
from collections.abc import Callable, Iterable
from typing import Any

from commission_ledger.errors import HashCollisionError
from commission_ledger.models import CertificateSplitRow

HashFunc = Callable[[str], str]


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest().upper()


def _pct(value: float) -> str:
    return f"{float(value):.4f}"


def split_config(rows: Iterable[CertificateSplitRow]) -> list[dict[str, Any]]:
    """Commission structure of one certificate, independent of row and sequence order."""
    by_split: dict[int, list[CertificateSplitRow]] = {}
    for row in rows:
        by_split.setdefault(row.split_sequence, []).append(row)

    splits: list[dict[str, Any]] = []
    for seq_rows in by_split.values():
        seq_rows = sorted(seq_rows, key=lambda r: (r.broker_sequence, r.split_broker_id))
        splits.append(
            {
                "pct": _pct(seq_rows[0].split_percent),
                "writing": seq_rows[0].writing_broker_id,
                "tiers": [
                    {
                        "level": r.broker_sequence,
                        "broker": r.split_broker_id,
                        "schedule": r.schedule_code or "",
                    }
                    for r in seq_rows
                ],
            }
        )
    splits.sort(key=lambda s: json.dumps(s, sort_keys=True))
    return splits


def canonical_json(config: list[dict[str, Any]]) -> str:
    return json.dumps(config, sort_keys=True, separators=(",", ":"))


class ContentHashRegistry:
    """Run-scoped ContentHash -> canonical SplitConfig map.

    Only the serialized merge phase writes to it, so worker threads never see a
    partially populated map.
    """

    def __init__(self, hash_func: HashFunc = sha256_hex) -> None:
        self._hash_func = hash_func
        self._canonical_by_hash: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._canonical_by_hash)

    def __bool__(self) -> bool:
        return True

    def __contains__(self, content_hash: object) -> bool:
        return content_hash in self._canonical_by_hash

    def register(self, canonical: str, context: str | None = None) -> str:
        content_hash = self._hash_func(canonical)
        existing = self._canonical_by_hash.setdefault(content_hash, canonical)
        if existing != canonical:
            raise HashCollisionError(content_hash, existing, canonical, context)
        return content_hash

    def canonical_for(self, content_hash: str) -> str | None:
        return self._canonical_by_hash.get(content_hash)
