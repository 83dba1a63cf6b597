"""Entropy-based routing of heterogeneous groups and small outlier clusters."""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field

from commission_ledger.config import EntropyThresholds

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupEntropy:
    record_count: int
    cluster_count: int
    unique_ratio: float
    shannon: float
    dominant_share: float


@dataclass
class EntropyDecision:
    group_id: str
    stats: GroupEntropy
    high_entropy: bool
    outlier_hashes: set[str] = field(default_factory=set)

    def routes_to_pha(self, content_hash: str) -> bool:
        return self.high_entropy or content_hash in self.outlier_hashes


def measure(cluster_sizes: Mapping[str, int]) -> GroupEntropy:
    total = sum(cluster_sizes.values())
    if total == 0:
        return GroupEntropy(0, 0, 0.0, 0.0, 0.0)
    shannon = 0.0
    for size in cluster_sizes.values():
        p = size / total
        shannon -= p * math.log2(p)
    return GroupEntropy(
        record_count=total,
        cluster_count=len(cluster_sizes),
        unique_ratio=len(cluster_sizes) / total,
        shannon=shannon,
        dominant_share=max(cluster_sizes.values()) / total,
    )


def route_group(group_id: str, cluster_sizes: Mapping[str, int], thresholds: EntropyThresholds) -> EntropyDecision:
    stats = measure(cluster_sizes)
    high = (
        stats.unique_ratio > thresholds.unique_ratio
        or stats.shannon > thresholds.shannon
        or stats.dominant_share < thresholds.dominant_coverage
    )
    decision = EntropyDecision(group_id, stats, high)
    if not high:
        decision.outlier_hashes = {h for h, size in cluster_sizes.items() if size < thresholds.min_cluster_size}
    logger.debug(
        "Group %s entropy: ratio=%.3f shannon=%.3f dominant=%.3f high=%s outliers=%s",
        group_id,
        stats.unique_ratio,
        stats.shannon,
        stats.dominant_share,
        high,
        len(decision.outlier_hashes),
    )
    return decision
