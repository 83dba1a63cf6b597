"""Ledger run configuration (YAML profile with ${ENV} substitution)."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")

ROOT_DIR = Path(__file__).resolve().parents[1]


def _resolve_env(value: Any) -> Any:
    if not value or not isinstance(value, str):
        return value
    match = _ENV_PATTERN.fullmatch(value.strip())
    if match:
        return os.getenv(match.group(1)) or ""
    return value


def _as_bool(value: Any, default: bool) -> bool:
    value = _resolve_env(value)
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return value.lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _as_int(value: Any, default: int | None) -> int | None:
    value = _resolve_env(value)
    if value is None or value == "":
        return default
    return int(value)


def _as_float(value: Any, default: float) -> float:
    value = _resolve_env(value)
    if value is None or value == "":
        return default
    return float(value)


@dataclass(frozen=True)
class Namespaces:
    source: str = "source"
    transition: str = "transition"
    processing: str = "processing"
    production: str = "production"


@dataclass(frozen=True)
class DebugCaps:
    enabled: bool = False
    brokers: int | None = None
    groups: int | None = None
    policies: int | None = None
    premiums: int | None = None
    hierarchies: int | None = None
    proposals: int | None = None

    def cap(self, entity: str) -> int | None:
        if not self.enabled:
            return None
        return getattr(self, entity)


@dataclass(frozen=True)
class EntropyThresholds:
    enabled: bool = False
    unique_ratio: float = 0.2
    shannon: float = 5.0
    dominant_coverage: float = 0.5
    min_cluster_size: int = 3


@dataclass(frozen=True)
class ConformanceThresholds:
    conformant_pct: float = 100.0
    nearly_conformant_pct: float = 95.0


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay_seconds: float = 0.2
    max_delay_seconds: float = 2.0


@dataclass(frozen=True)
class LedgerConfig:
    namespaces: Namespaces = field(default_factory=Namespaces)
    debug: DebugCaps = field(default_factory=DebugCaps)
    entropy: EntropyThresholds = field(default_factory=EntropyThresholds)
    conformance: ConformanceThresholds = field(default_factory=ConformanceThresholds)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    split_percent_tolerance: float = 0.01
    batch_size: int = 5000
    max_workers: int = 4
    data_dir: Path = ROOT_DIR / "data"
    db_dir: Path = ROOT_DIR / "data" / "db"

    @classmethod
    def default(cls) -> "LedgerConfig":
        return cls()

    @classmethod
    def load(cls, path: Path) -> "LedgerConfig":
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        return cls.from_dict(data, base_dir=path.parent)

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> "LedgerConfig":
        defaults = cls()
        ns = data.get("namespaces") or {}
        debug = data.get("debug") or {}
        caps = debug.get("max_records") or {}
        entropy = data.get("entropy") or {}
        conformance = data.get("conformance") or {}
        retry = data.get("retry") or {}

        def _path(value: Any, default: Path) -> Path:
            value = _resolve_env(value)
            if not value:
                return default
            candidate = Path(value)
            if not candidate.is_absolute() and base_dir is not None:
                candidate = (base_dir / candidate).resolve()
            return candidate

        return cls(
            namespaces=Namespaces(
                source=_resolve_env(ns.get("source")) or defaults.namespaces.source,
                transition=_resolve_env(ns.get("transition")) or defaults.namespaces.transition,
                processing=_resolve_env(ns.get("processing")) or defaults.namespaces.processing,
                production=_resolve_env(ns.get("production")) or defaults.namespaces.production,
            ),
            debug=DebugCaps(
                enabled=_as_bool(debug.get("enabled"), False),
                brokers=_as_int(caps.get("brokers"), None),
                groups=_as_int(caps.get("groups"), None),
                policies=_as_int(caps.get("policies"), None),
                premiums=_as_int(caps.get("premiums"), None),
                hierarchies=_as_int(caps.get("hierarchies"), None),
                proposals=_as_int(caps.get("proposals"), None),
            ),
            entropy=EntropyThresholds(
                enabled=_as_bool(entropy.get("enabled"), defaults.entropy.enabled),
                unique_ratio=_as_float(entropy.get("unique_ratio"), defaults.entropy.unique_ratio),
                shannon=_as_float(entropy.get("shannon"), defaults.entropy.shannon),
                dominant_coverage=_as_float(entropy.get("dominant_coverage"), defaults.entropy.dominant_coverage),
                min_cluster_size=_as_int(entropy.get("min_cluster_size"), defaults.entropy.min_cluster_size),
            ),
            conformance=ConformanceThresholds(
                conformant_pct=_as_float(conformance.get("conformant_pct"), defaults.conformance.conformant_pct),
                nearly_conformant_pct=_as_float(
                    conformance.get("nearly_conformant_pct"), defaults.conformance.nearly_conformant_pct
                ),
            ),
            retry=RetryPolicy(
                attempts=_as_int(retry.get("attempts"), defaults.retry.attempts),
                base_delay_seconds=_as_float(retry.get("base_delay_seconds"), defaults.retry.base_delay_seconds),
                max_delay_seconds=_as_float(retry.get("max_delay_seconds"), defaults.retry.max_delay_seconds),
            ),
            split_percent_tolerance=_as_float(data.get("split_percent_tolerance"), defaults.split_percent_tolerance),
            batch_size=_as_int(data.get("batch_size"), defaults.batch_size),
            max_workers=_as_int(data.get("max_workers"), defaults.max_workers),
            data_dir=_path(data.get("data_dir"), defaults.data_dir),
            db_dir=_path(data.get("db_dir"), defaults.db_dir),
        )
