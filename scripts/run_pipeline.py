#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from commission_ledger.config import LedgerConfig
from commission_ledger.errors import RunAbortedError
from commission_ledger.logging_utils import configure_logging
from commission_ledger.persistence import SqliteCheckpointStore, SqliteSink, namespace_path
from commission_ledger.pipeline import run_pipeline
from commission_ledger.sources import load_sources


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Resolve certificates and premiums into a commission ledger.")
    p.add_argument("--config", type=Path, default=None, help="YAML run configuration")
    p.add_argument("--data-dir", type=Path, default=None, help="Directory holding the canonical CSV sources")
    p.add_argument("--db-dir", type=Path, default=None, help="Directory for the namespace SQLite files")
    p.add_argument("--entropy", action="store_true", help="Route high-entropy groups and outliers to PHA")
    p.add_argument("--export", action="store_true", help="Publish conformant groups to the production namespace")
    p.add_argument("--output", type=Path, default=None, help="Optional path to write the JSON run summary")
    return p.parse_args()


def main() -> int:
    args = parse_args()
    configure_logging()
    config = LedgerConfig.load(args.config) if args.config else LedgerConfig.default()
    if args.data_dir:
        config = replace(config, data_dir=args.data_dir)
    if args.db_dir:
        config = replace(config, db_dir=args.db_dir)
    if args.entropy:
        config = replace(config, entropy=replace(config.entropy, enabled=True))

    sources = load_sources(config.data_dir, config.debug, config.retry)
    reporter = SqliteCheckpointStore(namespace_path(config.db_dir, config.namespaces.transition))
    sink = SqliteSink(config.db_dir, config.namespaces, config.retry)
    try:
        output = run_pipeline(sources, config, reporter=reporter, sink=sink, export=args.export)
    except RunAbortedError as exc:
        result = {
            "ok": False,
            "run_id": exc.run_id,
            "stage": exc.stage,
            "invariant": exc.invariant,
            "can_resume": exc.can_resume,
            "error": str(exc.__cause__ or exc),
        }
        print(json.dumps(result, indent=2), file=sys.stderr)
        return 1

    result = {"ok": True, **output.summary()}
    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(json.dumps(result, indent=2), encoding="utf-8")
    else:
        print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
