from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict, is_dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any

from commission_ledger.config import Namespaces, RetryPolicy
from commission_ledger.retry import with_retry

if TYPE_CHECKING:
    from commission_ledger.pipeline import ExportPayload, PipelineOutput, RunState

logger = logging.getLogger(__name__)

STAGING_TABLES = (
    "stg_hierarchies",
    "stg_hierarchy_versions",
    "stg_hierarchy_participants",
    "stg_proposals",
    "stg_premium_split_versions",
    "stg_premium_split_participants",
    "stg_proposal_key_mappings",
    "stg_policy_hierarchy_assignments",
    "stg_policy_hierarchy_participants",
    "stg_certificate_conformance",
    "stg_group_conformance",
    "stg_commission_assignment_versions",
    "stg_commission_assignment_recipients",
    "gl_journal_entries",
    "traceability_reports",
    "broker_traceability",
    "run_outputs",
)
PRODUCTION_TABLES = (
    "proposals",
    "hierarchies",
    "hierarchy_versions",
    "hierarchy_participants",
    "policies",
    "policy_hierarchy_assignments",
    "export_runs",
)


def utc_now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def get_conn(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def namespace_path(db_dir: Path, namespace: str) -> Path:
    return db_dir / f"{namespace}.db"


def init_state_db(db_path: Path) -> None:
    with get_conn(db_path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                current_step TEXT,
                total_steps INTEGER NOT NULL,
                completed_steps INTEGER NOT NULL,
                error_message TEXT,
                failed_stage TEXT,
                can_resume INTEGER NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT
            );

            CREATE TABLE IF NOT EXISTS run_steps (
                run_id TEXT NOT NULL,
                step TEXT NOT NULL,
                status TEXT NOT NULL,
                row_counts TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                PRIMARY KEY (run_id, step),
                FOREIGN KEY (run_id) REFERENCES runs(run_id)
            );
            """
        )


def init_processing_db(db_path: Path) -> None:
    with get_conn(db_path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS run_outputs (
                run_id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                summary TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS stg_hierarchies (
                id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL,
                writing_broker_id TEXT NOT NULL,
                first_upline_id TEXT,
                signature TEXT NOT NULL,
                effective_date TEXT NOT NULL,
                current_version_id TEXT NOT NULL,
                situs_state TEXT
            );

            CREATE TABLE IF NOT EXISTS stg_hierarchy_versions (
                id TEXT PRIMARY KEY,
                hierarchy_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                status TEXT NOT NULL,
                effective_from TEXT NOT NULL,
                effective_to TEXT
            );

            CREATE TABLE IF NOT EXISTS stg_hierarchy_participants (
                id TEXT PRIMARY KEY,
                hierarchy_version_id TEXT NOT NULL,
                broker_id TEXT NOT NULL,
                level INTEGER NOT NULL,
                split_percent REAL NOT NULL,
                schedule_code TEXT,
                commission_rate REAL
            );

            CREATE TABLE IF NOT EXISTS stg_proposals (
                id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                broker_id TEXT,
                situs_state TEXT,
                product_codes TEXT NOT NULL,
                plan_codes TEXT NOT NULL,
                effective_date_from TEXT NOT NULL,
                effective_date_to TEXT,
                date_range_from INTEGER NOT NULL,
                date_range_to INTEGER NOT NULL,
                certificate_count INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS stg_premium_split_versions (
                id TEXT PRIMARY KEY,
                proposal_id TEXT NOT NULL,
                group_id TEXT NOT NULL,
                effective_from TEXT NOT NULL,
                effective_to TEXT,
                total_split_percent REAL NOT NULL,
                status TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS stg_premium_split_participants (
                id TEXT PRIMARY KEY,
                version_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                split_percent REAL NOT NULL,
                writing_broker_id TEXT NOT NULL,
                hierarchy_id TEXT
            );

            CREATE TABLE IF NOT EXISTS stg_proposal_key_mappings (
                group_id TEXT NOT NULL,
                effective_year INTEGER NOT NULL,
                product_code TEXT NOT NULL,
                plan_code TEXT NOT NULL,
                proposal_id TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                PRIMARY KEY (group_id, effective_year, product_code, plan_code, proposal_id)
            );

            CREATE TABLE IF NOT EXISTS stg_policy_hierarchy_assignments (
                id TEXT PRIMARY KEY,
                policy_id TEXT NOT NULL,
                group_id TEXT,
                writing_broker_id TEXT NOT NULL,
                split_sequence INTEGER NOT NULL,
                split_percent REAL NOT NULL,
                non_conformant_reason TEXT NOT NULL,
                entry_type INTEGER NOT NULL,
                effective_date TEXT NOT NULL,
                is_non_conforming INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS stg_policy_hierarchy_participants (
                pha_id TEXT NOT NULL,
                broker_id TEXT NOT NULL,
                level INTEGER NOT NULL,
                schedule_code TEXT
            );

            CREATE TABLE IF NOT EXISTS stg_certificate_conformance (
                certificate_id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL,
                effective_year INTEGER NOT NULL,
                product_code TEXT NOT NULL,
                plan_code TEXT NOT NULL,
                match_count INTEGER NOT NULL,
                matched_proposal_ids TEXT,
                status TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS stg_group_conformance (
                group_id TEXT PRIMARY KEY,
                group_name TEXT,
                situs_state TEXT,
                total_certificates INTEGER NOT NULL,
                conformant_certificates INTEGER NOT NULL,
                non_conformant_certificates INTEGER NOT NULL,
                conformance_percentage REAL NOT NULL,
                classification TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS stg_commission_assignment_versions (
                id TEXT PRIMARY KEY,
                broker_id TEXT NOT NULL,
                proposal_id TEXT NOT NULL,
                effective_from TEXT NOT NULL,
                effective_to TEXT,
                total_assigned_percent REAL NOT NULL,
                status TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS stg_commission_assignment_recipients (
                version_id TEXT NOT NULL,
                recipient_broker_id TEXT NOT NULL,
                percentage REAL NOT NULL,
                PRIMARY KEY (version_id, recipient_broker_id)
            );

            CREATE TABLE IF NOT EXISTS gl_journal_entries (
                id TEXT PRIMARY KEY,
                premium_transaction_id TEXT NOT NULL,
                policy_id TEXT NOT NULL,
                broker_id TEXT NOT NULL,
                commission_amount TEXT NOT NULL,
                entry_type TEXT NOT NULL,
                premium_amount TEXT NOT NULL,
                rate_percent REAL NOT NULL,
                rate_source TEXT NOT NULL,
                transaction_date TEXT NOT NULL,
                product_code TEXT,
                state TEXT,
                group_id TEXT,
                proposal_id TEXT,
                hierarchy_id TEXT,
                hierarchy_version_id TEXT,
                split_sequence INTEGER,
                split_percent REAL,
                tier_level INTEGER,
                is_first_year INTEGER,
                basis_year INTEGER,
                source_broker_id TEXT,
                assignment_version_id TEXT
            );

            CREATE TABLE IF NOT EXISTS traceability_reports (
                id TEXT PRIMARY KEY,
                premium_transaction_id TEXT NOT NULL UNIQUE,
                policy_id TEXT NOT NULL,
                transaction_date TEXT NOT NULL,
                premium_amount TEXT NOT NULL,
                total_commission TEXT NOT NULL,
                proposal_id TEXT,
                group_id TEXT,
                product_code TEXT,
                state TEXT,
                is_first_year INTEGER,
                basis_year INTEGER,
                hierarchy_count INTEGER NOT NULL,
                participant_count INTEGER NOT NULL,
                has_assignments INTEGER NOT NULL,
                has_errors INTEGER NOT NULL,
                error_messages TEXT,
                is_clean INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS broker_traceability (
                id TEXT PRIMARY KEY,
                traceability_report_id TEXT NOT NULL,
                gl_entry_id TEXT NOT NULL,
                broker_id TEXT NOT NULL,
                level INTEGER,
                level_name TEXT,
                split_sequence INTEGER,
                split_percent REAL,
                rate_percent REAL,
                rate_source TEXT,
                commission_amount TEXT NOT NULL,
                hierarchy_id TEXT,
                hierarchy_version_id TEXT,
                is_assigned INTEGER NOT NULL,
                assigned_from_broker_id TEXT,
                entry_type TEXT NOT NULL
            );
            """
        )


def init_production_db(db_path: Path) -> None:
    with get_conn(db_path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS export_runs (
                run_id TEXT PRIMARY KEY,
                exported_at TEXT NOT NULL,
                counts TEXT NOT NULL,
                withheld_groups TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS proposals (
                id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                broker_id TEXT,
                situs_state TEXT,
                product_codes TEXT NOT NULL,
                plan_codes TEXT NOT NULL,
                effective_date_from TEXT NOT NULL,
                effective_date_to TEXT,
                date_range_from INTEGER NOT NULL,
                date_range_to INTEGER NOT NULL,
                certificate_count INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS hierarchies (
                id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL,
                writing_broker_id TEXT NOT NULL,
                first_upline_id TEXT,
                signature TEXT NOT NULL,
                effective_date TEXT NOT NULL,
                current_version_id TEXT NOT NULL,
                situs_state TEXT
            );

            CREATE TABLE IF NOT EXISTS hierarchy_versions (
                id TEXT PRIMARY KEY,
                hierarchy_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                status TEXT NOT NULL,
                effective_from TEXT NOT NULL,
                effective_to TEXT
            );

            CREATE TABLE IF NOT EXISTS hierarchy_participants (
                id TEXT PRIMARY KEY,
                hierarchy_version_id TEXT NOT NULL,
                broker_id TEXT NOT NULL,
                level INTEGER NOT NULL,
                split_percent REAL NOT NULL,
                schedule_code TEXT,
                commission_rate REAL
            );

            CREATE TABLE IF NOT EXISTS policies (
                certificate_id TEXT PRIMARY KEY
            );

            CREATE TABLE IF NOT EXISTS policy_hierarchy_assignments (
                id TEXT PRIMARY KEY,
                policy_id TEXT NOT NULL,
                group_id TEXT,
                writing_broker_id TEXT NOT NULL,
                split_sequence INTEGER NOT NULL,
                split_percent REAL NOT NULL,
                non_conformant_reason TEXT NOT NULL,
                entry_type INTEGER NOT NULL,
                effective_date TEXT NOT NULL,
                is_non_conforming INTEGER NOT NULL
            );
            """
        )


def _value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (set, frozenset, list, tuple)):
        return ",".join(sorted(str(v) for v in value))
    return value


def _record(obj: Any, drop: tuple[str, ...] = ()) -> dict[str, Any]:
    data = asdict(obj) if is_dataclass(obj) else dict(obj)
    return {k: _value(v) for k, v in data.items() if k not in drop}


def _insert_many(conn: sqlite3.Connection, table: str, rows: list[dict[str, Any]]) -> int:
    if not rows:
        return 0
    columns = list(rows[0])
    conn.executemany(
        f"INSERT INTO {table}({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
        [tuple(row[c] for c in columns) for row in rows],
    )
    return len(rows)


def _proposal_record(proposal: Any) -> dict[str, Any]:
    record = _record(proposal, drop=("certificate_ids",))
    record["certificate_count"] = len(proposal.certificate_ids)
    return record


def _write_run_outputs(db_path: Path, output: PipelineOutput) -> dict[str, int]:
    hierarchies = output.hierarchies
    proposals = output.proposals
    calc = output.calculation
    counts: dict[str, int] = {}
    with get_conn(db_path) as conn:
        for table in STAGING_TABLES:
            conn.execute(f"DELETE FROM {table}")
        counts["hierarchies"] = _insert_many(conn, "stg_hierarchies", [_record(h) for h in hierarchies.hierarchies])
        _insert_many(conn, "stg_hierarchy_versions", [_record(v) for v in hierarchies.versions])
        counts["hierarchy_participants"] = _insert_many(
            conn, "stg_hierarchy_participants", [_record(p) for p in hierarchies.participants]
        )
        counts["proposals"] = _insert_many(conn, "stg_proposals", [_proposal_record(p) for p in proposals.proposals])
        _insert_many(conn, "stg_premium_split_versions", [_record(v) for v in proposals.split_versions])
        _insert_many(conn, "stg_premium_split_participants", [_record(p) for p in proposals.split_participants])
        counts["key_mappings"] = _insert_many(
            conn, "stg_proposal_key_mappings", [_record(m) for m in proposals.key_mappings]
        )
        counts["phas"] = _insert_many(
            conn, "stg_policy_hierarchy_assignments", [_record(p, drop=("participants",)) for p in proposals.phas]
        )
        _insert_many(
            conn,
            "stg_policy_hierarchy_participants",
            [{"pha_id": pha.id, **_record(part)} for pha in proposals.phas for part in pha.participants],
        )
        _insert_many(conn, "stg_certificate_conformance", [_record(c) for c in output.conformance.certificates])
        counts["groups"] = _insert_many(conn, "stg_group_conformance", [_record(g) for g in output.conformance.groups])
        _insert_many(
            conn, "stg_commission_assignment_versions", [_record(v, drop=("recipients",)) for v in output.assignments]
        )
        _insert_many(
            conn,
            "stg_commission_assignment_recipients",
            [_record(r) for v in output.assignments for r in v.recipients],
        )
        counts["gl_entries"] = _insert_many(conn, "gl_journal_entries", [_record(e) for e in calc.gl_entries])
        counts["traceability_reports"] = _insert_many(
            conn, "traceability_reports", [_record(r) for r in calc.traceability]
        )
        _insert_many(conn, "broker_traceability", [_record(b) for b in calc.broker_traceability])
        conn.execute(
            "INSERT INTO run_outputs(run_id, created_at, summary) VALUES (?, ?, ?)",
            (output.run_id, utc_now(), json.dumps(output.summary(), sort_keys=True)),
        )
    return counts


def _write_export(db_path: Path, payload: ExportPayload) -> dict[str, int]:
    counts = payload.counts()
    with get_conn(db_path) as conn:
        for table in PRODUCTION_TABLES:
            if table != "export_runs":
                conn.execute(f"DELETE FROM {table}")
        _insert_many(conn, "proposals", [_proposal_record(p) for p in payload.proposals])
        _insert_many(conn, "hierarchies", [_record(h) for h in payload.hierarchies])
        _insert_many(conn, "hierarchy_versions", [_record(v) for v in payload.hierarchy_versions])
        _insert_many(conn, "hierarchy_participants", [_record(p) for p in payload.hierarchy_participants])
        _insert_many(conn, "policies", [{"certificate_id": c} for c in payload.policies])
        _insert_many(
            conn, "policy_hierarchy_assignments", [_record(p, drop=("participants",)) for p in payload.phas]
        )
        conn.execute(
            """
            INSERT INTO export_runs(run_id, exported_at, counts, withheld_groups)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(run_id) DO UPDATE SET
                exported_at=excluded.exported_at,
                counts=excluded.counts,
                withheld_groups=excluded.withheld_groups
            """,
            (payload.run_id, utc_now(), json.dumps(counts, sort_keys=True), ",".join(payload.withheld_groups)),
        )
    return counts


class SqliteSink:
    """Processing (staging) and production namespaces as separate SQLite files."""

    def __init__(self, db_dir: Path, namespaces: Namespaces | None = None, retry: RetryPolicy | None = None) -> None:
        namespaces = namespaces or Namespaces()
        self.retry = retry or RetryPolicy()
        self.processing_db = namespace_path(db_dir, namespaces.processing)
        self.production_db = namespace_path(db_dir, namespaces.production)
        init_processing_db(self.processing_db)
        init_production_db(self.production_db)

    def _retry(self, operation: str, func):
        return with_retry(
            func,
            operation=operation,
            attempts=self.retry.attempts,
            base_delay_seconds=self.retry.base_delay_seconds,
            max_delay_seconds=self.retry.max_delay_seconds,
        )

    def save_run_outputs(self, output: PipelineOutput) -> dict[str, int]:
        counts = self._retry("save run outputs", lambda: _write_run_outputs(self.processing_db, output))
        logger.info("Staged run %s into %s: %s", output.run_id, self.processing_db.name, counts)
        return counts

    def publish_export(self, payload: ExportPayload) -> dict[str, int]:
        counts = self._retry("publish export", lambda: _write_export(self.production_db, payload))
        logger.info("Published run %s into %s: %s", payload.run_id, self.production_db.name, counts)
        return counts


class SqliteCheckpointStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        init_state_db(db_path)

    def run_started(self, run: RunState) -> None:
        with get_conn(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO runs(
                    run_id, status, current_step, total_steps, completed_steps,
                    error_message, failed_stage, can_resume, started_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.run_id,
                    run.status,
                    run.current_step,
                    run.total_steps,
                    run.completed_steps,
                    run.error_message,
                    run.failed_stage,
                    int(run.can_resume),
                    utc_now(),
                ),
            )

    def step_started(self, run_id: str, step: str) -> None:
        with get_conn(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO run_steps(run_id, step, status, started_at) VALUES (?, ?, 'running', ?)
                ON CONFLICT(run_id, step) DO UPDATE SET status='running', started_at=excluded.started_at
                """,
                (run_id, step, utc_now()),
            )
            conn.execute("UPDATE runs SET current_step = ? WHERE run_id = ?", (step, run_id))

    def step_completed(self, run_id: str, step: str, row_counts: dict[str, int]) -> None:
        with get_conn(self.db_path) as conn:
            conn.execute(
                """
                UPDATE run_steps SET status='completed', row_counts = ?, completed_at = ?
                WHERE run_id = ? AND step = ?
                """,
                (json.dumps(row_counts, sort_keys=True), utc_now(), run_id, step),
            )
            conn.execute(
                "UPDATE runs SET completed_steps = completed_steps + 1 WHERE run_id = ?",
                (run_id,),
            )

    def run_finished(self, run: RunState) -> None:
        with get_conn(self.db_path) as conn:
            conn.execute(
                """
                UPDATE runs
                SET status = ?, current_step = ?, error_message = ?, failed_stage = ?,
                    can_resume = ?, finished_at = ?
                WHERE run_id = ?
                """,
                (
                    run.status,
                    run.current_step,
                    run.error_message,
                    run.failed_stage,
                    int(run.can_resume),
                    utc_now(),
                    run.run_id,
                ),
            )
            if run.status == "failed":
                conn.execute(
                    "UPDATE run_steps SET status='failed' WHERE run_id = ? AND status='running'",
                    (run.run_id,),
                )


def list_runs(db_path: Path, limit: int = 50) -> list[dict[str, Any]]:
    if not db_path.exists():
        return []
    with get_conn(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM runs ORDER BY started_at DESC, run_id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [{**dict(row), "can_resume": bool(row["can_resume"])} for row in rows]


def list_run_steps(db_path: Path, run_id: str) -> list[dict[str, Any]]:
    if not db_path.exists():
        return []
    with get_conn(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM run_steps WHERE run_id = ? ORDER BY started_at ASC, rowid ASC",
            (run_id,),
        ).fetchall()
        return [{**dict(row), "row_counts": json.loads(row["row_counts"] or "{}")} for row in rows]


def latest_run_output(db_path: Path) -> dict[str, Any] | None:
    if not db_path.exists():
        return None
    with get_conn(db_path) as conn:
        row = conn.execute("SELECT * FROM run_outputs ORDER BY created_at DESC LIMIT 1").fetchone()
        return None if row is None else {**dict(row), "summary": json.loads(row["summary"])}


def list_group_conformance(db_path: Path, classification: str | None = None) -> list[dict[str, Any]]:
    with get_conn(db_path) as conn:
        if classification:
            rows = conn.execute(
                """
                SELECT * FROM stg_group_conformance
                WHERE classification = ?
                ORDER BY conformance_percentage ASC, group_id ASC
                """,
                (classification,),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM stg_group_conformance ORDER BY conformance_percentage ASC, group_id ASC"
            ).fetchall()
        return [dict(row) for row in rows]


def list_phas(db_path: Path, reason: str | None = None, limit: int = 200) -> list[dict[str, Any]]:
    with get_conn(db_path) as conn:
        if reason:
            rows = conn.execute(
                """
                SELECT * FROM stg_policy_hierarchy_assignments
                WHERE non_conformant_reason = ?
                ORDER BY policy_id ASC, split_sequence ASC
                LIMIT ?
                """,
                (reason, limit),
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT * FROM stg_policy_hierarchy_assignments
                ORDER BY policy_id ASC, split_sequence ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        phas = [dict(row) for row in rows]
        for pha in phas:
            participants = conn.execute(
                """
                SELECT broker_id, level, schedule_code FROM stg_policy_hierarchy_participants
                WHERE pha_id = ? ORDER BY level ASC
                """,
                (pha["id"],),
            ).fetchall()
            pha["participants"] = [dict(p) for p in participants]
        return phas


def list_gl_entries(
    db_path: Path, broker_id: str | None = None, premium_id: str | None = None, limit: int = 500
) -> list[dict[str, Any]]:
    clauses = []
    params: list[Any] = []
    if broker_id:
        clauses.append("broker_id = ?")
        params.append(broker_id)
    if premium_id:
        clauses.append("premium_transaction_id = ?")
        params.append(premium_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with get_conn(db_path) as conn:
        rows = conn.execute(
            f"SELECT * FROM gl_journal_entries {where} ORDER BY rowid ASC LIMIT ?",
            (*params, limit),
        ).fetchall()
        return [dict(row) for row in rows]


def list_traceability(db_path: Path, has_errors: bool | None = None, limit: int = 500) -> list[dict[str, Any]]:
    with get_conn(db_path) as conn:
        if has_errors is None:
            rows = conn.execute(
                "SELECT * FROM traceability_reports ORDER BY premium_transaction_id ASC LIMIT ?",
                (limit,),
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT * FROM traceability_reports
                WHERE has_errors = ?
                ORDER BY premium_transaction_id ASC
                LIMIT ?
                """,
                (int(has_errors), limit),
            ).fetchall()
        return [dict(row) for row in rows]


def get_traceability(db_path: Path, premium_id: str) -> dict[str, Any] | None:
    with get_conn(db_path) as conn:
        report = conn.execute(
            "SELECT * FROM traceability_reports WHERE premium_transaction_id = ?",
            (premium_id,),
        ).fetchone()
        if report is None:
            return None
        brokers = conn.execute(
            """
            SELECT * FROM broker_traceability
            WHERE traceability_report_id = ?
            ORDER BY split_sequence ASC, level ASC, rowid ASC
            """,
            (report["id"],),
        ).fetchall()
        return {**dict(report), "brokers": [dict(b) for b in brokers]}


def export_summary(db_path: Path) -> dict[str, Any] | None:
    if not db_path.exists():
        return None
    with get_conn(db_path) as conn:
        row = conn.execute("SELECT * FROM export_runs ORDER BY exported_at DESC LIMIT 1").fetchone()
        if row is None:
            return None
        withheld = row["withheld_groups"]
        return {
            "run_id": row["run_id"],
            "exported_at": row["exported_at"],
            "counts": json.loads(row["counts"]),
            "withheld_groups": withheld.split(",") if withheld else [],
        }
