from __future__ import annotations

import csv
import tempfile
import unittest
from dataclasses import replace
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from commission_ledger import main
from commission_ledger.config import LedgerConfig


def _write(path: Path, rows: list[dict[str, str]]) -> None:
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=list(rows[0]))
        writer.writeheader()
        writer.writerows(rows)


def _cert(cert: str, split_seq: str, broker: str, pct: str, group: str = "G100") -> dict[str, str]:
    return {
        "CertificateId": cert,
        "GroupId": group,
        "ProductCode": "DEN",
        "PlanCode": "A",
        "EffectiveDate": "2023-01-01",
        "SplitSequence": split_seq,
        "SplitPercent": pct,
        "WritingBrokerId": broker,
        "BrokerSequence": "1",
        "SplitBrokerId": broker,
        "ScheduleCode": "SCH-STD",
    }


def _seed(root: Path, schedules: bool = True) -> None:
    _write(
        root / "certificates.csv",
        [_cert("C1", "1", "B1", "60"), _cert("C1", "2", "B2", "40"), _cert("C9", "1", "B1", "100", group="00000")],
    )
    _write(
        root / "premiums.csv",
        [
            {"PremiumTransactionId": "PT1", "CertificateId": "C1", "TransactionDate": "2023-05-01", "PremiumAmount": "500"},
            {"PremiumTransactionId": "PT2", "CertificateId": "C9", "TransactionDate": "2023-05-01", "PremiumAmount": "90"},
        ],
    )
    if schedules:
        _write(
            root / "schedule_rates.csv",
            [{"ScheduleCode": "SCH-STD", "ProductCode": "DEN", "FirstYearRate": "10", "RenewalRate": "5"}],
        )


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        (self.root / "data").mkdir()
        config = replace(LedgerConfig.default(), data_dir=self.root / "data", db_dir=self.root / "db", max_workers=1)
        patcher = mock.patch.object(main, "CONFIG", config)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(self._tmp.cleanup)
        self.client = TestClient(main.app)

    def test_health(self) -> None:
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["ok"])

    def test_run_and_browse_outputs(self) -> None:
        _seed(self.root / "data")
        resp = self.client.post("/api/v1/runs", json={"export": True})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["ok"])
        run_id = body["run_id"]
        self.assertEqual(body["summary"]["proposals"], 1)
        self.assertEqual(body["summary"]["gl_entries"], 2)

        runs = self.client.get("/api/v1/runs").json()
        self.assertEqual(runs["count"], 1)
        self.assertEqual(runs["rows"][0]["status"], "completed")
        steps = self.client.get(f"/api/v1/runs/{run_id}/steps").json()
        self.assertEqual(steps["count"], 7)
        self.assertEqual(steps["rows"][-1]["step"], "export")

        conformance = self.client.get("/api/v1/conformance").json()
        self.assertEqual(conformance["run_id"], run_id)
        self.assertEqual(conformance["rows"][0]["classification"], "Conformant")

        phas = self.client.get("/api/v1/pha", params={"reason": "Invalid GroupId"}).json()
        self.assertEqual(phas["count"], 1)

        gl = self.client.get("/api/v1/gl-entries", params={"premium_id": "PT1"}).json()
        self.assertEqual(sorted(row["commission_amount"] for row in gl["rows"]), ["20.00", "30.00"])

        failed = self.client.get("/api/v1/traceability", params={"has_errors": "true"}).json()
        self.assertEqual([r["premium_transaction_id"] for r in failed["rows"]], ["PT2"])
        detail = self.client.get("/api/v1/traceability/PT1").json()
        self.assertEqual(detail["total_commission"], "50.00")
        self.assertEqual(len(detail["brokers"]), 2)

        export = self.client.get("/api/v1/export").json()
        self.assertTrue(export["exported"])
        self.assertEqual(export["run_id"], run_id)

        csv_resp = self.client.get("/api/v1/exports/gl.csv")
        self.assertEqual(csv_resp.status_code, 200)
        self.assertIn("text/csv", csv_resp.headers["content-type"])
        self.assertTrue(csv_resp.text.startswith("id,premium_transaction_id"))

    def test_bad_filters_and_missing_rows(self) -> None:
        self.assertEqual(self.client.get("/api/v1/conformance", params={"classification": "Great"}).status_code, 400)
        self.assertEqual(self.client.get("/api/v1/pha", params={"reason": "Because"}).status_code, 400)
        self.assertEqual(self.client.get("/api/v1/traceability/PT404").status_code, 404)
        self.assertEqual(self.client.get("/api/v1/runs/run-missing/steps").status_code, 404)
        self.assertFalse(self.client.get("/api/v1/export").json()["exported"])

    def test_aborted_run_returns_conflict(self) -> None:
        _seed(self.root / "data", schedules=False)
        resp = self.client.post("/api/v1/runs", json={"export": True})
        self.assertEqual(resp.status_code, 409)
        body = resp.json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["stage"], "export")
        self.assertTrue(body["can_resume"])
        self.assertIn("schedules", body["error"])


if __name__ == "__main__":
    unittest.main()
