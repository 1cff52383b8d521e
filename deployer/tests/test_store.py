import os
import shutil
import sqlite3
import tempfile
import unittest

from deployer.errors import StorageError
from deployer.models import DeploymentRecord, DeploymentStatus
from deployer.store import DeploymentStore


class DeploymentStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp(prefix="deployer-store-")
        self.db_path = os.path.join(self.tmpdir, "nested", "deployer.db")
        self.store = DeploymentStore(self.db_path)

    def tearDown(self) -> None:
        self.store.close()
        shutil.rmtree(self.tmpdir)

    def _record(self, loan_id: str, **overrides) -> DeploymentRecord:
        record = DeploymentRecord(loan_id=loan_id, borrower="Bxyz", principal="5000000000")
        for key, value in overrides.items():
            setattr(record, key, value)
        return record

    def test_missing_record_is_absent(self) -> None:
        self.assertIsNone(self.store.get("404"))

    def test_put_overwrites_by_loan_id(self) -> None:
        self.store.put(self._record("1"))
        self.store.put(self._record("1", status=DeploymentStatus.DEPLOYING, program_id="Prog111"))

        record = self.store.get("1")
        self.assertIsNotNone(record)
        self.assertEqual(record.status, DeploymentStatus.DEPLOYING)
        self.assertEqual(record.program_id, "Prog111")
        self.assertEqual(len(self.store.list_all()), 1)

    def test_list_all_orders_by_most_recent_write(self) -> None:
        self.store.put(self._record("1"))
        self.store.put(self._record("2"))
        self.store.put(self._record("1", status=DeploymentStatus.DEPLOYING))

        self.assertEqual([record.loan_id for record in self.store.list_all()], ["1", "2"])

    def test_history_records_status_changes_only(self) -> None:
        record = self._record("7")
        self.store.put(record)
        record.binary_hash = "abc"
        self.store.put(record)
        record.status = DeploymentStatus.FAILED
        record.error = "boom"
        self.store.put(record)

        history = self.store.history("7")
        self.assertEqual([entry["status"] for entry in history], ["pending", "failed"])
        self.assertEqual(history[-1]["error"], "boom")

    def test_watermark_round_trip(self) -> None:
        self.assertIsNone(self.store.get_watermark())
        self.store.set_watermark(120)
        self.store.set_watermark(150)
        self.assertEqual(self.store.get_watermark(), 150)

    def test_records_survive_reopen(self) -> None:
        self.store.put(self._record("9", status=DeploymentStatus.DEPLOYED, program_id="Prog999"))
        self.store.close()

        with DeploymentStore(self.db_path) as reopened:
            record = reopened.get("9")
        self.assertEqual(record.program_id, "Prog999")
        self.assertEqual(record.status, DeploymentStatus.DEPLOYED)

    def test_close_is_idempotent(self) -> None:
        self.store.close()
        self.store.close()

    def test_io_failures_surface_as_storage_error(self) -> None:
        self.store.close()
        with self.assertRaises(StorageError):
            self.store.list_all()

    def test_record_json_uses_camel_case_keys(self) -> None:
        self.store.put(self._record("3", deploy_tx_signature="sig"))
        with sqlite3.connect(self.db_path) as conn:
            raw = conn.execute("SELECT data FROM deployments WHERE loan_id = '3'").fetchone()[0]
        self.assertIn('"deployTxSignature":"sig"', raw)
        self.assertIn('"loanId":"3"', raw)


if __name__ == "__main__":
    unittest.main()
