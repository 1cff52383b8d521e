import hashlib
import os
import shutil
import tempfile
import unittest

from deployer.binaries import (
    ELF_MAGIC,
    MAX_BINARY_SIZE,
    BinaryStore,
    DirectoryBinarySource,
    validate_binary,
)
from deployer.errors import BinaryNotFound


class ValidateBinaryTests(unittest.TestCase):
    def test_empty_payload(self) -> None:
        result = validate_binary(b"")
        self.assertFalse(result.valid)
        self.assertEqual(result.reason, "Empty binary")

    def test_bad_header(self) -> None:
        result = validate_binary(b"MZ" + b"\x00" * 8)
        self.assertFalse(result.valid)
        self.assertEqual(result.reason, "Invalid ELF header")

    def test_oversized_payload(self) -> None:
        payload = ELF_MAGIC + bytes(MAX_BINARY_SIZE + 1 - len(ELF_MAGIC))
        result = validate_binary(payload)
        self.assertFalse(result.valid)
        self.assertTrue(result.reason.startswith("Binary too large"))

    def test_header_checked_before_size(self) -> None:
        result = validate_binary(b"\x00" * 16)
        self.assertEqual(result.reason, "Invalid ELF header")

    def test_well_formed_payload(self) -> None:
        result = validate_binary(ELF_MAGIC + b"\x02\x01\x01" + bytes(64))
        self.assertTrue(result.valid)
        self.assertIsNone(result.reason)


class BinaryStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp(prefix="deployer-binaries-")
        self.store = BinaryStore(os.path.join(self.tmpdir, "binaries"))
        self.payload = ELF_MAGIC + b"program-bytes"

    def tearDown(self) -> None:
        shutil.rmtree(self.tmpdir)

    def test_store_returns_sha256_hex(self) -> None:
        content_hash = self.store.store("42", self.payload)
        self.assertEqual(content_hash, hashlib.sha256(self.payload).hexdigest())
        self.assertTrue((self.store.storage_path / f"42_{content_hash}.so").is_file())

    def test_store_is_idempotent(self) -> None:
        first = self.store.store("42", self.payload)
        second = self.store.store("42", self.payload)
        self.assertEqual(first, second)
        self.assertEqual(len(list(self.store.storage_path.iterdir())), 1)

    def test_retrieve_round_trip(self) -> None:
        content_hash = self.store.store("42", self.payload)
        self.assertEqual(self.store.retrieve("42", content_hash), self.payload)

    def test_retrieve_missing_raises_not_found(self) -> None:
        with self.assertRaises(BinaryNotFound) as ctx:
            self.store.retrieve("42", "0" * 64)
        self.assertEqual(ctx.exception.loan_id, "42")


class DirectoryBinarySourceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp(prefix="deployer-source-")
        self.source = DirectoryBinarySource(self.tmpdir)

    def tearDown(self) -> None:
        shutil.rmtree(self.tmpdir)

    def _write(self, name: str, data: bytes) -> None:
        with open(os.path.join(self.tmpdir, name), "wb") as handle:
            handle.write(data)

    def test_prefers_loan_specific_file(self) -> None:
        self._write("42.so", b"by-loan")
        self._write("Bxyz.so", b"by-borrower")
        self.assertEqual(self.source.fetch("42", "Bxyz"), b"by-loan")

    def test_falls_back_to_borrower_file(self) -> None:
        self._write("Bxyz.so", b"by-borrower")
        self.assertEqual(self.source.fetch("42", "Bxyz"), b"by-borrower")

    def test_missing_binary(self) -> None:
        with self.assertRaises(BinaryNotFound):
            self.source.fetch("42", "Bxyz")


if __name__ == "__main__":
    unittest.main()
