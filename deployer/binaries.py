"""Content-addressed storage and structural validation of program binaries."""
from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import BinaryNotFound

ELF_MAGIC = b"\x7fELF"
MAX_BINARY_SIZE = 100 * 1024 * 1024


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[str] = None


def validate_binary(data: bytes) -> ValidationResult:
    # First failing check wins: empty, then header, then size.
    if len(data) == 0:
        return ValidationResult(False, "Empty binary")
    if bytes(data[:4]) != ELF_MAGIC:
        return ValidationResult(False, "Invalid ELF header")
    if len(data) > MAX_BINARY_SIZE:
        return ValidationResult(False, "Binary too large (>100MB)")
    return ValidationResult(True)


class BinaryStore:
    """Stores payloads under ``<loanId>_<sha256>.so``; files are never rewritten."""

    def __init__(self, storage_path: str, logger: Optional[logging.Logger] = None) -> None:
        self.storage_path = Path(storage_path)
        self.logger = logger or logging.getLogger(__name__)
        os.makedirs(self.storage_path, exist_ok=True)

    def _path_for(self, loan_id: str, content_hash: str) -> Path:
        return self.storage_path / f"{loan_id}_{content_hash}.so"

    def validate(self, data: bytes) -> ValidationResult:
        return validate_binary(data)

    def store(self, loan_id: str, data: bytes) -> str:
        content_hash = hashlib.sha256(data).hexdigest()
        destination = self._path_for(loan_id, content_hash)
        if destination.exists() and destination.stat().st_size == len(data):
            self.logger.debug("Binary for loan %s already stored, hash: %s", loan_id, content_hash)
            return content_hash
        partial = destination.parent / f"{destination.name}.partial"
        with partial.open("wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(partial, destination)
        self.logger.info("Stored binary for loan %s, hash: %s", loan_id, content_hash)
        return content_hash

    def retrieve(self, loan_id: str, content_hash: str) -> bytes:
        path = self._path_for(loan_id, content_hash)
        try:
            with path.open("rb") as handle:
                return handle.read()
        except FileNotFoundError:
            raise BinaryNotFound(loan_id, f"no stored binary with hash {content_hash}")


class BinarySource:
    """Where a loan's binary comes from before it is validated and stored."""

    def fetch(self, loan_id: str, borrower: str) -> bytes:
        raise NotImplementedError


class DirectoryBinarySource(BinarySource):
    """Reads ``<loanId>.so`` or, failing that, ``<borrower>.so`` from a drop directory."""

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)

    def fetch(self, loan_id: str, borrower: str) -> bytes:
        for name in (f"{loan_id}.so", f"{borrower}.so"):
            candidate = self.directory / name
            if candidate.is_file():
                return candidate.read_bytes()
        raise BinaryNotFound(loan_id, f"looked in {self.directory}")


__all__ = [
    "BinarySource",
    "BinaryStore",
    "DirectoryBinarySource",
    "ELF_MAGIC",
    "MAX_BINARY_SIZE",
    "ValidationResult",
    "validate_binary",
]
