"""Persistent deployment state backed by SQLite with a status audit trail."""
from __future__ import annotations

import json
import os
import sqlite3
import threading
from typing import Any, Dict, List, Optional

from .errors import StorageError
from .models import DeploymentRecord

WATERMARK_KEY = "last-processed-slot"


def _json_dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


def _json_loads(raw: str) -> Dict[str, Any]:
    return json.loads(raw) if raw else {}


class DeploymentStore:
    """Thread-safe store of deployment records, keyed by loan id.

    Writes are full overwrites; callers read-modify-write. Every status change
    is appended to the ``transitions`` table, so records themselves never need
    to be deleted to reconstruct what happened to a loan.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        directory = os.path.dirname(os.path.abspath(self._db_path))
        try:
            os.makedirs(directory, exist_ok=True)
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"Unable to open state store {self._db_path}: {exc}") from exc
        self._lock = threading.Lock()
        self._closed = False
        self._create_schema()

    def __enter__(self) -> "DeploymentStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _create_schema(self) -> None:
        try:
            with self._conn:  # type: ignore[call-arg]
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS deployments (
                        loan_id TEXT PRIMARY KEY,
                        data TEXT NOT NULL,
                        seq INTEGER NOT NULL
                    )
                    """
                )
                self._conn.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_deployments_seq ON deployments(seq)
                    """
                )
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS transitions (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        loan_id TEXT NOT NULL,
                        status TEXT NOT NULL,
                        error TEXT,
                        timestamp INTEGER NOT NULL
                    )
                    """
                )
                self._conn.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_transitions_loan ON transitions(loan_id)
                    """
                )
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS meta (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                    """
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to create schema: {exc}") from exc

    def _fetch(self, loan_id: str) -> Optional[Dict[str, Any]]:
        cursor = self._conn.execute("SELECT data FROM deployments WHERE loan_id = ?", (loan_id,))
        row = cursor.fetchone()
        return _json_loads(row[0]) if row else None

    def get(self, loan_id: str) -> Optional[DeploymentRecord]:
        with self._lock:
            try:
                payload = self._fetch(str(loan_id))
            except sqlite3.Error as exc:
                raise StorageError(f"Unable to read deployment {loan_id}: {exc}") from exc
        return DeploymentRecord.from_dict(payload) if payload else None

    def put(self, record: DeploymentRecord) -> None:
        payload = record.to_dict()
        with self._lock:
            try:
                previous = self._fetch(record.loan_id)
                with self._conn:  # type: ignore[call-arg]
                    self._conn.execute(
                        """
                        INSERT INTO deployments(loan_id, data, seq)
                        VALUES(?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM deployments))
                        ON CONFLICT(loan_id) DO UPDATE SET data = excluded.data, seq = excluded.seq
                        """,
                        (record.loan_id, _json_dumps(payload)),
                    )
                    if previous is None or previous.get("status") != record.status:
                        self._conn.execute(
                            "INSERT INTO transitions(loan_id, status, error, timestamp) VALUES(?, ?, ?, ?)",
                            (record.loan_id, record.status, record.error, record.updated_at),
                        )
            except sqlite3.Error as exc:
                raise StorageError(f"Unable to persist deployment {record.loan_id}: {exc}") from exc

    def list_all(self) -> List[DeploymentRecord]:
        """All records, most recently written first."""
        with self._lock:
            try:
                rows = self._conn.execute("SELECT data FROM deployments ORDER BY seq DESC").fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"Unable to list deployments: {exc}") from exc
        return [DeploymentRecord.from_dict(_json_loads(row[0])) for row in rows]

    def history(self, loan_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            try:
                rows = self._conn.execute(
                    "SELECT status, error, timestamp FROM transitions WHERE loan_id = ? ORDER BY id ASC",
                    (str(loan_id),),
                ).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"Unable to read history for {loan_id}: {exc}") from exc
        return [{"status": status, "error": error, "timestamp": ts} for status, error, ts in rows]

    def get_watermark(self) -> Optional[int]:
        with self._lock:
            try:
                row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (WATERMARK_KEY,)).fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"Unable to read watermark: {exc}") from exc
        return int(row[0]) if row else None

    def set_watermark(self, slot: int) -> None:
        with self._lock:
            try:
                with self._conn:  # type: ignore[call-arg]
                    self._conn.execute(
                        """
                        INSERT INTO meta(key, value) VALUES(?, ?)
                        ON CONFLICT(key) DO UPDATE SET value = excluded.value
                        """,
                        (WATERMARK_KEY, str(int(slot))),
                    )
            except sqlite3.Error as exc:
                raise StorageError(f"Unable to persist watermark: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()


__all__ = ["DeploymentStore", "WATERMARK_KEY"]
