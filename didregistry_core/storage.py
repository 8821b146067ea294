"""
SQLite-based persistence for DID registry state.

Stores records, their ordered key sets, and the allocation counter so a
node can recover after restart.  The registry core keeps everything in
memory; this adapter snapshots and restores it.

Usage:
    store = RegistryStore("data/didregistry.db")
    store.restore_registry(service)
    ...
    store.snapshot_registry(service)
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any

from didregistry_core.records import DIDRecord, Key, KeyPurpose

logger = logging.getLogger("didregistry_storage")


class RegistryStore:
    """Thin SQLite wrapper for persisting registry state."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/didregistry.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS dids (
                identifier TEXT PRIMARY KEY,
                controller TEXT NOT NULL,
                subject    TEXT NOT NULL,
                created    REAL NOT NULL,
                updated    REAL NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS did_keys (
                identifier TEXT NOT NULL
                    REFERENCES dids(identifier) ON DELETE CASCADE,
                position   INTEGER NOT NULL,
                x          BLOB NOT NULL,
                y          BLOB NOT NULL,
                purpose    INTEGER NOT NULL,
                curve      TEXT NOT NULL,
                PRIMARY KEY (identifier, position)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                counter INTEGER NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION})."
            )

    # ── records ──────────────────────────────────────────────────

    def _write_record(self, record: DIDRecord) -> None:
        c = self._conn
        c.execute(
            """INSERT OR REPLACE INTO dids
               (identifier, controller, subject, created, updated)
               VALUES (?, ?, ?, ?, ?)""",
            (record.identifier, record.controller, record.subject,
             record.created, record.updated),
        )
        c.execute("DELETE FROM did_keys WHERE identifier = ?", (record.identifier,))
        c.executemany(
            """INSERT INTO did_keys
               (identifier, position, x, y, purpose, curve)
               VALUES (?, ?, ?, ?, ?, ?)""",
            [(record.identifier, pos, k.x, k.y, int(k.purpose), k.curve)
             for pos, k in enumerate(record.keys)],
        )

    def save_record(self, record: DIDRecord) -> None:
        try:
            self._write_record(record)
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def delete_record(self, identifier: str) -> None:
        self._conn.execute("DELETE FROM dids WHERE identifier = ?", (identifier,))
        self._conn.commit()

    def load_records(self) -> list[DIDRecord]:
        keys: dict[str, list[Key]] = {}
        for row in self._conn.execute(
            "SELECT * FROM did_keys ORDER BY identifier, position"
        ).fetchall():
            keys.setdefault(row["identifier"], []).append(Key(
                x=bytes(row["x"]),
                y=bytes(row["y"]),
                purpose=KeyPurpose(row["purpose"]),
                curve=row["curve"],
            ))
        return [
            DIDRecord(
                identifier=row["identifier"],
                controller=row["controller"],
                subject=row["subject"],
                created=row["created"],
                updated=row["updated"],
                keys=tuple(keys.get(row["identifier"], ())),
            )
            for row in self._conn.execute("SELECT * FROM dids").fetchall()
        ]

    # ── counter ──────────────────────────────────────────────────

    def save_counter(self, counter: int) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO meta (id, counter) VALUES (1, ?)", (counter,)
        )
        self._conn.commit()

    def load_counter(self) -> int:
        row = self._conn.execute("SELECT counter FROM meta WHERE id = 1").fetchone()
        return row["counter"] if row else 0

    # ── bulk helpers ─────────────────────────────────────────────

    def snapshot_registry(self, service: Any) -> int:
        """Persist the full registry state in a single transaction.

        Records deleted since the previous snapshot are removed too.
        Returns the number of records written.
        """
        records = service.store.records()
        live = {r.identifier for r in records}
        c = self._conn
        try:
            c.execute("BEGIN IMMEDIATE")
            stale = [
                row["identifier"]
                for row in c.execute("SELECT identifier FROM dids").fetchall()
                if row["identifier"] not in live
            ]
            c.executemany("DELETE FROM dids WHERE identifier = ?",
                          [(i,) for i in stale])
            for record in records:
                self._write_record(record)
            c.execute(
                "INSERT OR REPLACE INTO meta (id, counter) VALUES (1, ?)",
                (service.allocator.counter,),
            )
            c.execute("COMMIT")
        except Exception:
            c.execute("ROLLBACK")
            raise
        logger.info(f"Snapshot saved: {len(records)} records, "
                    f"counter={service.allocator.counter}")
        return len(records)

    def restore_registry(self, service: Any) -> int:
        """Load records and the counter into an empty registry."""
        records = self.load_records()
        for record in records:
            service.store.load(record)
        service.allocator.restore(max(self.load_counter(), service.allocator.counter))
        logger.info(f"Restored {len(records)} records, "
                    f"counter={service.allocator.counter}")
        return len(records)

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
