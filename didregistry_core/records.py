"""
Record storage for the DID registry.

One ``DIDRecord`` per registered identifier.  Records are immutable
values: every mutation builds a replacement and swaps it into the table
with a single assignment, so a reader holding a reference always sees a
whole record.

Mutations of one identifier are serialised by a per-identifier lock that
the authorization layer holds across check and write.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from enum import IntEnum

from didregistry_core.errors import AlreadyExists, InvalidArgument, NotFound
from didregistry_core.invariants import check_record


class KeyPurpose(IntEnum):
    AUTHENTICATION = 0
    SIGNING = 1
    ENCRYPTION = 2

    @classmethod
    def parse(cls, value: KeyPurpose | int | str) -> KeyPurpose:
        """Accept an enum member, its integer code, or its name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise InvalidArgument(f"Invalid key purpose: {value!r}")
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                raise InvalidArgument(f"Unknown key purpose code: {value}") from None
        if isinstance(value, str):
            name = value.strip().upper()
            if name.isdigit():
                return cls.parse(int(name))
            try:
                return cls[name]
            except KeyError:
                raise InvalidArgument(f"Unknown key purpose: {value!r}") from None
        raise InvalidArgument(f"Invalid key purpose: {value!r}")


@dataclass(frozen=True)
class Key:
    """One public key attached to a record."""
    x: bytes
    y: bytes
    purpose: KeyPurpose
    curve: str

    def to_dict(self) -> dict:
        return {
            "x": self.x.hex(),
            "y": self.y.hex(),
            "purpose": self.purpose.name.lower(),
            "purpose_code": int(self.purpose),
            "curve": self.curve,
        }


@dataclass(frozen=True)
class DIDRecord:
    """A registered identifier and everything bound to it."""
    identifier: str
    controller: str
    subject: str
    created: float
    updated: float
    keys: tuple[Key, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "controller": self.controller,
            "subject": self.subject,
            "created": self.created,
            "updated": self.updated,
            "keys": [k.to_dict() for k in self.keys],
        }


class RecordStore:
    """Authoritative identifier -> DIDRecord table."""

    def __init__(self):
        self._records: dict[str, DIDRecord] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._table_lock = threading.Lock()

    # ── locking ──────────────────────────────────────────────────

    def lock_for(self, identifier: str) -> threading.RLock:
        """Per-identifier re-entrant lock, created on first use."""
        with self._table_lock:
            lock = self._locks.get(identifier)
            if lock is None:
                lock = threading.RLock()
                self._locks[identifier] = lock
            return lock

    def drop_lock(self, identifier: str) -> None:
        """Forget the lock of an identifier that no longer has a record."""
        with self._table_lock:
            if identifier not in self._records:
                self._locks.pop(identifier, None)

    # ── reads ────────────────────────────────────────────────────

    def get(self, identifier: str) -> DIDRecord | None:
        return self._records.get(identifier)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._records

    def __len__(self) -> int:
        return len(self._records)

    def identifiers(self) -> list[str]:
        with self._table_lock:
            return list(self._records)

    def records(self) -> list[DIDRecord]:
        with self._table_lock:
            return list(self._records.values())

    # ── writes ───────────────────────────────────────────────────

    def create(self, identifier: str, subject: str, controller: str,
               now: float) -> DIDRecord:
        record = DIDRecord(
            identifier=identifier,
            controller=controller,
            subject=subject,
            created=now,
            updated=now,
        )
        check_record(record)
        with self._table_lock:
            if identifier in self._records:
                raise AlreadyExists(
                    f"Identifier {identifier} is already registered",
                    identifier=identifier,
                )
            self._records[identifier] = record
        return record

    def load(self, record: DIDRecord) -> None:
        """Insert a fully-formed record (restore path)."""
        check_record(record)
        with self._table_lock:
            if record.identifier in self._records:
                raise AlreadyExists(
                    f"Identifier {record.identifier} is already registered",
                    identifier=record.identifier,
                )
            self._records[record.identifier] = record

    def delete(self, identifier: str) -> DIDRecord:
        self._require(identifier)
        with self.lock_for(identifier):
            with self._table_lock:
                record = self._records.pop(identifier, None)
                self._locks.pop(identifier, None)
        if record is None:
            raise NotFound(f"No record for {identifier}", identifier=identifier)
        return record

    def set_controller(self, identifier: str, new_controller: str,
                       now: float) -> DIDRecord:
        return self._replace(identifier, controller=new_controller, updated=now)

    def append_key(self, identifier: str, key: Key, now: float) -> DIDRecord:
        self._require(identifier)
        with self.lock_for(identifier):
            current = self._require_locked(identifier)
            return self._replace(identifier, keys=current.keys + (key,),
                                 updated=now)

    # ── internals ────────────────────────────────────────────────

    def _require(self, identifier: str) -> DIDRecord:
        record = self._records.get(identifier)
        if record is None:
            raise NotFound(f"No record for {identifier}", identifier=identifier)
        return record

    def _require_locked(self, identifier: str) -> DIDRecord:
        # Deleted between the unlocked check and lock_for, which re-created
        # the entry.
        record = self._records.get(identifier)
        if record is None:
            self.drop_lock(identifier)
            raise NotFound(f"No record for {identifier}", identifier=identifier)
        return record

    def _replace(self, identifier: str, **changes) -> DIDRecord:
        self._require(identifier)
        with self.lock_for(identifier):
            current = self._require_locked(identifier)
            updated = replace(current, **changes)
            check_record(updated)
            self._records[identifier] = updated
            return updated
