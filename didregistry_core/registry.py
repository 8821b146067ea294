"""
DID registry service: the public facade.

Seven operations over explicitly owned state:

  create_did      caller registers a new identifier for a subject
  delete_did      controller removes a record and its keys
  set_controller  controller hands the record to another identity
  add_key         controller appends a public key
  get_controller / get_subject / get_keys   unauthenticated reads

Every mutating call validates its arguments first, then takes the
identifier lock through ``AuthorizationGuard``, commits, and publishes
its event before releasing the lock.  Observers run once the lock is
released.  A failed call changes nothing.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Callable

from didregistry_core.authorization import AuthorizationGuard
from didregistry_core.errors import AlreadyExists, InvalidArgument, InvariantViolation
from didregistry_core.events import NotificationStream
from didregistry_core.identifiers import (
    DEFAULT_DID_METHOD,
    IdentifierAllocator,
    canonical_identifier,
    did_uri,
    is_null_identity,
    parse_did_uri,
)
from didregistry_core.keys import KeyArrays, KeyManager, key_from_verifying_key
from didregistry_core.records import DIDRecord, KeyPurpose, RecordStore

if TYPE_CHECKING:
    from didregistry_core.config import RegistryConfig

logger = logging.getLogger("didregistry.registry")


class RegistryService:
    """Composes allocator, store, guard, key manager and event stream."""

    def __init__(
        self,
        store: RecordStore | None = None,
        allocator: IdentifierAllocator | None = None,
        events: NotificationStream | None = None,
        keys: KeyManager | None = None,
        *,
        clock: Callable[[], float] = time.time,
        did_method: str = DEFAULT_DID_METHOD,
    ):
        self.store = store if store is not None else RecordStore()
        self.allocator = allocator if allocator is not None else IdentifierAllocator()
        self.events = events if events is not None else NotificationStream()
        self.keys = keys if keys is not None else KeyManager(self.store)
        self.guard = AuthorizationGuard(self.store)
        self.did_method = did_method
        self._clock = clock
        self._last_now = 0.0
        self._clock_lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: RegistryConfig) -> RegistryService:
        store = RecordStore()
        return cls(
            store=store,
            allocator=IdentifierAllocator(cfg.initial_counter),
            events=NotificationStream(cfg.event_history),
            keys=KeyManager(store, validate_points=cfg.validate_key_points),
            did_method=cfg.did_method,
        )

    def _now(self) -> float:
        # Never step backwards, so created <= updated survives clock skew.
        with self._clock_lock:
            now = max(self._clock(), self._last_now)
            self._last_now = now
            return now

    @staticmethod
    def _target(identifier: Any) -> str:
        ident = canonical_identifier(identifier)
        if ident is None:
            raise InvalidArgument(f"Malformed identifier: {identifier!r}")
        return ident

    # ── mutating operations ──────────────────────────────────────

    def create_did(self, caller: str, subject: str) -> str:
        """Register a new identifier controlled by *caller*."""
        if is_null_identity(subject):
            raise InvalidArgument("subject must be a non-null identity")
        if is_null_identity(caller):
            raise InvalidArgument("caller identity required")

        identifier = self.allocator.allocate(caller)
        with self.store.lock_for(identifier):
            try:
                self.store.create(identifier, subject, caller, self._now())
            except AlreadyExists as exc:
                logger.critical("Identifier collision",
                                extra={"identifier": identifier, "caller": caller})
                raise InvariantViolation(
                    "Allocated identifier collides with an existing record",
                    identifier=identifier,
                ) from exc
            self.events.created(identifier)
        self.events.deliver()
        logger.info("DID created",
                    extra={"identifier": identifier, "caller": caller, "event": "created"})
        return identifier

    def delete_did(self, caller: str, identifier: str) -> None:
        ident = self._target(identifier)
        with self.guard.authorize(ident, caller):
            self.store.delete(ident)
            self.events.deleted(ident)
        self.events.deliver()
        logger.info("DID deleted",
                    extra={"identifier": ident, "caller": caller, "event": "deleted"})

    def set_controller(self, caller: str, identifier: str,
                       new_controller: str) -> None:
        ident = self._target(identifier)
        if is_null_identity(new_controller):
            raise InvalidArgument("new controller must be a non-null identity")
        with self.guard.authorize(ident, caller):
            self.store.set_controller(ident, new_controller, self._now())
            self.events.controller_changed(ident, new_controller)
        self.events.deliver()
        logger.info(f"Controller changed to {new_controller}",
                    extra={"identifier": ident, "caller": caller,
                           "event": "controller_changed"})

    def add_key(self, caller: str, identifier: str, x: Any, y: Any,
                purpose: KeyPurpose | int | str, curve: str) -> int:
        """Append a key; returns its position in the key set."""
        ident = self._target(identifier)
        key = self.keys.make_key(x, y, purpose, curve)
        with self.guard.authorize(ident, caller):
            record = self.store.append_key(ident, key, self._now())
        position = len(record.keys) - 1
        logger.info(
            f"Key #{position} added ({key.purpose.name.lower()}, {key.curve})",
            extra={"identifier": ident, "caller": caller},
        )
        return position

    def add_verifying_key(self, caller: str, identifier: str, vk: Any,
                          purpose: KeyPurpose | int | str) -> int:
        """Append the public point of an ``ecdsa.VerifyingKey``."""
        key = key_from_verifying_key(vk, purpose)
        return self.add_key(caller, identifier, key.x, key.y, key.purpose, key.curve)

    # ── reads (no authorization, never raise) ────────────────────

    def get_record(self, identifier: Any) -> DIDRecord | None:
        ident = canonical_identifier(identifier)
        if ident is None:
            return None
        return self.store.get(ident)

    def get_controller(self, identifier: Any) -> str | None:
        record = self.get_record(identifier)
        return record.controller if record else None

    def get_subject(self, identifier: Any) -> str | None:
        record = self.get_record(identifier)
        return record.subject if record else None

    def get_keys(self, identifier: Any) -> KeyArrays:
        ident = canonical_identifier(identifier)
        if ident is None:
            return (), (), (), ()
        return self.keys.list_keys(ident)

    def did_uri(self, identifier: str) -> str:
        return did_uri(identifier, self.did_method)

    def resolve(self, uri: str) -> DIDRecord | None:
        """Resolve a ``did:<method>:<hex>`` URI to its record."""
        ident = parse_did_uri(uri, self.did_method)
        if ident is None:
            return None
        return self.store.get(ident)

    def status(self) -> dict:
        return {
            "records": len(self.store),
            "counter": self.allocator.counter,
            "last_event": self.events.last_sequence,
            "observers": self.events.observer_count,
            "did_method": self.did_method,
        }
