"""
Controller-based authorization for mutating registry calls.

``authorize`` holds the identifier's lock for the whole ``with`` block,
so the controller check and the mutation that follows it are one atomic
unit with respect to other writers of the same identifier.
"""

from __future__ import annotations

import contextlib
import logging
from typing import Iterator

from didregistry_core.errors import NotFound, Unauthorized
from didregistry_core.records import DIDRecord, RecordStore

logger = logging.getLogger("didregistry.auth")


class AuthorizationGuard:
    """Gates every mutation on ``caller == record.controller``."""

    def __init__(self, store: RecordStore):
        self.store = store

    @contextlib.contextmanager
    def authorize(self, identifier: str, caller: str) -> Iterator[DIDRecord]:
        # Absent identifiers never keep a lock entry.
        if identifier not in self.store:
            logger.warning("Rejected: not found",
                           extra={"identifier": identifier, "caller": caller})
            raise NotFound(f"No record for {identifier}", identifier=identifier)
        with self.store.lock_for(identifier):
            record = self.store.get(identifier)
            if record is None:
                self.store.drop_lock(identifier)
                logger.warning("Rejected: not found",
                               extra={"identifier": identifier, "caller": caller})
                raise NotFound(f"No record for {identifier}", identifier=identifier)
            if record.controller != caller:
                logger.warning("Rejected: caller is not controller",
                               extra={"identifier": identifier, "caller": caller})
                raise Unauthorized(
                    "Caller is not the controller of this identifier",
                    identifier=identifier,
                )
            yield record
