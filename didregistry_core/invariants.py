"""
Record-level invariant checks for the DID registry.

Run against every record the store is about to publish:
  - controller and subject are non-null identities
  - ``created <= updated``
  - every key carries fixed-width coordinates and a curve name

A failure is an internal fault, never a user error: the store refuses
the write and raises ``InvariantViolation``.
"""

from __future__ import annotations

import logging
from typing import Any

from didregistry_core.errors import InvariantViolation
from didregistry_core.identifiers import is_null_identity

logger = logging.getLogger("didregistry.invariants")

COORDINATE_BYTES = 32


def _check_identities(record: Any) -> tuple[bool, str]:
    if is_null_identity(record.controller):
        return False, "record has no controller"
    if is_null_identity(record.subject):
        return False, "record has no subject"
    return True, ""


def _check_timestamps(record: Any) -> tuple[bool, str]:
    if record.created > record.updated:
        return False, f"created {record.created} is after updated {record.updated}"
    return True, ""


def _check_keys(record: Any) -> tuple[bool, str]:
    for pos, key in enumerate(record.keys):
        if len(key.x) != COORDINATE_BYTES or len(key.y) != COORDINATE_BYTES:
            return False, f"key {pos} has malformed coordinates"
        if not key.curve:
            return False, f"key {pos} has no curve"
    return True, ""


def verify_record(record: Any) -> tuple[bool, str]:
    """Return (passed, error_message) for a candidate record."""
    errors: list[str] = []
    for check in (_check_identities, _check_timestamps, _check_keys):
        ok, msg = check(record)
        if not ok:
            errors.append(msg)
    if errors:
        return False, "; ".join(errors)
    return True, ""


def check_record(record: Any) -> None:
    """Raise ``InvariantViolation`` unless *record* passes every check."""
    ok, msg = verify_record(record)
    if not ok:
        logger.critical(f"Invariant violation: {msg}",
                        extra={"identifier": record.identifier})
        raise InvariantViolation(msg, identifier=record.identifier)
