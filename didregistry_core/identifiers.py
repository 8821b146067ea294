"""
Identifier allocation for the DID registry.

A new identifier is ``keccak256(caller || counter)`` where ``counter`` is a
registry-wide sequence number starting at zero and bumped once per
allocation, whoever the caller is.  The pair never repeats, so the digest
is unique for the life of the counter.

Identifiers are 32 bytes, carried around as 64 lowercase hex characters.
The DID URI form is ``did:<method>:<hex>``.
"""

from __future__ import annotations

import re
import threading

from Crypto.Hash import keccak

IDENTIFIER_BYTES = 32
COUNTER_BYTES = 32
DEFAULT_DID_METHOD = "dreg"

_HEX_ID = re.compile(r"^(?:0x)?([0-9a-fA-F]{64})$")
_HEX_ADDRESS = re.compile(r"^0x([0-9a-fA-F]{40})$")
_ZERO_HEX = re.compile(r"^0x0+$")


# ── identities ───────────────────────────────────────────────────

def is_null_identity(value: str | None) -> bool:
    """True for ``None``, ``""`` or an all-zero hex address."""
    if value is None:
        return True
    if not isinstance(value, str):
        return True
    value = value.strip()
    if not value:
        return True
    return bool(_ZERO_HEX.match(value))


def identity_bytes(identity: str) -> bytes:
    """Encode an identity for hashing.

    ``0x``-prefixed 20-byte addresses hash as their raw bytes, anything
    else as UTF-8.
    """
    m = _HEX_ADDRESS.match(identity)
    if m:
        return bytes.fromhex(m.group(1))
    return identity.encode("utf-8")


# ── identifiers ──────────────────────────────────────────────────

def keccak256(data: bytes) -> bytes:
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


def canonical_identifier(value: str | bytes | None) -> str | None:
    """Return the 64-char lowercase hex form, or None if malformed.

    Accepts raw 32-byte values, hex with or without ``0x``, and
    ``did:<method>:<hex>`` URIs.
    """
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        if len(value) != IDENTIFIER_BYTES:
            return None
        return bytes(value).hex()
    if not isinstance(value, str):
        return None
    if value.startswith("did:"):
        parts = value.split(":", 2)
        if len(parts) != 3:
            return None
        value = parts[2]
    m = _HEX_ID.match(value.strip())
    if not m:
        return None
    return m.group(1).lower()


def did_uri(identifier: str, method: str = DEFAULT_DID_METHOD) -> str:
    return f"did:{method}:{identifier}"


def parse_did_uri(uri: str, method: str = DEFAULT_DID_METHOD) -> str | None:
    """Resolve a ``did:<method>:<hex>`` URI to an identifier."""
    prefix = f"did:{method}:"
    if not uri.startswith(prefix):
        return None
    return canonical_identifier(uri[len(prefix):])


class IdentifierAllocator:
    """Derives fresh identifiers from a caller and the shared counter."""

    def __init__(self, initial_counter: int = 0):
        if initial_counter < 0:
            raise ValueError("counter cannot be negative")
        self._counter = initial_counter
        self._lock = threading.Lock()

    @property
    def counter(self) -> int:
        return self._counter

    @staticmethod
    def derive(caller: str, counter: int) -> str:
        """Pure derivation, no side effects."""
        payload = identity_bytes(caller) + counter.to_bytes(COUNTER_BYTES, "big")
        return keccak256(payload).hex()

    def allocate(self, caller: str) -> str:
        with self._lock:
            identifier = self.derive(caller, self._counter)
            self._counter += 1
        return identifier

    def restore(self, counter: int) -> None:
        """Fast-forward the counter after loading persisted state."""
        with self._lock:
            if counter < self._counter:
                raise ValueError(
                    f"Refusing to rewind counter from {self._counter} to {counter}"
                )
            self._counter = counter
