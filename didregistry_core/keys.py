"""
Key-set management for DID records.

Keys are public-key points with fixed 32-byte coordinates, a purpose tag
and a curve name.  On curves ``ecdsa`` knows, points can optionally be
checked for curve membership; other curve names are stored as given.

The read path returns four parallel tuples (xs, ys, purpose codes,
curve names), index-aligned with insertion order.
"""

from __future__ import annotations

import logging
from typing import Any

from ecdsa import BRAINPOOLP256r1, NIST256p, SECP256k1
from ecdsa.curves import Curve

from didregistry_core.errors import InvalidArgument
from didregistry_core.invariants import COORDINATE_BYTES
from didregistry_core.records import Key, KeyPurpose, RecordStore

logger = logging.getLogger("didregistry.keys")

# Lower-cased alias -> ecdsa curve.  Only 256-bit curves fit the width.
KNOWN_CURVES: dict[str, Curve] = {
    "p-256": NIST256p,
    "nist256p": NIST256p,
    "secp256r1": NIST256p,
    "prime256v1": NIST256p,
    "secp256k1": SECP256k1,
    "brainpoolp256r1": BRAINPOOLP256r1,
}

_CANONICAL_NAMES = {
    NIST256p.name: "P-256",
    SECP256k1.name: "secp256k1",
    BRAINPOOLP256r1.name: "brainpoolP256r1",
}

KeyArrays = tuple[tuple[bytes, ...], tuple[bytes, ...], tuple[int, ...], tuple[str, ...]]


def _coordinate(value: Any, name: str) -> bytes:
    """Coerce bytes or hex text into a 32-byte coordinate."""
    if isinstance(value, str):
        text = value[2:] if value.startswith("0x") else value
        try:
            value = bytes.fromhex(text)
        except ValueError:
            raise InvalidArgument(f"{name} must be hex-encoded") from None
    if not isinstance(value, (bytes, bytearray)):
        raise InvalidArgument(f"{name} must be bytes or hex")
    if len(value) != COORDINATE_BYTES:
        raise InvalidArgument(
            f"{name} must be exactly {COORDINATE_BYTES} bytes, got {len(value)}"
        )
    return bytes(value)


def lookup_curve(name: str) -> Curve | None:
    return KNOWN_CURVES.get(name.strip().lower())


def point_on_curve(curve: Curve, x: bytes, y: bytes) -> bool:
    xi = int.from_bytes(x, "big")
    yi = int.from_bytes(y, "big")
    field = curve.curve
    if xi >= field.p() or yi >= field.p():
        return False
    return field.contains_point(xi, yi)


def key_from_verifying_key(vk: Any, purpose: KeyPurpose | int | str) -> Key:
    """Build a ``Key`` from an ``ecdsa.VerifyingKey``."""
    name = _CANONICAL_NAMES.get(vk.curve.name)
    if name is None:
        raise InvalidArgument(f"Unsupported curve: {vk.curve.name}")
    raw = vk.to_string()
    return Key(
        x=raw[:COORDINATE_BYTES],
        y=raw[COORDINATE_BYTES:],
        purpose=KeyPurpose.parse(purpose),
        curve=name,
    )


class KeyManager:
    """Validates new keys and formats the key read path."""

    def __init__(self, store: RecordStore, validate_points: bool = True):
        self.store = store
        self.validate_points = validate_points

    def make_key(self, x: Any, y: Any, purpose: KeyPurpose | int | str,
                 curve: str) -> Key:
        xb = _coordinate(x, "x")
        yb = _coordinate(y, "y")
        kp = KeyPurpose.parse(purpose)
        if not isinstance(curve, str) or not curve.strip():
            raise InvalidArgument("curve name required")
        curve = curve.strip()
        if self.validate_points:
            known = lookup_curve(curve)
            if known is not None and not point_on_curve(known, xb, yb):
                logger.debug(f"Off-curve point rejected: curve={curve} x={xb.hex()[:16]}")
                raise InvalidArgument(f"Point is not on curve {curve}")
        return Key(x=xb, y=yb, purpose=kp, curve=curve)

    def list_keys(self, identifier: str) -> KeyArrays:
        record = self.store.get(identifier)
        if record is None or not record.keys:
            return (), (), (), ()
        keys = record.keys
        return (
            tuple(k.x for k in keys),
            tuple(k.y for k in keys),
            tuple(int(k.purpose) for k in keys),
            tuple(k.curve for k in keys),
        )
