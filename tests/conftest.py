"""
Shared pytest fixtures for the DID registry test suite.
"""

import pytest
from ecdsa import NIST256p, SECP256k1, SigningKey

from didregistry_core.events import NotificationStream
from didregistry_core.identifiers import IdentifierAllocator
from didregistry_core.keys import KeyManager
from didregistry_core.records import RecordStore
from didregistry_core.registry import RegistryService


class FakeClock:
    """Manually advanced clock for deterministic timestamps."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float = 1.0) -> float:
        self.now += seconds
        return self.now


def _curve_point(secret: int, curve=NIST256p) -> tuple[bytes, bytes]:
    """Deterministic (x, y) public point for a secret exponent."""
    raw = SigningKey.from_secret_exponent(secret, curve=curve).get_verifying_key().to_string()
    return raw[:32], raw[32:]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return RecordStore()


@pytest.fixture
def registry(clock):
    """Fresh registry on a fake clock."""
    return RegistryService(clock=clock)


@pytest.fixture
def loose_registry(clock):
    """Registry that skips on-curve checks."""
    store = RecordStore()
    return RegistryService(
        store=store,
        allocator=IdentifierAllocator(),
        events=NotificationStream(),
        keys=KeyManager(store, validate_points=False),
        clock=clock,
    )


@pytest.fixture
def alice_did(registry):
    """A DID controlled by rAlice describing rSubjectX."""
    return registry.create_did("rAlice", "rSubjectX")


@pytest.fixture
def curve_point():
    """Factory: secret exponent (and curve) -> (x, y)."""
    return _curve_point


@pytest.fixture
def p256_key():
    return _curve_point(7)


@pytest.fixture
def k1_key():
    return _curve_point(11, SECP256k1)
