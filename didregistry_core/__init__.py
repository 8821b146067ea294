"""
DID Registry - controller-gated decentralized identifier records.

Key features:
- keccak256(caller, counter) identifier allocation
- Per-identifier locking: authorize-then-mutate is atomic
- Append-only public key sets (P-256, secp256k1, ...)
- Ordered change notifications (created / deleted / controller_changed)
- SQLite snapshots and an aiohttp REST + WebSocket front end
"""

__version__ = "1.0.0"
__all__ = [
    "errors",
    "identifiers",
    "records",
    "authorization",
    "keys",
    "events",
    "registry",
    "invariants",
    "config",
    "logging_config",
    "storage",
    "api",
]
