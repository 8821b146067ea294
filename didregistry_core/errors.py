"""
Error taxonomy for the DID registry.

Every failing check raises one of these synchronously, before any state
is touched.  ``code`` is a stable string used by the HTTP layer and logs.
"""

from __future__ import annotations


class RegistryError(Exception):
    """Base class for all registry faults."""
    code = "registry_error"

    def __init__(self, message: str = "", identifier: str | None = None):
        super().__init__(message or self.code)
        self.identifier = identifier

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": str(self),
            "identifier": self.identifier,
        }


class InvalidArgument(RegistryError):
    """Malformed input: null subject, bad key width, unknown purpose."""
    code = "invalid_argument"


class NotFound(RegistryError):
    """The identifier maps to no record."""
    code = "not_found"


class Unauthorized(RegistryError):
    """The caller is not the record's current controller."""
    code = "unauthorized"


class AlreadyExists(RegistryError):
    """The identifier is already registered."""
    code = "already_exists"


class InvariantViolation(RegistryError):
    """Internal consistency failure.  Fatal: the operation is aborted."""
    code = "invariant_violation"
