"""
Error taxonomy for the identity core.

Every error carries a short machine code (e.g. ``token_exchange_failed``) in
the same manner as the provider client layer. Components absorb these at their
boundary; only the legacy provider raises to its caller.
"""
from __future__ import annotations


class IdentityAccessError(Exception):
    """Base class; ``code`` is a stable snake_case identifier."""

    def __init__(self, code: str, message: str | None = None):
        super().__init__(message or code)
        self.code = code


class ProviderUnavailable(IdentityAccessError):
    """Token exchange or network failure while talking to an identity provider."""


class ProfileConflict(IdentityAccessError):
    """Profile lookup failed with something other than "not found"."""


class SubscriptionFetchFailure(IdentityAccessError):
    pass


class DeterministicMappingFailure(IdentityAccessError):
    """The external id cannot be mapped. Never patched with a random id."""


class RecordNotFound(IdentityAccessError):
    def __init__(self, code: str = "not_found", message: str | None = None):
        super().__init__(code, message)


class DuplicateRecord(IdentityAccessError):
    def __init__(self, code: str = "duplicate", message: str | None = None):
        super().__init__(code, message)


class LegacyAuthError(IdentityAccessError):
    """Login or registration rejected by the legacy credential store."""


__all__ = [
    "DeterministicMappingFailure",
    "DuplicateRecord",
    "IdentityAccessError",
    "LegacyAuthError",
    "ProfileConflict",
    "ProviderUnavailable",
    "RecordNotFound",
    "SubscriptionFetchFailure",
]
