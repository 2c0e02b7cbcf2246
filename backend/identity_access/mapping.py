"""
Deterministic mapping from external provider ids to internal record keys.

The mapped id is the join key between the provider world and the `profiles`
and `user_subscriptions` tables, so it must be reproducible across processes
and restarts: UUIDv5 under a fixed project namespace.
"""
from __future__ import annotations

import re
import uuid

from .errors import DeterministicMappingFailure

# Fixed namespace. Changing it re-keys every user; never do that.
MAPPING_NAMESPACE = uuid.UUID("1b671a64-40d5-491e-99b0-da01ff1f3341")

_CANONICAL_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$"
)


def map_external_id(external_id: str) -> str:
    """Return the internal id (36-char UUID string) for ``external_id``.

    Raises
    ------
    DeterministicMappingFailure:
        When the input is not a non-empty string or the derivation fails.
    """
    if not isinstance(external_id, str):
        raise DeterministicMappingFailure("invalid_external_id", "external id must be a string")
    if not external_id.strip():
        raise DeterministicMappingFailure("empty_external_id", "external id must not be empty")
    try:
        return str(uuid.uuid5(MAPPING_NAMESPACE, external_id))
    except (UnicodeError, ValueError) as exc:
        raise DeterministicMappingFailure("derivation_failed") from exc


def is_mapped_id(value: object) -> bool:
    """True for canonical lowercase RFC 4122 UUID strings."""
    return isinstance(value, str) and bool(_CANONICAL_UUID.match(value))


__all__ = ["MAPPING_NAMESPACE", "is_mapped_id", "map_external_id"]
