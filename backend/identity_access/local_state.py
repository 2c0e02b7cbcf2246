"""
Persisted client-local state and the Elevated-Access Marker.

Why: The legacy provider and the admin-login flow keep small flags on the
client side under well-known keys. This module is the only place those keys
are read and written.

Security: Nothing stored here is verified by a server. The Elevated-Access
Marker in particular is an unsigned flag; see `ElevatedAccessMarker`.
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger("interviewai.identity.local_state")

MANUAL_SESSION_KEY = "manual_session"
ELEVATED_FLAG_KEY = "tempAdmin"
ELEVATED_USERNAME_KEY = "adminUsername"


class LocalStateStore:
    """String key/value store, optionally persisted to a JSON file.

    With ``path=None`` the state lives in memory only (tests, CLI runs).
    A corrupt file is treated as empty and overwritten on the next write.
    """

    def __init__(self, path: str | os.PathLike[str] | None = None):
        self._path = Path(path) if path else None
        self._data: Dict[str, str] = {}
        if self._path and self._path.exists():
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Local state unreadable, starting empty: %s", exc.__class__.__name__)
                raw = {}
            if isinstance(raw, dict):
                self._data = {str(k): str(v) for k, v in raw.items() if isinstance(v, str)}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()

    def _flush(self) -> None:
        if not self._path:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data), encoding="utf-8")
        tmp.replace(self._path)


class ElevatedAccessMarker:
    """Client-local admin flag written by the admin-login flow.

    The guard treats a present marker as equivalent to a verified admin role.
    This is preserved for parity with the existing product and is a known
    weakness: anyone able to write local state can set it. A short-lived,
    server-issued elevation token is the intended replacement. Deployments can
    switch the marker off with ``enabled=False`` (ELEVATED_MARKER_ENABLED).
    """

    def __init__(self, state: LocalStateStore, *, enabled: bool = True):
        self._state = state
        self.enabled = enabled

    def is_present(self) -> bool:
        if not self.enabled:
            return False
        return self._state.get(ELEVATED_FLAG_KEY) == "true"

    @property
    def username(self) -> Optional[str]:
        if not self.is_present():
            return None
        return self._state.get(ELEVATED_USERNAME_KEY)

    def set(self, username: str) -> None:
        """Set the marker. Only the admin-login flow may call this."""
        self._state.set(ELEVATED_FLAG_KEY, "true")
        self._state.set(ELEVATED_USERNAME_KEY, username)

    def clear(self) -> None:
        self._state.remove(ELEVATED_FLAG_KEY)
        self._state.remove(ELEVATED_USERNAME_KEY)


__all__ = [
    "ELEVATED_FLAG_KEY",
    "ELEVATED_USERNAME_KEY",
    "ElevatedAccessMarker",
    "LocalStateStore",
    "MANUAL_SESSION_KEY",
]
