"""Credential storage port and its implementations.

Two stores back an authorization: an ephemeral one that lives as long as the
process (access token, in-flight proof key) and a durable one that survives
restarts (refresh token, client id). Both are keyed by the server's canonical
resource URI.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

# Ephemeral store keys
ACCESS_KEY = "access"
PKCE_KEY = "pkce"

# Durable store keys
REFRESH_KEY = "refresh"
CLIENT_KEY = "client"


class CredentialStore(Protocol):
    """Key-value store of JSON-compatible records, partitioned by identity."""

    async def get(self, identity: str, key: str) -> Any | None:
        """Return the stored value, or None if absent."""
        ...

    async def set(self, identity: str, key: str, value: Any) -> None:
        ...

    async def delete(self, identity: str, key: str | None = None) -> None:
        """Delete one key, or every key for the identity when ``key`` is None."""
        ...


class InMemoryCredentialStore:
    """Process-local store. Used as the ephemeral store and in tests."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}

    async def get(self, identity: str, key: str) -> Any | None:
        return self._data.get(identity, {}).get(key)

    async def set(self, identity: str, key: str, value: Any) -> None:
        self._data.setdefault(identity, {})[key] = value

    async def delete(self, identity: str, key: str | None = None) -> None:
        if key is None:
            self._data.pop(identity, None)
            return
        entries = self._data.get(identity)
        if entries is not None:
            entries.pop(key, None)
            if not entries:
                del self._data[identity]

    def identities(self) -> list[str]:
        return list(self._data.keys())


class FileCredentialStore:
    """JSON file store readable only by the current user.

    The whole file is rewritten on every change. Writes from one process are
    serialized; concurrent processes sharing a file are not coordinated.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    async def get(self, identity: str, key: str) -> Any | None:
        return self._load().get(identity, {}).get(key)

    async def set(self, identity: str, key: str, value: Any) -> None:
        async with self._lock:
            data = self._load()
            data.setdefault(identity, {})[key] = value
            self._save(data)

    async def delete(self, identity: str, key: str | None = None) -> None:
        async with self._lock:
            data = self._load()
            if identity not in data:
                return
            if key is None:
                del data[identity]
            else:
                data[identity].pop(key, None)
                if not data[identity]:
                    del data[identity]
            self._save(data)

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable credentials file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed credentials file {self.path}")
            return {}
        return data

    def _save(self, data: dict[str, dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)
        logger.debug(f"Saved credentials to {self.path}")
