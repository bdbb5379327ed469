"""Secure storage for local key material.

Keys are addressed by ``(namespace, key)``. Nothing stored here is ever
sent to the remote store.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from threading import Lock
from typing import Protocol

from parlor.core.errors import CorruptedDataError
from parlor.services.vault import LocalVault

logger = logging.getLogger(__name__)


class SecureKeyStore(Protocol):
    """Namespaced get/set/delete for secrets."""

    def get(self, namespace: str, key: str) -> str | None: ...

    def set(self, namespace: str, key: str, value: str) -> None: ...

    def delete(self, namespace: str, key: str) -> None: ...


def _slot(namespace: str, key: str) -> str:
    if not namespace or ":" in namespace:
        raise ValueError("Key store namespace must be non-empty and contain no ':'")
    return f"{namespace}:{key}"


class InMemoryKeyStore:
    """Process-local key store, used in tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._lock = Lock()

    def get(self, namespace: str, key: str) -> str | None:
        with self._lock:
            return self._values.get(_slot(namespace, key))

    def set(self, namespace: str, key: str, value: str) -> None:
        with self._lock:
            self._values[_slot(namespace, key)] = value

    def delete(self, namespace: str, key: str) -> None:
        with self._lock:
            self._values.pop(_slot(namespace, key), None)


class EncryptedFileKeyStore:
    """Key store persisted to a JSON file whose values are vault-sealed."""

    def __init__(self, path: str | Path, vault: LocalVault | None = None) -> None:
        self._path = Path(path).expanduser()
        self._vault = vault or LocalVault()
        self._lock = Lock()

    def _read(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as err:
            raise CorruptedDataError(f"Key store at {self._path} is unreadable") from err
        if not isinstance(data, dict):
            raise CorruptedDataError(f"Key store at {self._path} has an unexpected layout")
        return data

    def _write(self, data: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, sort_keys=True), encoding="utf-8")
        os.chmod(tmp_path, 0o600)
        tmp_path.replace(self._path)

    def get(self, namespace: str, key: str) -> str | None:
        slot = _slot(namespace, key)
        with self._lock:
            token = self._read().get(slot)
        if token is None:
            return None
        return self._vault.open(token).decode("utf-8")

    def set(self, namespace: str, key: str, value: str) -> None:
        slot = _slot(namespace, key)
        token = self._vault.seal(value.encode("utf-8"))
        with self._lock:
            data = self._read()
            data[slot] = token
            self._write(data)
        logger.debug("Stored key material in slot %s", slot)

    def delete(self, namespace: str, key: str) -> None:
        slot = _slot(namespace, key)
        with self._lock:
            data = self._read()
            if data.pop(slot, None) is not None:
                self._write(data)
