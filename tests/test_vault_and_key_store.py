"""Tests for on-device sealing and key storage."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from parlor.core.errors import CorruptedDataError
from parlor.services.key_store import EncryptedFileKeyStore, InMemoryKeyStore
from parlor.services.vault import SEALED_MARKER, LocalVault


def test_seal_and_open(vault: LocalVault) -> None:
    token = vault.seal(b"secret bytes")
    assert b"secret bytes" not in token.encode()
    assert vault.open(token) == b"secret bytes"


def test_open_with_other_secret_fails(vault: LocalVault) -> None:
    token = vault.seal(b"secret bytes")
    with pytest.raises(CorruptedDataError):
        LocalVault("another-secret").open(token)


def test_open_garbage_fails(vault: LocalVault) -> None:
    with pytest.raises(CorruptedDataError):
        vault.open("not-base64!!")


def test_seal_fields_hides_sensitive_keys(vault: LocalVault) -> None:
    payload = {
        "thread_id": "t1",
        "cipher_content": "hello there",
        "nested": {"content": "inner text", "kind": "note"},
        "items": [{"email": "a@example.com"}],
    }

    sealed = vault.seal_fields(payload)
    rendered = json.dumps(sealed)

    assert sealed["thread_id"] == "t1"
    assert set(sealed["cipher_content"]) == {SEALED_MARKER}
    assert "hello there" not in rendered
    assert "inner text" not in rendered
    assert "a@example.com" not in rendered
    assert vault.open_fields(sealed) == payload


def test_in_memory_key_store() -> None:
    store = InMemoryKeyStore()
    store.set("ns", "alice", "value")
    assert store.get("ns", "alice") == "value"
    assert store.get("other", "alice") is None
    store.delete("ns", "alice")
    assert store.get("ns", "alice") is None


def test_namespace_must_not_contain_separator() -> None:
    with pytest.raises(ValueError):
        InMemoryKeyStore().set("bad:ns", "alice", "value")


def test_file_key_store_persists_sealed_values(tmp_path: Path, vault: LocalVault) -> None:
    path = tmp_path / "keys" / "store.json"
    store = EncryptedFileKeyStore(path, vault)
    store.set("dm_private_key", "alice", "PRIVATE-KEY-MATERIAL")

    assert "PRIVATE-KEY-MATERIAL" not in path.read_text()
    assert path.stat().st_mode & 0o777 == 0o600

    reopened = EncryptedFileKeyStore(path, vault)
    assert reopened.get("dm_private_key", "alice") == "PRIVATE-KEY-MATERIAL"

    reopened.delete("dm_private_key", "alice")
    assert reopened.get("dm_private_key", "alice") is None


def test_file_key_store_rejects_corrupted_file(tmp_path: Path, vault: LocalVault) -> None:
    path = tmp_path / "store.json"
    path.write_text("{not json")

    with pytest.raises(CorruptedDataError):
        EncryptedFileKeyStore(path, vault).get("dm_private_key", "alice")
