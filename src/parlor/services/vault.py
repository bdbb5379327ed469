"""At-rest sealing for data kept on the device."""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Iterable, Mapping
from typing import Any, Final

from blake3 import blake3
from nacl.exceptions import CryptoError as NaclCryptoError
from nacl.secret import SecretBox

from parlor.core.errors import CorruptedDataError
from parlor.core.settings import settings

VAULT_KEY_CONTEXT: Final[str] = "parlor 2026-01-01 local vault v1"
SEALED_MARKER: Final[str] = "$sealed"
DEFAULT_SENSITIVE_FIELDS: Final[frozenset[str]] = frozenset(
    {"content", "cipher_content", "text_content", "email"}
)


class LocalVault:
    """Symmetric sealing keyed from the application secret.

    The box key is derived with BLAKE3 in key-derivation mode so the raw
    secret is never used directly as cipher key material.
    """

    def __init__(self, secret: str | bytes | None = None) -> None:
        material = secret if secret is not None else settings.secret_key
        if isinstance(material, str):
            material = material.encode()
        key = blake3(material, derive_key_context=VAULT_KEY_CONTEXT).digest()
        self._box = SecretBox(key)

    def seal(self, data: bytes) -> str:
        """Encrypt ``data`` and return it as base64 text (nonce included)."""
        return base64.b64encode(bytes(self._box.encrypt(data))).decode()

    def open(self, token: str) -> bytes:
        """Decrypt a value produced by :meth:`seal`."""
        try:
            raw = base64.b64decode(token, validate=True)
            return self._box.decrypt(raw)
        except (binascii.Error, ValueError, TypeError, NaclCryptoError) as err:
            raise CorruptedDataError("Sealed value could not be opened") from err

    def seal_fields(
        self,
        payload: Mapping[str, Any],
        fields: Iterable[str] = DEFAULT_SENSITIVE_FIELDS,
    ) -> dict[str, Any]:
        """Return a copy of ``payload`` with sensitive keys sealed at any depth."""
        names = frozenset(fields)
        return self._walk_seal(payload, names)

    def open_fields(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Reverse :meth:`seal_fields`."""
        return self._walk_open(payload)

    def _walk_seal(self, value: Any, names: frozenset[str]) -> Any:
        if isinstance(value, Mapping):
            sealed: dict[str, Any] = {}
            for key, item in value.items():
                if key in names and item is not None:
                    token = self.seal(json.dumps(item).encode())
                    sealed[key] = {SEALED_MARKER: token}
                else:
                    sealed[key] = self._walk_seal(item, names)
            return sealed
        if isinstance(value, list):
            return [self._walk_seal(item, names) for item in value]
        return value

    def _walk_open(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            if set(value) == {SEALED_MARKER}:
                try:
                    return json.loads(self.open(value[SEALED_MARKER]))
                except json.JSONDecodeError as err:
                    raise CorruptedDataError("Sealed field is not valid JSON") from err
            return {key: self._walk_open(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self._walk_open(item) for item in value]
        return value
