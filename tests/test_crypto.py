"""Tests for hybrid message encryption."""

from __future__ import annotations

import base64
from dataclasses import replace

import pytest
from cryptography.hazmat.primitives import serialization

from parlor.core.errors import CryptoError
from parlor.services.crypto import IV_BYTES, CryptoService, KeyPairText
from parlor.services.key_store import InMemoryKeyStore


@pytest.fixture()
def crypto() -> CryptoService:
    return CryptoService(InMemoryKeyStore())


@pytest.mark.parametrize(
    "plaintext",
    ["", "hello bob", "x" * 10_000, "emoji 🎉🔐 and ünïcödé"],
)
def test_round_trip(crypto: CryptoService, key_pairs: dict[str, KeyPairText], plaintext: str) -> None:
    sealed = crypto.encrypt_message(plaintext, key_pairs["bob"].public_key)
    assert crypto.decrypt_message(sealed, key_pairs["bob"].private_key) == plaintext


def test_encryption_is_not_deterministic(crypto: CryptoService, key_pairs: dict[str, KeyPairText]) -> None:
    first = crypto.encrypt_message("same text", key_pairs["bob"].public_key)
    second = crypto.encrypt_message("same text", key_pairs["bob"].public_key)

    assert first.encrypted_content != second.encrypted_content
    assert first.encrypted_key != second.encrypted_key
    assert first.iv != second.iv
    assert len(base64.b64decode(first.iv)) == IV_BYTES


def test_ciphertext_does_not_contain_plaintext(
    crypto: CryptoService, key_pairs: dict[str, KeyPairText]
) -> None:
    sealed = crypto.encrypt_message("meet at noon", key_pairs["bob"].public_key)
    assert b"meet at noon" not in base64.b64decode(sealed.encrypted_content)


def _flip(encoded: str, position: int) -> str:
    raw = bytearray(base64.b64decode(encoded))
    raw[position] ^= 0x01
    return base64.b64encode(bytes(raw)).decode()


# Last byte sits inside the GCM tag.
@pytest.mark.parametrize("position", ["first", "middle", "last"])
def test_tampered_content_is_rejected(
    crypto: CryptoService, key_pairs: dict[str, KeyPairText], position: str
) -> None:
    sealed = crypto.encrypt_message("hello there", key_pairs["bob"].public_key)
    size = len(base64.b64decode(sealed.encrypted_content))
    index = {"first": 0, "middle": size // 2, "last": size - 1}[position]
    tampered = replace(sealed, encrypted_content=_flip(sealed.encrypted_content, index))

    with pytest.raises(CryptoError):
        crypto.decrypt_message(tampered, key_pairs["bob"].private_key)


def test_tampered_wrapped_key_is_rejected(
    crypto: CryptoService, key_pairs: dict[str, KeyPairText]
) -> None:
    sealed = crypto.encrypt_message(
        "hello", key_pairs["bob"].public_key, key_pairs["alice"].public_key
    )

    recipient_copy = replace(sealed, encrypted_key=_flip(sealed.encrypted_key, 10))
    with pytest.raises(CryptoError):
        crypto.decrypt_message(recipient_copy, key_pairs["bob"].private_key)

    sender_copy = replace(sealed, sender_encrypted_key=_flip(sealed.sender_encrypted_key, -1))
    with pytest.raises(CryptoError):
        crypto.decrypt_message(sender_copy, key_pairs["alice"].private_key, as_sender=True)


def test_tampered_iv_is_rejected(crypto: CryptoService, key_pairs: dict[str, KeyPairText]) -> None:
    sealed = crypto.encrypt_message("hello", key_pairs["bob"].public_key)
    raw = bytearray(base64.b64decode(sealed.iv))
    raw[-1] ^= 0xFF
    tampered = replace(sealed, iv=base64.b64encode(bytes(raw)).decode())

    with pytest.raises(CryptoError):
        crypto.decrypt_message(tampered, key_pairs["bob"].private_key)


def test_wrong_private_key_is_rejected(crypto: CryptoService, key_pairs: dict[str, KeyPairText]) -> None:
    sealed = crypto.encrypt_message("for bob only", key_pairs["bob"].public_key)

    with pytest.raises(CryptoError):
        crypto.decrypt_message(sealed, key_pairs["carol"].private_key)


def test_malformed_public_key(crypto: CryptoService) -> None:
    with pytest.raises(CryptoError):
        crypto.encrypt_message("hello", "definitely not a key")


def test_malformed_base64_fields(crypto: CryptoService, key_pairs: dict[str, KeyPairText]) -> None:
    sealed = crypto.encrypt_message("hello", key_pairs["bob"].public_key)

    with pytest.raises(CryptoError):
        crypto.decrypt_message(replace(sealed, iv="!!!"), key_pairs["bob"].private_key)
    with pytest.raises(CryptoError):
        crypto.decrypt_message(replace(sealed, encrypted_key=""), key_pairs["bob"].private_key)


def test_pem_public_key_is_accepted(crypto: CryptoService, key_pairs: dict[str, KeyPairText]) -> None:
    der = base64.b64decode(key_pairs["bob"].public_key)
    pem = serialization.load_der_public_key(der).public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()

    sealed = crypto.encrypt_message("pem works", pem)
    assert crypto.decrypt_message(sealed, key_pairs["bob"].private_key) == "pem works"


def test_sender_copy_opens_with_sender_key(
    crypto: CryptoService, key_pairs: dict[str, KeyPairText]
) -> None:
    sealed = crypto.encrypt_message(
        "my own words",
        key_pairs["bob"].public_key,
        sender_public_key=key_pairs["alice"].public_key,
    )

    assert sealed.sender_encrypted_key is not None
    assert crypto.decrypt_message(sealed, key_pairs["alice"].private_key, as_sender=True) == "my own words"
    with pytest.raises(CryptoError):
        crypto.decrypt_message(sealed, key_pairs["alice"].private_key)


def test_without_sender_copy_sender_cannot_reopen(
    crypto: CryptoService, key_pairs: dict[str, KeyPairText]
) -> None:
    sealed = crypto.encrypt_message("gone", key_pairs["bob"].public_key)

    with pytest.raises(CryptoError):
        crypto.decrypt_message(sealed, key_pairs["alice"].private_key, as_sender=True)


def test_generated_keys_are_base64_der(crypto: CryptoService) -> None:
    pair = crypto.generate_key_pair()

    public = serialization.load_der_public_key(base64.b64decode(pair.public_key))
    private = serialization.load_der_private_key(base64.b64decode(pair.private_key), password=None)
    assert public.key_size == 2048
    assert private.key_size == 2048


def test_private_key_storage(crypto: CryptoService, key_pairs: dict[str, KeyPairText]) -> None:
    assert crypto.get_private_key("alice") is None

    crypto.store_private_key("alice", key_pairs["alice"].private_key)
    assert crypto.get_private_key("alice") == key_pairs["alice"].private_key

    crypto.delete_private_key("alice")
    assert crypto.get_private_key("alice") is None
