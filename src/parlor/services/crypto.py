"""Cryptographic services for Parlor direct messages.

Message bodies use hybrid encryption: a fresh AES-256-GCM key and nonce per
message seal the content, and the AES key is then sealed with RSA-OAEP
(SHA-256) under the recipient's public key. Keys travel as base64 DER text.
"""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass
from typing import Final

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from parlor.core.errors import CryptoError
from parlor.services.key_store import InMemoryKeyStore, SecureKeyStore

RSA_KEY_BITS: Final[int] = 2048
RSA_PUBLIC_EXPONENT: Final[int] = 65537
AES_KEY_BYTES: Final[int] = 32
IV_BYTES: Final[int] = 12
PRIVATE_KEY_NAMESPACE: Final[str] = "dm_private_key"

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


@dataclass(frozen=True)
class KeyPairText:
    """A freshly generated key pair encoded as base64 DER."""

    public_key: str
    private_key: str


@dataclass(frozen=True)
class EncryptedMessage:
    """Sealed message body plus the key material needed to open it."""

    encrypted_content: str
    encrypted_key: str
    iv: str
    sender_encrypted_key: str | None = None


class CryptoService:
    """Service handling hybrid encryption and local private-key storage."""

    def __init__(self, key_store: SecureKeyStore | None = None) -> None:
        self._key_store = key_store or InMemoryKeyStore()
        self._public_key_cache: dict[str, rsa.RSAPublicKey] = {}

    @staticmethod
    def _encode(data: bytes) -> str:
        return base64.b64encode(data).decode()

    @staticmethod
    def _decode(data: str, what: str) -> bytes:
        try:
            return base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError, TypeError) as err:
            raise CryptoError(f"Invalid base64 encoding for {what}") from err

    def generate_key_pair(self) -> KeyPairText:
        """Generate a new RSA key pair for a user.

        Returns:
            Public key as base64 SubjectPublicKeyInfo and private key as
            base64 PKCS#8, both DER encoded.
        """
        private_key = rsa.generate_private_key(
            public_exponent=RSA_PUBLIC_EXPONENT,
            key_size=RSA_KEY_BITS,
        )
        public_der = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        private_der = private_key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return KeyPairText(public_key=self._encode(public_der), private_key=self._encode(private_der))

    def _load_public_key(self, key_text: str) -> rsa.RSAPublicKey:
        cached = self._public_key_cache.get(key_text)
        if cached is not None:
            return cached

        cleaned = key_text.strip()
        try:
            if cleaned.startswith("-----BEGIN"):
                key = serialization.load_pem_public_key(cleaned.encode())
            else:
                key = serialization.load_der_public_key(self._decode(cleaned, "public key"))
        except (ValueError, TypeError, UnsupportedAlgorithm) as err:
            raise CryptoError("Malformed recipient public key") from err

        if not isinstance(key, rsa.RSAPublicKey):
            raise CryptoError("Recipient public key must be an RSA key")

        self._public_key_cache[key_text] = key
        return key

    def _load_private_key(self, key_text: str) -> rsa.RSAPrivateKey:
        cleaned = key_text.strip()
        try:
            if cleaned.startswith("-----BEGIN"):
                key = serialization.load_pem_private_key(cleaned.encode(), password=None)
            else:
                key = serialization.load_der_private_key(
                    self._decode(cleaned, "private key"), password=None
                )
        except (ValueError, TypeError, UnsupportedAlgorithm) as err:
            raise CryptoError("Malformed private key") from err

        if not isinstance(key, rsa.RSAPrivateKey):
            raise CryptoError("Private key must be an RSA key")
        return key

    def encrypt_message(
        self,
        plaintext: str,
        recipient_public_key: str,
        sender_public_key: str | None = None,
    ) -> EncryptedMessage:
        """Seal ``plaintext`` for a recipient.

        Args:
            plaintext: Message body.
            recipient_public_key: Recipient's base64 DER (or PEM) public key.
            sender_public_key: Optional sender key; when given the content key
                is sealed a second time so the sender can reopen the message.

        Returns:
            The sealed content, sealed key(s) and nonce, all base64 encoded.

        Raises:
            CryptoError: If a public key is malformed.
        """
        recipient_key = self._load_public_key(recipient_public_key)
        sender_key = self._load_public_key(sender_public_key) if sender_public_key else None

        content_key = AESGCM.generate_key(bit_length=AES_KEY_BYTES * 8)
        iv = os.urandom(IV_BYTES)
        sealed_content = AESGCM(content_key).encrypt(iv, plaintext.encode("utf-8"), None)

        return EncryptedMessage(
            encrypted_content=self._encode(sealed_content),
            encrypted_key=self._encode(recipient_key.encrypt(content_key, _OAEP)),
            iv=self._encode(iv),
            sender_encrypted_key=(
                self._encode(sender_key.encrypt(content_key, _OAEP)) if sender_key else None
            ),
        )

    def decrypt_message(
        self,
        encrypted: EncryptedMessage,
        private_key: str,
        *,
        as_sender: bool = False,
    ) -> str:
        """Open a sealed message.

        Args:
            encrypted: Output of :meth:`encrypt_message`.
            private_key: Base64 PKCS#8 private key of the reader.
            as_sender: Use ``sender_encrypted_key`` instead of ``encrypted_key``.

        Raises:
            CryptoError: On any tampering, key mismatch or malformed input.
        """
        wrapped = encrypted.sender_encrypted_key if as_sender else encrypted.encrypted_key
        if not wrapped:
            raise CryptoError("Message carries no key material for this reader")

        key = self._load_private_key(private_key)
        sealed_key = self._decode(wrapped, "encrypted key")
        sealed_content = self._decode(encrypted.encrypted_content, "encrypted content")
        iv = self._decode(encrypted.iv, "iv")
        if len(iv) != IV_BYTES:
            raise CryptoError("Invalid nonce length")

        try:
            content_key = key.decrypt(sealed_key, _OAEP)
        except ValueError as err:
            raise CryptoError("Content key could not be unwrapped") from err
        if len(content_key) != AES_KEY_BYTES:
            raise CryptoError("Unwrapped content key has the wrong length")

        try:
            plaintext = AESGCM(content_key).decrypt(iv, sealed_content, None)
        except (InvalidTag, ValueError) as err:
            raise CryptoError("Message authentication failed") from err

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as err:
            raise CryptoError("Decrypted content is not valid UTF-8") from err

    def store_private_key(self, user_id: str, private_key: str) -> None:
        """Persist a private key in the local secure key store."""
        self._key_store.set(PRIVATE_KEY_NAMESPACE, user_id, private_key)

    def get_private_key(self, user_id: str) -> str | None:
        """Return the locally stored private key for ``user_id``, if any."""
        return self._key_store.get(PRIVATE_KEY_NAMESPACE, user_id)

    def delete_private_key(self, user_id: str) -> None:
        """Forget the local private key for ``user_id``."""
        self._key_store.delete(PRIVATE_KEY_NAMESPACE, user_id)
