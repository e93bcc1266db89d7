"""End-to-end encryption envelope for KeeNotes.

Every note body travels as a versioned binary envelope, base64-encoded:

    version(1) | salt(16) | iv(12) | timestamp(8, big-endian ms) | ciphertext | tag(16)

The key is derived per envelope from the user password and the envelope salt
(see kdf.derive_key). AES-256-GCM authenticates the timestamp bytes as
additional data, so tampering with the timestamp breaks decryption just like
tampering with the ciphertext.

The format is shared byte-for-byte with the Android, iOS and desktop clients.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import struct
from dataclasses import dataclass
from typing import Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .kdf import DEFAULT_KDF_BACKEND, derive_key
from .timestamp_utils import current_timestamp_ms, format_age

logger = logging.getLogger(__name__)

__all__ = [
    "ENVELOPE_VERSION",
    "MAX_ENVELOPE_AGE_MS",
    "CryptoError",
    "PasswordNotSetError",
    "EnvelopeFormatError",
    "UnsupportedVersionError",
    "EnvelopeExpiredError",
    "IntegrityError",
    "Envelope",
    "DecryptionResult",
    "CryptoService",
    "seal",
    "encrypt",
    "decrypt_with_password",
    "decrypt_with_metadata",
]

ENVELOPE_VERSION = 0x02
SALT_LENGTH = 16
IV_LENGTH = 12
TIMESTAMP_LENGTH = 8
TAG_LENGTH = 16
HEADER_LENGTH = 1 + SALT_LENGTH + IV_LENGTH + TIMESTAMP_LENGTH
MIN_ENVELOPE_LENGTH = HEADER_LENGTH + TAG_LENGTH

# Envelopes older than ten years are refused
MAX_ENVELOPE_AGE_MS = 10 * 365 * 24 * 60 * 60 * 1000


class CryptoError(Exception):
    """Base class for all envelope errors."""


class PasswordNotSetError(CryptoError):
    """No encryption password is available."""


class EnvelopeFormatError(CryptoError):
    """The envelope is not well formed (bad base64, too short)."""


class UnsupportedVersionError(EnvelopeFormatError):
    """The envelope was produced by a scheme this client does not accept."""

    def __init__(self, version: int) -> None:
        self.version = version
        super().__init__(
            f"Unsupported envelope version {version}: this note was encrypted "
            f"with an old method, re-encrypt required"
        )


class EnvelopeExpiredError(CryptoError):
    """The embedded timestamp is older than MAX_ENVELOPE_AGE_MS."""


class IntegrityError(CryptoError):
    """Authentication failed: wrong password or tampered envelope."""


@dataclass(frozen=True)
class Envelope:
    """Parsed form of one encrypted note body.

    Attributes:
        version: Scheme version byte (always ENVELOPE_VERSION)
        salt: 16-byte KDF salt
        iv: 12-byte AES-GCM nonce
        timestamp: Creation time in ms since epoch, authenticated as AAD
        ciphertext: Encrypted UTF-8 plaintext
        tag: 16-byte GCM authentication tag
    """

    version: int
    salt: bytes
    iv: bytes
    timestamp: int
    ciphertext: bytes
    tag: bytes

    @property
    def timestamp_bytes(self) -> bytes:
        return struct.pack(">q", self.timestamp)

    def to_bytes(self) -> bytes:
        return (
            bytes([self.version])
            + self.salt
            + self.iv
            + self.timestamp_bytes
            + self.ciphertext
            + self.tag
        )

    def to_base64(self) -> str:
        return base64.b64encode(self.to_bytes()).decode("ascii")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Envelope":
        """Split raw envelope bytes into fields.

        Raises:
            EnvelopeFormatError: If the data is too short
            UnsupportedVersionError: If the version byte is not 2
        """
        if len(raw) < MIN_ENVELOPE_LENGTH:
            raise EnvelopeFormatError(
                f"Invalid encrypted data format: {len(raw)} bytes, "
                f"need at least {MIN_ENVELOPE_LENGTH}"
            )

        version = raw[0]
        if version != ENVELOPE_VERSION:
            raise UnsupportedVersionError(version)

        pos = 1
        salt = raw[pos:pos + SALT_LENGTH]
        pos += SALT_LENGTH
        iv = raw[pos:pos + IV_LENGTH]
        pos += IV_LENGTH
        (timestamp,) = struct.unpack(">q", raw[pos:pos + TIMESTAMP_LENGTH])
        pos += TIMESTAMP_LENGTH

        return cls(
            version=version,
            salt=salt,
            iv=iv,
            timestamp=timestamp,
            ciphertext=raw[pos:-TAG_LENGTH],
            tag=raw[-TAG_LENGTH:],
        )

    @classmethod
    def from_base64(cls, data: str) -> "Envelope":
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EnvelopeFormatError(f"Invalid base64 in encrypted data: {e}") from None
        return cls.from_bytes(raw)


@dataclass(frozen=True)
class DecryptionResult:
    """Plaintext together with the envelope's embedded timestamp."""

    plaintext: str
    timestamp: int

    def formatted_age(self, now_ms: Optional[int] = None) -> str:
        """Human-readable age of the envelope, e.g. "5m ago"."""
        now = current_timestamp_ms() if now_ms is None else now_ms
        return format_age(now - self.timestamp)


def seal(
    plaintext: str, key: bytes, salt: bytes, iv: bytes, timestamp_ms: int
) -> Envelope:
    """Encrypt plaintext with an already derived key.

    Args:
        plaintext: Note text
        key: 32-byte AES key
        salt: Salt the key was derived with (embedded in the envelope)
        iv: 12-byte nonce, never reused with the same key
        timestamp_ms: Creation time, authenticated as AAD

    Returns:
        Envelope ready for serialization
    """
    timestamp_bytes = struct.pack(">q", timestamp_ms)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), timestamp_bytes)
    return Envelope(
        version=ENVELOPE_VERSION,
        salt=salt,
        iv=iv,
        timestamp=timestamp_ms,
        ciphertext=sealed[:-TAG_LENGTH],
        tag=sealed[-TAG_LENGTH:],
    )


def encrypt(plaintext: str, password: str, kdf_backend: str = DEFAULT_KDF_BACKEND) -> str:
    """Encrypt a note body into a base64 envelope.

    Args:
        plaintext: Note text
        password: Encryption password
        kdf_backend: Argon2 backend name passed to derive_key

    Returns:
        Base64 envelope string

    Raises:
        PasswordNotSetError: If password is empty
    """
    if not password:
        raise PasswordNotSetError("Encryption password not set")

    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = derive_key(password, salt, backend=kdf_backend)
    return seal(plaintext, key, salt, iv, current_timestamp_ms()).to_base64()


def decrypt_with_metadata(
    envelope_b64: str,
    password: str,
    kdf_backend: str = DEFAULT_KDF_BACKEND,
    now_ms: Optional[int] = None,
) -> DecryptionResult:
    """Decrypt an envelope and return plaintext plus its timestamp.

    Args:
        envelope_b64: Base64 envelope string
        password: Encryption password
        kdf_backend: Argon2 backend name passed to derive_key
        now_ms: Current time override for the age check

    Returns:
        DecryptionResult

    Raises:
        PasswordNotSetError: If password is empty
        EnvelopeFormatError: If the envelope is malformed
        UnsupportedVersionError: If the version byte is not 2
        EnvelopeExpiredError: If the envelope is older than ten years
        IntegrityError: If authentication or UTF-8 decoding fails
    """
    if not password:
        raise PasswordNotSetError("Encryption password not set")

    envelope = Envelope.from_base64(envelope_b64)

    now = current_timestamp_ms() if now_ms is None else now_ms
    if now - envelope.timestamp > MAX_ENVELOPE_AGE_MS:
        raise EnvelopeExpiredError("Encrypted data is too old (>10 years)")

    key = derive_key(password, envelope.salt, backend=kdf_backend)
    try:
        plaintext = AESGCM(key).decrypt(
            envelope.iv,
            envelope.ciphertext + envelope.tag,
            envelope.timestamp_bytes,
        )
        text = plaintext.decode("utf-8")
    except InvalidTag:
        raise IntegrityError(
            "Decryption failed: wrong password or tampered data"
        ) from None
    except UnicodeDecodeError:
        raise IntegrityError("Decrypted data is not valid UTF-8") from None

    return DecryptionResult(plaintext=text, timestamp=envelope.timestamp)


def decrypt_with_password(
    envelope_b64: str,
    password: str,
    kdf_backend: str = DEFAULT_KDF_BACKEND,
    now_ms: Optional[int] = None,
) -> str:
    """Decrypt an envelope with an explicit password.

    See decrypt_with_metadata for the raised errors.
    """
    return decrypt_with_metadata(envelope_b64, password, kdf_backend, now_ms).plaintext


class CryptoService:
    """Envelope operations bound to a password source.

    The password source is called on every encrypt/decrypt so that a changed
    password takes effect immediately. Callers that decrypt many notes in a
    row (the sync reconciler) read the password once and use
    decrypt_with_password instead.
    """

    def __init__(
        self,
        get_password: Callable[[], Optional[str]],
        kdf_backend: str = DEFAULT_KDF_BACKEND,
    ) -> None:
        """Initialize crypto service.

        Args:
            get_password: Callable returning the current password or None
            kdf_backend: Argon2 backend name ("argon2-cffi" or "python")
        """
        self._get_password = get_password
        self.kdf_backend = kdf_backend

    def is_encryption_enabled(self) -> bool:
        """Check if a non-empty password is available."""
        return bool(self._get_password())

    def _require_password(self) -> str:
        password = self._get_password()
        if not password:
            raise PasswordNotSetError("Encryption password not set")
        return password

    def encrypt(self, plaintext: str) -> str:
        return encrypt(plaintext, self._require_password(), self.kdf_backend)

    def decrypt(self, envelope_b64: str) -> str:
        return self.decrypt_with_password(envelope_b64, self._require_password())

    def decrypt_with_password(self, envelope_b64: str, password: str) -> str:
        return decrypt_with_password(envelope_b64, password, self.kdf_backend)

    def decrypt_with_metadata(self, envelope_b64: str) -> DecryptionResult:
        return decrypt_with_metadata(
            envelope_b64, self._require_password(), self.kdf_backend
        )
