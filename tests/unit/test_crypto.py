"""Unit tests for the encryption envelope.

Uses the argon2-cffi KDF backend to keep key derivation fast.
"""

from __future__ import annotations

import base64

import pytest

from keenotes.core.crypto import (
    ENVELOPE_VERSION,
    MAX_ENVELOPE_AGE_MS,
    MIN_ENVELOPE_LENGTH,
    CryptoError,
    CryptoService,
    DecryptionResult,
    Envelope,
    EnvelopeExpiredError,
    EnvelopeFormatError,
    IntegrityError,
    PasswordNotSetError,
    UnsupportedVersionError,
    decrypt_with_metadata,
    decrypt_with_password,
    encrypt,
    seal,
)
from keenotes.core.kdf import derive_key
from keenotes.core.timestamp_utils import current_timestamp_ms
from tests.helpers import FAST_KDF, make_envelope

PASSWORD = "correct horse battery staple"


def flip_bit(envelope_b64: str, index: int) -> str:
    raw = bytearray(base64.b64decode(envelope_b64))
    raw[index] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


@pytest.mark.unit
class TestRoundTrip:
    """Test encrypt then decrypt."""

    @pytest.mark.parametrize(
        "plaintext",
        ["Buy milk", "", "שלום עולם 🌍", "line one\nline two\n", "x" * 10_000],
    )
    def test_round_trip(self, plaintext: str) -> None:
        """Decrypting an envelope returns the original text."""
        envelope = encrypt(plaintext, PASSWORD, kdf_backend=FAST_KDF)
        assert decrypt_with_password(envelope, PASSWORD, kdf_backend=FAST_KDF) == plaintext

    def test_envelopes_are_randomized(self) -> None:
        """Fresh salt and nonce make every envelope different."""
        first = encrypt("same text", PASSWORD, kdf_backend=FAST_KDF)
        second = encrypt("same text", PASSWORD, kdf_backend=FAST_KDF)
        assert first != second

    def test_layout(self) -> None:
        """Envelope is version | salt | iv | timestamp | ciphertext | tag."""
        before = current_timestamp_ms()
        envelope_b64 = encrypt("hello", PASSWORD, kdf_backend=FAST_KDF)
        after = current_timestamp_ms()

        raw = base64.b64decode(envelope_b64)
        assert raw[0] == ENVELOPE_VERSION
        assert len(raw) == MIN_ENVELOPE_LENGTH + len("hello")

        envelope = Envelope.from_base64(envelope_b64)
        assert len(envelope.salt) == 16
        assert len(envelope.iv) == 12
        assert len(envelope.tag) == 16
        assert before <= envelope.timestamp <= after
        assert raw[29:37] == envelope.timestamp.to_bytes(8, "big")
        assert envelope.to_base64() == envelope_b64

    def test_metadata(self) -> None:
        """decrypt_with_metadata exposes the embedded timestamp."""
        ts = current_timestamp_ms() - 5 * 60 * 1000
        envelope = make_envelope("hello", PASSWORD, timestamp_ms=ts)
        result = decrypt_with_metadata(envelope, PASSWORD, kdf_backend=FAST_KDF)
        assert result == DecryptionResult(plaintext="hello", timestamp=ts)
        assert result.formatted_age(now_ms=ts + 5 * 60 * 1000) == "5m ago"


@pytest.mark.unit
class TestAuthentication:
    """Test that any tampering is detected."""

    def test_wrong_password(self) -> None:
        envelope = make_envelope("secret note", PASSWORD)
        with pytest.raises(IntegrityError):
            decrypt_with_password(envelope, "wrong password", kdf_backend=FAST_KDF)

    @pytest.mark.parametrize(
        "index",
        [
            1,    # salt
            17,   # iv
            29,   # timestamp (authenticated as AAD)
            36,   # timestamp, lowest byte
            37,   # ciphertext
            -1,   # tag
        ],
    )
    def test_bit_flip_fails(self, index: int) -> None:
        """Flipping one bit anywhere after the version byte fails decryption."""
        envelope = make_envelope("tamper with me", PASSWORD)
        with pytest.raises(IntegrityError):
            decrypt_with_password(flip_bit(envelope, index), PASSWORD, kdf_backend=FAST_KDF)

    def test_truncated_ciphertext_fails(self) -> None:
        raw = base64.b64decode(make_envelope("some longer text", PASSWORD))
        truncated = raw[:37] + raw[38:]
        with pytest.raises(IntegrityError):
            decrypt_with_password(
                base64.b64encode(truncated).decode(), PASSWORD, kdf_backend=FAST_KDF
            )


# Fixed inputs shared with the other KeeNotes clients
VECTOR_SALT = bytes(range(16))
VECTOR_IV = bytes(range(0x10, 0x1C))
VECTOR_TIMESTAMP_MS = 1_700_000_000_000
VECTOR_PLAINTEXT = "Hello, KeeNotes!"
VECTOR_KEY = bytes.fromhex("6007f8550fd397cc0a40407e7d71aa996c31275ae025c3a6daad0bfc7d554425")
VECTOR_ENVELOPE = (
    "AgABAgMEBQYHCAkKCwwNDg8QERITFBUWFxgZGhsAAAGLz+VoAD9nOIWCq3VlA41CD88gLX9P8IoK6XsH9q12wqVkiNKX"
)


@pytest.mark.unit
class TestConformanceVectors:
    """Test fixed inputs against known outputs of the C reference and AES-GCM."""

    def test_derive_key_vector(self) -> None:
        assert derive_key(PASSWORD, VECTOR_SALT, backend=FAST_KDF) == VECTOR_KEY

    @pytest.mark.slow
    def test_derive_key_vector_builtin(self) -> None:
        assert derive_key(PASSWORD, VECTOR_SALT, backend="python") == VECTOR_KEY

    def test_seal_vector(self) -> None:
        envelope = seal(VECTOR_PLAINTEXT, VECTOR_KEY, VECTOR_SALT, VECTOR_IV, VECTOR_TIMESTAMP_MS)
        assert envelope.ciphertext.hex() == "3f67388582ab7565038d420fcf202d7f"
        assert envelope.tag.hex() == "4ff08a0ae97b07f6ad76c2a56488d297"
        assert envelope.to_base64() == VECTOR_ENVELOPE

    def test_decrypt_vector(self) -> None:
        plaintext = decrypt_with_password(
            VECTOR_ENVELOPE, PASSWORD, kdf_backend=FAST_KDF, now_ms=VECTOR_TIMESTAMP_MS + 1000
        )
        assert plaintext == VECTOR_PLAINTEXT


@pytest.mark.unit
class TestEnvelopeFormat:
    """Test rejection of malformed envelopes."""

    def test_version_one_rejected(self) -> None:
        """Old-scheme envelopes fail with UnsupportedVersionError, not IntegrityError."""
        raw = bytearray(base64.b64decode(make_envelope("legacy", PASSWORD)))
        raw[0] = 0x01
        envelope = base64.b64encode(bytes(raw)).decode()

        with pytest.raises(UnsupportedVersionError) as exc_info:
            decrypt_with_password(envelope, PASSWORD, kdf_backend=FAST_KDF)
        assert exc_info.value.version == 1
        assert not isinstance(exc_info.value, IntegrityError)
        assert "re-encrypt required" in str(exc_info.value)

    def test_too_short(self) -> None:
        envelope = base64.b64encode(bytes([ENVELOPE_VERSION]) + bytes(51)).decode()
        with pytest.raises(EnvelopeFormatError, match="Invalid encrypted data format"):
            decrypt_with_password(envelope, PASSWORD, kdf_backend=FAST_KDF)

    def test_minimum_length_parses(self) -> None:
        """An empty plaintext gives an envelope of exactly the minimum length."""
        envelope = Envelope.from_bytes(bytes([ENVELOPE_VERSION]) + bytes(MIN_ENVELOPE_LENGTH - 1))
        assert envelope.ciphertext == b""

    def test_invalid_base64(self) -> None:
        with pytest.raises(EnvelopeFormatError, match="base64"):
            decrypt_with_password("not base64!!", PASSWORD, kdf_backend=FAST_KDF)

    def test_errors_share_base_class(self) -> None:
        for error in (
            PasswordNotSetError,
            EnvelopeFormatError,
            UnsupportedVersionError,
            EnvelopeExpiredError,
            IntegrityError,
        ):
            assert issubclass(error, CryptoError)


@pytest.mark.unit
class TestAgeCheck:
    """Test the ten-year age limit."""

    def test_expired_envelope_rejected(self) -> None:
        ts = 1_000_000_000_000
        envelope = make_envelope("ancient", PASSWORD, timestamp_ms=ts)
        with pytest.raises(EnvelopeExpiredError):
            decrypt_with_password(
                envelope, PASSWORD, kdf_backend=FAST_KDF, now_ms=ts + MAX_ENVELOPE_AGE_MS + 1
            )

    def test_envelope_at_limit_accepted(self) -> None:
        ts = 1_000_000_000_000
        envelope = make_envelope("old but fine", PASSWORD, timestamp_ms=ts)
        plaintext = decrypt_with_password(
            envelope, PASSWORD, kdf_backend=FAST_KDF, now_ms=ts + MAX_ENVELOPE_AGE_MS
        )
        assert plaintext == "old but fine"


@pytest.mark.unit
class TestPasswordRequired:
    """Test empty passwords."""

    def test_encrypt_without_password(self) -> None:
        with pytest.raises(PasswordNotSetError):
            encrypt("text", "", kdf_backend=FAST_KDF)

    def test_decrypt_without_password(self) -> None:
        envelope = make_envelope("text", PASSWORD)
        with pytest.raises(PasswordNotSetError):
            decrypt_with_password(envelope, "", kdf_backend=FAST_KDF)


@pytest.mark.unit
class TestCryptoService:
    """Test the password-bound service."""

    def test_reads_password_on_every_call(self) -> None:
        """A changed password takes effect immediately."""
        passwords = {"current": PASSWORD}
        service = CryptoService(lambda: passwords["current"], kdf_backend=FAST_KDF)

        envelope = service.encrypt("hello")
        assert service.decrypt(envelope) == "hello"

        passwords["current"] = "another password"
        with pytest.raises(IntegrityError):
            service.decrypt(envelope)

    def test_encryption_disabled_without_password(self) -> None:
        service = CryptoService(lambda: None, kdf_backend=FAST_KDF)
        assert service.is_encryption_enabled() is False
        with pytest.raises(PasswordNotSetError):
            service.encrypt("hello")

    def test_decrypt_with_explicit_password(self) -> None:
        service = CryptoService(lambda: None, kdf_backend=FAST_KDF)
        envelope = make_envelope("hello", PASSWORD)
        assert service.decrypt_with_password(envelope, PASSWORD) == "hello"

    def test_decrypt_with_metadata(self) -> None:
        service = CryptoService(lambda: PASSWORD, kdf_backend=FAST_KDF)
        ts = current_timestamp_ms()
        result = service.decrypt_with_metadata(make_envelope("hello", PASSWORD, timestamp_ms=ts))
        assert result.plaintext == "hello"
        assert result.timestamp == ts
