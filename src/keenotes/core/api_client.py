"""Note submission for KeeNotes.

New notes are encrypted locally and POSTed to the configured endpoint. The
server assigns the id and echoes the note back to every client through the
sync channel, so posting never touches the local cache or last_sync_id.

Request body:

    {"channel": "cli", "text": "<envelope>", "ts": "YYYY-MM-DD HH:MM:SS", "encrypted": true}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from .config import Config
from .crypto import CryptoError, CryptoService
from .timestamp_utils import current_wire_time

logger = logging.getLogger(__name__)

__all__ = ["PostResult", "ApiClient"]


@dataclass
class PostResult:
    """Result of submitting one note."""

    success: bool
    message: str = ""
    note_id: Optional[int] = None


class ApiClient:
    """Posts encrypted notes to the KeeNotes server."""

    def __init__(
        self,
        config: Config,
        crypto: Optional[CryptoService] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        """Initialize API client.

        Args:
            config: Config instance (endpoint, token, channel, password)
            crypto: Envelope codec; built from config if None
            session: requests session to reuse; a new one if None
        """
        self.config = config
        self.crypto = crypto or CryptoService(
            config.get_encryption_password, kdf_backend=config.get_kdf_backend()
        )
        self.session = session or requests.Session()

    def post_note(
        self, content: str, channel: Optional[str] = None, ts: Optional[str] = None
    ) -> PostResult:
        """Encrypt and submit a note.

        Args:
            content: Plaintext note
            channel: Channel label (defaults to the configured channel)
            ts: Creation time "YYYY-MM-DD HH:MM:SS" (defaults to now)

        Returns:
            PostResult; configuration, encryption and network failures are
            reported with success=False rather than raised
        """
        if not self.config.is_configured():
            return PostResult(False, "Please configure endpoint_url and token first")
        if not self.crypto.is_encryption_enabled():
            return PostResult(False, "Encryption password not set")

        try:
            envelope = self.crypto.encrypt(content)
        except CryptoError as e:
            logger.error(f"Encryption failed: {e}")
            return PostResult(False, f"Encryption failed: {e}")

        return self.post_encrypted(envelope, channel, ts)

    def post_encrypted(
        self, envelope: str, channel: Optional[str] = None, ts: Optional[str] = None
    ) -> PostResult:
        """Submit an already encrypted envelope as is."""
        if not self.config.is_configured():
            return PostResult(False, "Please configure endpoint_url and token first")

        body = {
            "channel": channel or self.config.get_channel(),
            "text": envelope,
            "ts": ts or current_wire_time(),
            "encrypted": True,
        }
        return self._submit(body)

    def _submit(self, body: Dict[str, Any]) -> PostResult:
        headers = {
            "Authorization": f"Bearer {self.config.get_token()}",
            "Content-Type": "application/json",
        }
        try:
            response = self.session.post(
                self.config.get_endpoint_url(),
                json=body,
                headers=headers,
                timeout=self.config.get_request_timeout(),
            )
        except requests.RequestException as e:
            logger.error(f"Network error posting note: {e}")
            return PostResult(False, f"Network error: {e}")

        if not response.ok:
            logger.error(f"Server rejected note: {response.status_code} {response.reason}")
            return PostResult(
                False, f"Server error: {response.status_code} {response.reason}"
            )

        note_id = self._parse_note_id(response)
        logger.info(f"Note posted (id={note_id})")
        return PostResult(True, "Note saved successfully", note_id)

    @staticmethod
    def _parse_note_id(response: requests.Response) -> Optional[int]:
        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        value = data.get("id")
        if isinstance(value, bool):
            return None
        try:
            note_id = int(value)
        except (TypeError, ValueError):
            return None
        return note_id if note_id > 0 else None
