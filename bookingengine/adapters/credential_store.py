"""
Storage of long-lived calendar refresh tokens per subject.

Tokens live in the OS keyring. When the keyring backend is unusable the store
falls back to a plaintext JSON file (mode 0600) and records a warning.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError


logger = logging.getLogger(__name__)


KEYRING_SERVICE_NAME = "bookingengine"


class CredentialStore:
    """
    Keeps one refresh token per ``(provider, subject)`` pair.

    Only refresh tokens are stored. Access tokens are minted per request by
    the calendar adapters and never cached here.
    """

    def __init__(self, cache_file: Path | None = None, service_name: str = KEYRING_SERVICE_NAME):
        """
        Initialize the store.

        Args:
            cache_file: Optional path of the plaintext fallback file
            service_name: Keyring service the tokens are filed under
        """
        self.service_name = service_name
        self.cache_file = cache_file or Path.home() / ".bookingengine_tokens.json"
        self._keyring_supported = True
        self._backend = "keyring"
        self._insecure_storage_warning: Optional[str] = None

    @property
    def backend(self) -> str:
        """Return the active backend (keyring or file)."""
        return self._backend

    @property
    def insecure_storage_warning(self) -> Optional[str]:
        """Provide a warning message when tokens fall back to plaintext storage."""
        return self._insecure_storage_warning

    @staticmethod
    def _identifier(provider: str, subject_id: str) -> str:
        return f"{provider}:{subject_id}"

    def get_refresh_token(self, provider: str, subject_id: str) -> Optional[str]:
        identifier = self._identifier(provider, subject_id)

        if self._keyring_supported:
            try:
                token = keyring.get_password(self.service_name, identifier)
            except KeyringError as exc:
                self._handle_keyring_failure(f"reading credentials failed: {exc}")
            else:
                if token is not None:
                    return token

        return self._read_file().get(identifier)

    def set_refresh_token(self, provider: str, subject_id: str, token: str) -> None:
        identifier = self._identifier(provider, subject_id)

        if self._keyring_supported:
            try:
                keyring.set_password(self.service_name, identifier, token)
                return
            except KeyringError as exc:
                self._handle_keyring_failure(f"writing credentials failed: {exc}")

        data = self._read_file()
        data[identifier] = token
        self._write_file(data)

    def delete_refresh_token(self, provider: str, subject_id: str) -> None:
        """Forget a subject's token (forces the calendar to be reconnected)."""
        identifier = self._identifier(provider, subject_id)

        if self._keyring_supported:
            try:
                keyring.delete_password(self.service_name, identifier)
            except PasswordDeleteError:
                pass
            except KeyringError as exc:
                logger.warning("Could not remove credentials from keyring: %s", exc)

        data = self._read_file()
        if data.pop(identifier, None) is not None:
            self._write_file(data)

    def _read_file(self) -> Dict[str, str]:
        if not self.cache_file.exists():
            return {}
        try:
            with open(self.cache_file, "r", encoding="utf-8") as file_handle:
                data = json.load(file_handle)
        except (OSError, ValueError) as exc:
            logger.warning("Could not load token file %s: %s", self.cache_file, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_file(self, data: Dict[str, str]) -> None:
        try:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.cache_file, "w", encoding="utf-8") as file_handle:
                json.dump(data, file_handle)
            self.cache_file.chmod(0o600)
        except OSError as exc:
            logger.warning("Could not save token file %s: %s", self.cache_file, exc)

    def _handle_keyring_failure(self, reason: str) -> None:
        if self._keyring_supported:
            logger.warning(
                "Secure credential storage unavailable (%s). Falling back to plaintext file.",
                reason,
            )
        self._keyring_supported = False
        self._backend = "file"
        if not self._insecure_storage_warning:
            self._insecure_storage_warning = (
                f"Secure credential storage unavailable ({reason}). "
                f"Falling back to plaintext file at {self.cache_file}."
            )
