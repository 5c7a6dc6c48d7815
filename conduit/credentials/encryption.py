"""Fernet-based symmetric encryption for stored system credentials."""

import json
import logging
from typing import Any, Mapping

from cryptography.fernet import Fernet, InvalidToken

from conduit.exceptions import CredentialError

logger = logging.getLogger(__name__)


class CredentialEncryption:
    """Symmetric encryption wrapper using Fernet (AES-128-CBC + HMAC-SHA256).

    Without a key an ephemeral one is generated and a WARNING is logged;
    anything encrypted with it is lost when the process exits. Set
    ``CONDUIT_CREDENTIAL_ENCRYPTION_KEY`` to a URL-safe base64 32-byte Fernet
    key to keep credentials across restarts.
    """

    def __init__(self, key: str = "") -> None:
        if not key:
            self._fernet = Fernet(Fernet.generate_key())
            logger.warning(
                "CredentialEncryption: no encryption key provided, using an ephemeral key. "
                "Set CONDUIT_CREDENTIAL_ENCRYPTION_KEY to a persistent Fernet key."
            )
        else:
            try:
                self._fernet = Fernet(key.encode())
            except (ValueError, TypeError) as exc:
                raise CredentialError(f"Invalid Fernet key: {exc}") from exc

    def encrypt(self, plaintext: str) -> str:
        """Encrypt *plaintext* and return URL-safe base64 ciphertext."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt *ciphertext*.

        Raises:
            CredentialError: if the token is invalid or tampered with.
        """
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise CredentialError("Decryption failed: invalid or tampered token") from exc

    def encrypt_mapping(self, data: Mapping[str, Any]) -> str:
        """Serialise a credential mapping to JSON and encrypt it."""
        return self.encrypt(json.dumps(dict(data), sort_keys=True))

    def decrypt_mapping(self, ciphertext: str) -> dict[str, Any]:
        """Inverse of :meth:`encrypt_mapping`.

        Raises:
            CredentialError: bad token, or the plaintext is not a JSON object.
        """
        try:
            data = json.loads(self.decrypt(ciphertext))
        except json.JSONDecodeError as exc:
            raise CredentialError("Decrypted credentials are not valid JSON") from exc
        if not isinstance(data, dict):
            raise CredentialError("Decrypted credentials are not a JSON object")
        return data
