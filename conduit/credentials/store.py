"""In-process, encrypted credential store keyed by system id.

Steps reference credentials as ``<<systemId_key>>``: every key stored for a
system is exposed to the variable context under ``f"{system_id}_{key}"``.
"""

import logging
from typing import Any, Iterable, Mapping

from conduit.credentials.encryption import CredentialEncryption
from conduit.exceptions import CredentialError, CredentialNotFound
from conduit.types import SystemCredentials

logger = logging.getLogger(__name__)

_SENSITIVE_KEYS: frozenset[str] = frozenset({
    "Authorization",
    "authorization",
    "password",
    "token",
    "api_key",
    "apiKey",
    "access_token",
    "refresh_token",
    "secret",
    "credentials",
    "client_secret",
    "X-API-Key",
})

MASK = "***"
_MIN_REDACT_LENGTH = 4      # shorter values would mask ordinary text


def sanitize_params(params: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of *params* with sensitive values replaced by ``'***'``.

    Applied to resolved request inputs before they are logged or handed to
    callbacks.
    """
    return {
        k: (MASK if k in _SENSITIVE_KEYS else (sanitize_params(v) if isinstance(v, dict) else v))
        for k, v in params.items()
    }


def redact(text: str, secrets: Iterable[Any]) -> str:
    """Replace every occurrence of each secret value in *text*."""
    for secret in sorted({str(s) for s in secrets if s is not None}, key=len, reverse=True):
        if len(secret) >= _MIN_REDACT_LENGTH:
            text = text.replace(secret, MASK)
    return text


def namespace_credentials(system_id: str, credentials: Mapping[str, Any]) -> dict[str, Any]:
    """``{"token": "x"}`` for system ``crm`` becomes ``{"crm_token": "x"}``."""
    return {f"{system_id}_{key}": value for key, value in credentials.items()}


class SystemCredentialStore:
    """Encrypted credentials per system id.

    Credentials live in memory. Persistence belongs to the owning
    datastore, which can hydrate this store at startup.

    Args:
        encryption: A configured :class:`CredentialEncryption` instance.
    """

    def __init__(self, encryption: CredentialEncryption) -> None:
        self._enc = encryption
        self._store: dict[str, SystemCredentials] = {}

    def store(self, system_id: str, data: Mapping[str, Any]) -> SystemCredentials:
        """Encrypt and store *data* for *system_id*, replacing anything there.

        Returns the record **without** ``encrypted_data``.

        Raises:
            CredentialError: if *data* is not a mapping or *system_id* is empty.
        """
        if not system_id:
            raise CredentialError("system_id is required")
        if not isinstance(data, Mapping):
            raise CredentialError("Credential data must be a plain dict", system_id=system_id)
        record = SystemCredentials(
            system_id=system_id,
            keys=sorted(data.keys()),
            encrypted_data=self._enc.encrypt_mapping(data),
        )
        self._store[system_id] = record
        logger.debug("[Credentials] Stored %d key(s) for system %s", len(record.keys), system_id)
        return record.model_copy(update={"encrypted_data": ""})

    def retrieve(self, system_id: str) -> dict[str, Any]:
        """Decrypted credentials for *system_id*.

        Raises:
            CredentialNotFound: nothing stored for this system.
        """
        record = self._store.get(system_id)
        if record is None:
            raise CredentialNotFound(f"No credentials stored for system '{system_id}'", system_id=system_id)
        return self._enc.decrypt_mapping(record.encrypted_data)

    def delete(self, system_id: str) -> bool:
        return self._store.pop(system_id, None) is not None

    def list(self) -> list[SystemCredentials]:
        """Metadata for every stored system; ``encrypted_data`` always empty."""
        return [r.model_copy(update={"encrypted_data": ""}) for r in self._store.values()]

    def namespaced(self, system_ids: Iterable[str]) -> dict[str, Any]:
        """Flat ``{systemId_key: value}`` map for the given systems.

        Systems with no stored credentials contribute nothing.
        """
        flat: dict[str, Any] = {}
        for system_id in system_ids:
            if system_id in self._store:
                flat.update(namespace_credentials(system_id, self.retrieve(system_id)))
        return flat
