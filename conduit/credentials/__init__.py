"""Credential store: encrypted secrets keyed by system id."""

from conduit.credentials.encryption import CredentialEncryption
from conduit.credentials.store import SystemCredentialStore, redact, sanitize_params

__all__ = ["CredentialEncryption", "SystemCredentialStore", "redact", "sanitize_params"]
