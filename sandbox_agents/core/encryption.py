"""Encryption utilities for user secrets at rest."""

import json

from cryptography.fernet import Fernet

from sandbox_agents.core.config import settings


def _fernet(key: str) -> Fernet:
    if not key:
        raise ValueError("Encryption key is required")
    return Fernet(key.encode())


def encrypt_data(data: str, key: str) -> str:
    """Encrypt data using Fernet symmetric encryption.

    Args:
        data: The plaintext string to encrypt
        key: Base64-encoded 32-byte encryption key

    Returns:
        Base64-encoded encrypted string

    Raises:
        ValueError: If the key is missing or invalid
    """
    return _fernet(key).encrypt(data.encode()).decode()


def decrypt_data(encrypted_data: str, key: str) -> str:
    """Decrypt data using Fernet symmetric encryption.

    Raises:
        ValueError: If the key is missing or invalid
        cryptography.fernet.InvalidToken: If decryption fails
    """
    return _fernet(key).decrypt(encrypted_data.encode()).decode()


def encrypt_secret(value: str) -> str:
    """Encrypt a user secret with the configured store key."""
    return encrypt_data(value, settings.encryption_key)


def decrypt_secret(value: str) -> str:
    """Decrypt a user secret with the configured store key."""
    return decrypt_data(value, settings.encryption_key)


def encrypt_json(payload: dict[str, str]) -> str:
    """Encrypt a mapping (e.g. connector environment) as one token."""
    return encrypt_secret(json.dumps(payload, sort_keys=True))


def decrypt_json(token: str | None) -> dict[str, str]:
    """Inverse of encrypt_json; an empty token decodes to an empty mapping."""
    if not token:
        return {}
    return json.loads(decrypt_secret(token))
