"""
Crypto utilities — Fernet symmetric encryption for connection details.

SourceAccount.connection_details (API tokens, base URLs, ...) are serialised
to JSON and encrypted with Fernet (AES-128-CBC + HMAC-SHA256) keyed by the
ENCRYPTION_KEY environment variable before they touch the database.

  WARNING: ENCRYPTION_KEY must be a 32-byte URL-safe base64 key generated via:
    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
  Store it in the environment; never hard-code or commit it.
"""

import json
import os

from cryptography.fernet import Fernet


def _get_fernet() -> Fernet:
    """Return a Fernet instance keyed by the ENCRYPTION_KEY env var.

    Raises RuntimeError if ENCRYPTION_KEY is not set rather than silently
    storing plaintext credentials.
    """
    raw_key = os.getenv("ENCRYPTION_KEY")
    if not raw_key:
        raise RuntimeError(
            "ENCRYPTION_KEY environment variable is not set. "
            "Generate one with: python -c \""
            "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        )
    return Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)


def encrypt_secret(plaintext: str) -> str:
    """Encrypt a plaintext secret and return URL-safe base64 ciphertext.

    Raises:
        RuntimeError: If ENCRYPTION_KEY is not set.
    """
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_secret(ciphertext: str) -> str:
    """Decrypt a value previously returned by encrypt_secret().

    Raises:
        RuntimeError: If ENCRYPTION_KEY is not set.
        cryptography.fernet.InvalidToken: If ciphertext is tampered or
            encrypted with a different key.
    """
    return _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")


def encrypt_details(details: dict) -> str:
    """Serialise a connection-details dict to JSON and encrypt it."""
    return encrypt_secret(json.dumps(details, sort_keys=True))


def decrypt_details(ciphertext: str) -> dict:
    """Inverse of encrypt_details()."""
    return json.loads(decrypt_secret(ciphertext))
