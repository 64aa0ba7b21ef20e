"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
Every call draws a fresh IV, so encrypting the same token twice yields two
different blobs that both decrypt to the original.

The key is loaded once from ``config.token_encryption_key``
(env var: ``TOKEN_ENCRYPTION_KEY``).  There is no plaintext mode and no
generated fallback key: a missing key is a startup error.  Generate a key with::

    python -c "from connectors.encryption import generate_key; print(generate_key())"

Key rotation: put the new key in ``TOKEN_ENCRYPTION_KEY``, move the old one
to ``TOKEN_ENCRYPTION_PREVIOUS_KEYS``, restart, and run
``connectors.token_manager.rotate_stored_tokens()``.

Provider application secrets are stored as bcrypt hashes (one-way, salted)
and only ever compared, never decrypted.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Iterable, Optional

import bcrypt
from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from config.settings import config
from connectors.exceptions import DecryptionError, EncryptionKeyError

logger = logging.getLogger(__name__)


def generate_key() -> str:
    """Return a fresh URL-safe base64 Fernet key."""
    return Fernet.generate_key().decode()


def _fernet(key: str) -> Fernet:
    try:
        return Fernet(key.encode() if isinstance(key, str) else key)
    except (ValueError, TypeError) as exc:
        raise EncryptionKeyError(f"Invalid Fernet key: {exc}") from exc


class TokenCipher:
    """Symmetric cipher for token strings.

    The first key encrypts; every key (primary first) is tried on decrypt.
    Holds no mutable state, so one instance can be shared across tasks.
    """

    def __init__(self, primary_key: str, previous_keys: Iterable[str] = ()):
        if not primary_key:
            raise EncryptionKeyError(
                "TOKEN_ENCRYPTION_KEY not set — refusing to store OAuth tokens. "
                "Generate one with connectors.encryption.generate_key()"
            )
        keys = [_fernet(primary_key)] + [_fernet(k) for k in previous_keys]
        self._multi = MultiFernet(keys)
        self.key_count = len(keys)

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt a token for database storage. ``None`` / ``""`` pass through."""
        if not plaintext:
            return plaintext
        return self._multi.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored token.  ``None`` / ``""`` pass through.

        Raises
        ------
        DecryptionError – blob is malformed, truncated, or from an unknown key
        """
        if not ciphertext:
            return ciphertext
        try:
            return self._multi.decrypt(ciphertext.encode()).decode()
        except (InvalidToken, UnicodeDecodeError) as exc:
            raise DecryptionError() from exc

    def rotate(self, ciphertext: Optional[str]) -> Optional[str]:
        """Re-encrypt a stored blob under the primary key."""
        if not ciphertext:
            return ciphertext
        try:
            return self._multi.rotate(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise DecryptionError() from exc


@lru_cache(maxsize=1)
def get_cipher() -> TokenCipher:
    """Build the process-wide cipher from settings (once)."""
    cipher = TokenCipher(
        config.token_encryption_key,
        config.previous_encryption_keys(),
    )
    logger.info(
        "Token encryption enabled (Fernet/AES-128-CBC, %d key(s) accepted)",
        cipher.key_count,
    )
    return cipher


def encrypt_token(plaintext: Optional[str]) -> Optional[str]:
    return get_cipher().encrypt(plaintext)


def decrypt_token(ciphertext: Optional[str]) -> Optional[str]:
    return get_cipher().decrypt(ciphertext)


# ── Provider application secrets ───────────────────────────────────────


def hash_client_secret(secret: str) -> str:
    """Hash a provider client secret with bcrypt (auto-salted, work factor 12)."""
    return bcrypt.hashpw(secret.encode(), bcrypt.gensalt(rounds=12)).decode()


def verify_client_secret(secret: str, secret_hash: Optional[str]) -> bool:
    """Constant-time comparison against a bcrypt hash."""
    if not secret or not secret_hash:
        return False
    try:
        return bcrypt.checkpw(secret.encode(), secret_hash.encode())
    except (ValueError, TypeError):
        return False
