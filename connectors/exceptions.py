"""Typed errors raised by the connector layer."""

from __future__ import annotations

from typing import Any, Optional


class ConnectorError(Exception):
    """Base exception for connector errors."""

    def __init__(self, message: str, code: str = "CONNECTOR_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class CredentialMissingError(ConnectorError):
    """Provider config is absent, disabled, or has no usable client credentials."""

    def __init__(self, message: str):
        super().__init__(message, "CREDENTIAL_MISSING")


class UnknownProviderError(ConnectorError):
    """No adapter is registered for the provider key."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Provider '{provider}' not found or not configured", "UNKNOWN_PROVIDER")


class EncryptionKeyError(ConnectorError):
    """TOKEN_ENCRYPTION_KEY is missing or not a valid Fernet key."""

    def __init__(self, message: str):
        super().__init__(message, "ENCRYPTION_KEY")


class DecryptionError(ConnectorError):
    """Stored ciphertext is corrupt, truncated, or was sealed with another key."""

    def __init__(self, message: str = "Stored token could not be decrypted"):
        super().__init__(message, "DECRYPTION_FAILED")


class ProviderError(ConnectorError):
    """The provider rejected a token request.

    ``status_code`` is None when the request never got an HTTP response
    (timeout, DNS, connection reset).
    """

    default_code = "PROVIDER_ERROR"

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        self.provider = provider
        self.status_code = status_code
        self.body = body
        super().__init__(f"{provider}: {message}", self.default_code)


class ExchangeError(ProviderError):
    default_code = "EXCHANGE_FAILED"


class RefreshError(ProviderError):
    default_code = "REFRESH_FAILED"


class InvalidGrantError(RefreshError):
    """The refresh credential itself is dead; the user must re-authorize."""

    default_code = "INVALID_GRANT"


class NotFoundError(ConnectorError):
    def __init__(self, message: str):
        super().__init__(message, "NOT_FOUND")


class ReconnectRequiredError(ConnectorError):
    """The connection exists but its tokens can no longer be used."""

    def __init__(self, provider: str, message: Optional[str] = None):
        self.provider = provider
        super().__init__(
            message or f"{provider} connection has expired, please reconnect",
            "RECONNECT_REQUIRED",
        )
