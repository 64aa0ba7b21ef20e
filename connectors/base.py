"""
BaseConnector — abstract interface for all OAuth2 provider adapters.

Every provider family (Google, TikTok, Facebook, …) subclasses this and
implements the three OAuth operations: build the authorization URL,
exchange a code, refresh tokens.  Transport details (form vs JSON body,
parameter names, response envelopes, which errors mean "the grant is dead")
stay inside the subclass; callers only ever see ``TokenResult`` or one of
the typed ``ProviderError`` subclasses.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Type

import httpx
from pydantic import ValidationError

from config.settings import config
from connectors.exceptions import (
    CredentialMissingError,
    InvalidGrantError,
    ProviderError,
)
from connectors.schemas import CallStats, ProviderCredentials, TokenResult

logger = logging.getLogger(__name__)


class ProviderCallStats:
    """Per-adapter counters for calls made to the provider's token endpoint."""

    def __init__(self) -> None:
        self.total = 0
        self.success = 0
        self.failure = 0
        self.errors: Dict[str, int] = {}
        self._elapsed_ms = 0.0

    def record(self, ok: bool, elapsed_ms: float) -> None:
        self.total += 1
        if ok:
            self.success += 1
        else:
            self.failure += 1
        self._elapsed_ms += elapsed_ms

    def record_error(self, code: str) -> None:
        """Count a failed call by the error code it surfaced as."""
        self.errors[code] = self.errors.get(code, 0) + 1

    def snapshot(self) -> CallStats:
        average = round(self._elapsed_ms / self.total, 1) if self.total else None
        return CallStats(
            total=self.total,
            success=self.success,
            failure=self.failure,
            errors_by_code=dict(self.errors),
            average_ms=average,
        )


class BaseConnector(ABC):
    """Abstract base for all OAuth2 connectors."""

    #: ``error`` values that mean the refresh credential can never work again
    permanent_errors = frozenset({"invalid_grant"})

    def __init__(self) -> None:
        self.stats = ProviderCallStats()

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique key: 'google-drive', 'youtube', 'tiktok', 'facebook', …"""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def default_scopes(self) -> List[str]:
        """Scopes requested when the provider config does not override them."""
        ...

    @property
    def category(self) -> str:
        return "other"

    @property
    def icon(self) -> str:
        """Optional emoji / icon for UI."""
        return "🔗"

    # ── Credentials ─────────────────────────────────────────────────────

    def credentials(self) -> ProviderCredentials:
        """
        Client credentials for live calls, read from configuration.

        The hashed secret kept in ``provider_configs`` is never usable here.
        """
        client_id, client_secret = config.provider_credentials(self.provider_name)
        if not client_id or not client_secret:
            raise CredentialMissingError(
                f"Missing OAuth credentials for provider '{self.provider_name}'. "
                "Ensure the client id and secret environment variables are set."
            )
        return ProviderCredentials(client_id=client_id, client_secret=client_secret)

    def is_configured(self) -> bool:
        try:
            self.credentials()
        except CredentialMissingError:
            return False
        return True

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(
        self,
        redirect_uri: str,
        state: str,
        scopes: Optional[List[str]] = None,
    ) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Parameters
        ----------
        redirect_uri : str
            Must match what will be sent to ``exchange_code``.
        state : str
            Opaque state string owned by the web-flow caller.
        scopes : list[str], optional
            Overrides ``default_scopes``.
        """
        ...

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResult:
        """
        Exchange an authorization code for tokens.

        Raises
        ------
        ExchangeError – non-2xx response, missing access_token, or transport failure
        """
        ...

    @abstractmethod
    async def refresh_tokens(self, refresh_token: str) -> TokenResult:
        """
        Obtain fresh tokens from a refresh credential.

        Raises
        ------
        InvalidGrantError – the refresh credential is dead (re-authorize)
        RefreshError      – anything else; a later retry may succeed
        """
        ...

    def refresh_credential(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
    ) -> Optional[str]:
        """Pick which stored token feeds ``refresh_tokens``."""
        return refresh_token

    # ── HTTP helpers ────────────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=config.oauth_http_timeout_seconds)

    async def _request(
        self,
        method: str,
        url: str,
        error_cls: Type[ProviderError],
        **kwargs: Any,
    ) -> httpx.Response:
        start = time.perf_counter()
        try:
            async with self._client() as client:
                resp = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            self.stats.record(False, (time.perf_counter() - start) * 1000)
            raise self._failed(
                error_cls(
                    self.provider_name,
                    f"request failed: {exc.__class__.__name__}",
                    body=str(exc),
                )
            ) from exc

        self.stats.record(resp.is_success, (time.perf_counter() - start) * 1000)
        return resp

    @staticmethod
    def _payload(resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {"raw": resp.text}
        return data if isinstance(data, dict) else {"raw": data}

    def _unwrap(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Strip any provider response envelope."""
        return payload

    def _has_error(self, data: Dict[str, Any]) -> bool:
        return "error" in data

    def _is_permanent(self, data: Dict[str, Any]) -> bool:
        return data.get("error") in self.permanent_errors

    def _extra(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Provider-specific fields worth keeping in connection metadata."""
        return {}

    def _token_result(
        self,
        resp: httpx.Response,
        error_cls: Type[ProviderError],
        *,
        refreshing: bool = False,
    ) -> TokenResult:
        payload = self._payload(resp)
        data = self._unwrap(payload)

        if not resp.is_success or self._has_error(data):
            if refreshing and self._is_permanent(data):
                raise self._failed(
                    InvalidGrantError(
                        self.provider_name,
                        "refresh credential rejected",
                        status_code=resp.status_code,
                        body=payload,
                    )
                )
            raise self._failed(
                error_cls(
                    self.provider_name,
                    f"token endpoint returned {resp.status_code}",
                    status_code=resp.status_code,
                    body=payload,
                )
            )

        if not data.get("access_token"):
            raise self._failed(
                error_cls(
                    self.provider_name,
                    "token response has no access_token",
                    status_code=resp.status_code,
                    body=sorted(data.keys()),
                )
            )

        scope = data.get("scope")
        if isinstance(scope, list):
            scope = " ".join(scope)

        try:
            return TokenResult(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token") or None,
                expires_in=_int_or_none(data.get("expires_in")),
                scope=scope or None,
                token_type=data.get("token_type"),
                extra=self._extra(data),
            )
        except ValidationError as exc:
            raise self._failed(
                error_cls(
                    self.provider_name,
                    "malformed token response",
                    status_code=resp.status_code,
                    body=sorted(data.keys()),
                )
            ) from exc

    def _failed(self, exc: ProviderError) -> ProviderError:
        self.stats.record_error(exc.code)
        logger.warning(
            "Token call failed [%s, status %s]: %s",
            exc.code,
            exc.status_code,
            exc.message,
        )
        return exc


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
