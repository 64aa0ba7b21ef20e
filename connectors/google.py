"""
GoogleConnector — OAuth2 web flow for Google APIs (Drive, YouTube).

One class serves every Google product; each instance carries its own
provider key, scopes and client credentials.  Google takes form-encoded
bodies, returns a refresh token only on the first consent, and does not
rotate it on refresh.
"""

from __future__ import annotations

import logging
from typing import List, Optional
from urllib.parse import urlencode

from connectors.base import BaseConnector
from connectors.exceptions import ExchangeError, RefreshError
from connectors.schemas import TokenResult

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


class GoogleConnector(BaseConnector):
    """OAuth2 connector for a Google product."""

    def __init__(
        self,
        key: str,
        display_name: str,
        scopes: List[str],
        category: str = "storage",
        icon: str = "📁",
    ):
        super().__init__()
        self._key = key
        self._display_name = display_name
        self._scopes = list(scopes)
        self._category = category
        self._icon = icon

    @property
    def provider_name(self) -> str:
        return self._key

    @property
    def display_name(self) -> str:
        return self._display_name

    @property
    def default_scopes(self) -> List[str]:
        return list(self._scopes)

    @property
    def category(self) -> str:
        return self._category

    @property
    def icon(self) -> str:
        return self._icon

    def get_auth_url(
        self,
        redirect_uri: str,
        state: str,
        scopes: Optional[List[str]] = None,
    ) -> str:
        params = {
            "client_id": self.credentials().client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes or self.default_scopes),
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # force consent to always get refresh_token
            "state": state,
        }
        return f"{_GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResult:
        creds = self.credentials()
        resp = await self._request(
            "POST",
            _GOOGLE_TOKEN_URL,
            ExchangeError,
            data={
                "code": code,
                "client_id": creds.client_id,
                "client_secret": creds.client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        logger.debug("%s code exchange returned %d", self.provider_name, resp.status_code)
        return self._token_result(resp, ExchangeError)

    async def refresh_tokens(self, refresh_token: str) -> TokenResult:
        creds = self.credentials()
        resp = await self._request(
            "POST",
            _GOOGLE_TOKEN_URL,
            RefreshError,
            data={
                "client_id": creds.client_id,
                "client_secret": creds.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        logger.debug("%s token refresh returned %d", self.provider_name, resp.status_code)
        return self._token_result(resp, RefreshError, refreshing=True)
