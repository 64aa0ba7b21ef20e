"""
TikTokConnector — OAuth2 for the TikTok Open API.

TikTok names the client id ``client_key``, takes JSON bodies, wraps token
payloads in a ``data`` envelope and rotates the refresh token on every
refresh.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from connectors.base import BaseConnector
from connectors.exceptions import ExchangeError, RefreshError
from connectors.schemas import TokenResult

logger = logging.getLogger(__name__)

_TIKTOK_AUTH_URL = "https://www.tiktok.com/auth/authorize/"
_TIKTOK_TOKEN_URL = "https://open-api.tiktok.com/oauth/access_token/"
_TIKTOK_REFRESH_URL = "https://open-api.tiktok.com/oauth/refresh_token/"


class TikTokConnector(BaseConnector):
    """OAuth2 connector for TikTok."""

    @property
    def provider_name(self) -> str:
        return "tiktok"

    @property
    def display_name(self) -> str:
        return "TikTok"

    @property
    def default_scopes(self) -> List[str]:
        return ["user.info.basic", "video.upload"]

    @property
    def category(self) -> str:
        return "social"

    @property
    def icon(self) -> str:
        return "🎵"

    def get_auth_url(
        self,
        redirect_uri: str,
        state: str,
        scopes: Optional[List[str]] = None,
    ) -> str:
        params = {
            "client_key": self.credentials().client_id,
            "redirect_uri": redirect_uri,
            "scope": ",".join(scopes or self.default_scopes),
            "response_type": "code",
            "state": state,
        }
        return f"{_TIKTOK_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResult:
        creds = self.credentials()
        resp = await self._request(
            "POST",
            _TIKTOK_TOKEN_URL,
            ExchangeError,
            json={
                "client_key": creds.client_id,
                "client_secret": creds.client_secret,
                "code": code,
                "grant_type": "authorization_code",
            },
        )
        logger.debug("%s code exchange returned %d", self.provider_name, resp.status_code)
        return self._token_result(resp, ExchangeError)

    async def refresh_tokens(self, refresh_token: str) -> TokenResult:
        creds = self.credentials()
        resp = await self._request(
            "POST",
            _TIKTOK_REFRESH_URL,
            RefreshError,
            json={
                "client_key": creds.client_id,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )
        logger.debug("%s token refresh returned %d", self.provider_name, resp.status_code)
        return self._token_result(resp, RefreshError, refreshing=True)

    def _unwrap(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = payload.get("data")
        return data if isinstance(data, dict) else payload

    def _has_error(self, data: Dict[str, Any]) -> bool:
        return bool(data.get("error_code")) or "error" in data

    def _is_permanent(self, data: Dict[str, Any]) -> bool:
        if super()._is_permanent(data):
            return True
        # Envelope errors only carry a free-text description.
        description = str(data.get("description", "")).lower()
        return "refresh_token" in description and (
            "invalid" in description or "expired" in description
        )

    def _extra(self, data: Dict[str, Any]) -> Dict[str, Any]:
        extra = {}
        if data.get("open_id"):
            extra["open_id"] = data["open_id"]
        if data.get("refresh_expires_in") is not None:
            extra["refresh_expires_in"] = data["refresh_expires_in"]
        return extra
