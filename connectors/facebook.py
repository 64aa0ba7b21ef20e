"""
FacebookConnector — OAuth2 for Facebook and Instagram (Graph API).

The Graph API has no refresh-token grant.  A still-valid access token is
traded for a new long-lived one with ``grant_type=fb_exchange_token``, so
``refresh_credential`` hands the current access token to
``refresh_tokens`` and callers never see the difference.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from connectors.base import BaseConnector
from connectors.exceptions import ExchangeError, RefreshError
from connectors.schemas import TokenResult

logger = logging.getLogger(__name__)

_GRAPH_VERSION = "v18.0"
_FB_AUTH_URL = f"https://www.facebook.com/{_GRAPH_VERSION}/dialog/oauth"
_IG_AUTH_URL = "https://api.instagram.com/oauth/authorize"
_GRAPH_TOKEN_URL = f"https://graph.facebook.com/{_GRAPH_VERSION}/oauth/access_token"

# Graph error code for an invalid or expired access token
_OAUTH_INVALID_TOKEN = 190


class FacebookConnector(BaseConnector):
    """OAuth2 connector for Graph API products."""

    def __init__(
        self,
        key: str,
        display_name: str,
        scopes: List[str],
        auth_url: str = _FB_AUTH_URL,
        icon: str = "📘",
    ):
        super().__init__()
        self._key = key
        self._display_name = display_name
        self._scopes = list(scopes)
        self._auth_url = auth_url
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
        return "social"

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
            "scope": ",".join(scopes or self.default_scopes),
            "response_type": "code",
            "state": state,
        }
        return f"{self._auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResult:
        creds = self.credentials()
        resp = await self._request(
            "POST",
            _GRAPH_TOKEN_URL,
            ExchangeError,
            json={
                "client_id": creds.client_id,
                "client_secret": creds.client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )
        logger.debug("%s code exchange returned %d", self.provider_name, resp.status_code)
        return self._token_result(resp, ExchangeError)

    async def refresh_tokens(self, refresh_token: str) -> TokenResult:
        """
        Trade a still-valid access token for a fresh long-lived one.

        Note: ``refresh_token`` here is the current *access* token — see
        ``refresh_credential``.  Once it has expired there is nothing left to
        exchange and the user must reconnect.
        """
        creds = self.credentials()
        resp = await self._request(
            "GET",
            _GRAPH_TOKEN_URL,
            RefreshError,
            params={
                "grant_type": "fb_exchange_token",
                "client_id": creds.client_id,
                "client_secret": creds.client_secret,
                "fb_exchange_token": refresh_token,
            },
        )
        logger.debug("%s token refresh returned %d", self.provider_name, resp.status_code)
        return self._token_result(resp, RefreshError, refreshing=True)

    def refresh_credential(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
    ) -> Optional[str]:
        return access_token

    def _is_permanent(self, data: Dict[str, Any]) -> bool:
        error = data.get("error")
        if isinstance(error, dict):
            return error.get("code") == _OAUTH_INVALID_TOKEN
        return super()._is_permanent(data)


def instagram_connector() -> FacebookConnector:
    return FacebookConnector(
        "instagram",
        "Instagram",
        ["instagram_basic", "instagram_content_publish"],
        auth_url=_IG_AUTH_URL,
        icon="📸",
    )
