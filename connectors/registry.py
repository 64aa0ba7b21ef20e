"""
ConnectorRegistry — maps provider keys to adapters.

Lifecycle code looks adapters up by key and never branches on the provider,
so adding a platform means adding one adapter to ``default_connectors``.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from connectors.base import BaseConnector
from connectors.exceptions import UnknownProviderError
from connectors.facebook import FacebookConnector, instagram_connector
from connectors.google import GoogleConnector
from connectors.schemas import CallStats, ProviderInfo
from connectors.tiktok import TikTokConnector

logger = logging.getLogger(__name__)


def default_connectors() -> List[BaseConnector]:
    """All known connectors — add new ones here."""
    return [
        GoogleConnector(
            "google-drive",
            "Google Drive",
            ["https://www.googleapis.com/auth/drive"],
            category="storage",
            icon="📁",
        ),
        GoogleConnector(
            "youtube",
            "YouTube",
            [
                "https://www.googleapis.com/auth/youtube",
                "https://www.googleapis.com/auth/youtube.upload",
            ],
            category="social",
            icon="▶️",
        ),
        TikTokConnector(),
        FacebookConnector(
            "facebook",
            "Facebook",
            ["pages_show_list", "pages_manage_posts"],
        ),
        instagram_connector(),
    ]


class ConnectorRegistry:
    """Singleton registry for all OAuth connectors."""

    _instance: Optional["ConnectorRegistry"] = None

    def __new__(cls) -> "ConnectorRegistry":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._known = {c.provider_name: c for c in default_connectors()}
            cls._instance._connectors = {}
            cls._instance._discovered = False
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Destroy singleton — only useful in test teardown."""
        cls._instance = None

    def discover(self) -> None:
        """Register all configured connectors."""
        if self._discovered:
            return
        for conn in self._known.values():
            if conn.is_configured():
                self._connectors[conn.provider_name] = conn
                logger.info(
                    "Connector registered: %s (%s)",
                    conn.display_name,
                    conn.provider_name,
                )
            else:
                logger.warning(
                    "Connector %s skipped — not configured (missing client_id/secret)",
                    conn.provider_name,
                )
        self._discovered = True

    def register(self, connector: BaseConnector) -> None:
        """Register a connector explicitly, replacing any with the same key."""
        self._known[connector.provider_name] = connector
        self._connectors[connector.provider_name] = connector

    def get(self, provider: str) -> Optional[BaseConnector]:
        """Get a connector by provider key."""
        return self._connectors.get(provider)

    def require(self, provider: str) -> BaseConnector:
        """Like ``get`` but raises ``UnknownProviderError``."""
        connector = self._connectors.get(provider)
        if connector is None:
            raise UnknownProviderError(provider)
        return connector

    def known(self) -> List[BaseConnector]:
        """Every connector this build knows about, configured or not."""
        return list(self._known.values())

    def list_providers(self) -> List[ProviderInfo]:
        """Return info about all available connectors."""
        return [
            ProviderInfo(
                provider=c.provider_name,
                display_name=c.display_name,
                category=c.category,
                icon=c.icon,
                configured=c.is_configured(),
            )
            for c in self._known.values()
        ]

    def list_configured(self) -> List[str]:
        """Return keys of registered connectors."""
        return list(self._connectors.keys())

    def call_stats(self) -> Dict[str, CallStats]:
        return {key: c.stats.snapshot() for key, c in self._connectors.items()}
