"""
Pydantic schemas for the connector layer.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════════════════════
# Provider adapter I/O
# ═══════════════════════════════════════════════════════════════════════════════


class TokenResult(BaseModel):
    """
    Normalized output of an exchange or refresh call.

    ``refresh_token=None`` means "keep the one already stored";
    ``expires_in=None`` means the provider declared no expiry.
    """

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    def metadata(self) -> Dict[str, Any]:
        """Provider-specific bits persisted alongside the connection."""
        meta: Dict[str, Any] = {
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }
        meta.update(self.extra)
        return meta


class ProviderCredentials(BaseModel):
    client_id: str
    client_secret: str


class ProviderInfo(BaseModel):
    provider: str
    display_name: str
    category: str
    icon: str
    configured: bool


class CallStats(BaseModel):
    total: int = 0
    success: int = 0
    failure: int = 0
    errors_by_code: Dict[str, int] = Field(default_factory=dict)
    average_ms: Optional[float] = None


# ═══════════════════════════════════════════════════════════════════════════════
# Connection Store
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectionOut(BaseModel):
    """A connection as shown to its owner — tokens are never included."""

    connection_id: str
    provider: str
    status: str
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExchangeRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    code: str = Field(..., min_length=1)
    redirect_uri: str = Field(..., min_length=1)


# ═══════════════════════════════════════════════════════════════════════════════
# Health Monitor
# ═══════════════════════════════════════════════════════════════════════════════


class ScanSummary(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    scanned: int = 0
    active: int = 0
    needs_refresh: int = 0
    expired: int = 0
    refreshed: int = 0
    refresh_failed: int = 0
    errors: int = 0


class StatusCounts(BaseModel):
    total: int = 0
    active: int = 0
    needs_refresh: int = 0
    expired: int = 0


class HealthMetrics(BaseModel):
    totals: StatusCounts
    by_provider: Dict[str, StatusCounts] = Field(default_factory=dict)
    scan_in_progress: bool = False
    scans_completed: int = 0
    scans_skipped: int = 0
    last_scan: Optional[ScanSummary] = None
    provider_calls: Dict[str, CallStats] = Field(default_factory=dict)
    generated_at: datetime
