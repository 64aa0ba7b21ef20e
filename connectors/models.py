"""
This module re-exports the connection models from the database package for use in connector-related code.
"""

from database.models import Connection, ConnectionStatus, ProviderConfig  # noqa: F401

__all__ = ["Connection", "ConnectionStatus", "ProviderConfig"]
