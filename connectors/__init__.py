"""
connectors — OAuth connection lifecycle for external providers.

Provides a generic connector framework that handles:
  • OAuth2 auth-URL generation
  • Code → token exchange and token refresh, per provider family
  • Per-user connection storage (one row per user + provider)
  • Fernet encryption of tokens at rest
  • A background health monitor that refreshes tokens before they expire

Each provider family (Google, TikTok, Facebook, …) is a subclass of BaseConnector.
"""
