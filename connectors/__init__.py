"""
connectors — OAuth account linking for external platforms.

Provides a small connector framework that handles:
  • OAuth2 auth-URL generation and single-use CSRF state
  • Callback handling (code → token exchange → external account id)
  • Per-owner credential storage, AES-GCM encrypted at rest
  • Auto-refresh of expiring tokens, with a terminal re-auth on failure
  • Disconnect and account switching

Each provider is a subclass of BaseConnector; Twitch is the one shipped.
"""
