"""
auth — identity of the calling owner.

Provides:
  • Signed token creation & verification (HMAC-SHA256)
  • A ``TokenVerifier`` chosen once at startup (strict or development)
  • ``get_current_owner_id`` FastAPI dependency
"""
