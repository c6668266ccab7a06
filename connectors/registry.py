"""
ConnectorRegistry — the set of OAuth providers the app can link to.

Built once by the service container; routes look connectors up by the
``{provider}`` path segment.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from connectors.base import BaseConnector

logger = logging.getLogger(__name__)


class ConnectorRegistry:
    def __init__(self, connectors: Iterable[BaseConnector] = ()):
        self._all: List[BaseConnector] = []
        self._connectors: Dict[str, BaseConnector] = {}
        for conn in connectors:
            self.register(conn)

    def register(self, conn: BaseConnector) -> None:
        self._all.append(conn)
        if conn.is_configured():
            self._connectors[conn.provider_name] = conn
            logger.info("Connector registered: %s (%s)", conn.display_name, conn.provider_name)
        else:
            logger.warning(
                "Connector %s skipped — not configured (missing client_id/secret)",
                conn.provider_name,
            )

    def get(self, provider: str) -> Optional[BaseConnector]:
        """Get a configured connector by provider name."""
        return self._connectors.get(provider)

    def list_providers(self) -> List[Dict[str, object]]:
        return [
            {
                "provider": c.provider_name,
                "display_name": c.display_name,
                "configured": c.is_configured(),
            }
            for c in self._all
        ]

    def list_configured(self) -> List[str]:
        return list(self._connectors.keys())
