"""
OAuth session store — ephemeral CSRF ``state`` → owner mapping.

One instance is built at process start by the service container and
injected wherever the OAuth routes need it; its sweeper task lives for
the application lifespan (``start_sweeper`` / ``stop_sweeper``).

A session is single-use: it is deleted as soon as a callback redeems it,
and is never returned after ``expires_at`` even if the sweeper has not
run yet.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from connectors.errors import SessionExpiredOrInvalid
from utils.locks import ReadWriteLock

logger = logging.getLogger(__name__)

STATE_BYTES = 32
DEFAULT_TTL = timedelta(minutes=10)
DEFAULT_SWEEP_INTERVAL = 300.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_state() -> str:
    return secrets.token_hex(STATE_BYTES)


@dataclass(frozen=True)
class OAuthSession:
    state: str
    owner_id: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class OAuthSessionStore:
    def __init__(
        self,
        ttl: timedelta = DEFAULT_TTL,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._ttl = ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._sessions: Dict[str, OAuthSession] = {}
        self._lock = ReadWriteLock()
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._sessions)

    def create_session(self, owner_id: str) -> str:
        """Register a fresh state for *owner_id* and return it."""
        now = self._clock()
        state = generate_state()
        session = OAuthSession(
            state=state,
            owner_id=owner_id,
            created_at=now,
            expires_at=now + self._ttl,
        )
        with self._lock.write_locked():
            self._sessions[state] = session
        logger.info("Created OAuth session for owner %s", owner_id)
        return state

    def get_session(self, state: str) -> Optional[OAuthSession]:
        """Return the live session for *state*, or None if absent or expired."""
        with self._lock.read_locked():
            session = self._sessions.get(state)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            with self._lock.write_locked():
                current = self._sessions.get(state)
                if current is not None and current.is_expired(self._clock()):
                    del self._sessions[state]
            return None
        return session

    def delete_session(self, state: str) -> None:
        with self._lock.write_locked():
            self._sessions.pop(state, None)

    def consume_session(self, state: str) -> OAuthSession:
        """
        Atomically look up and delete *state*.

        Raises ``SessionExpiredOrInvalid`` if the state is unknown, already
        consumed, or expired.
        """
        if not state:
            raise SessionExpiredOrInvalid("missing OAuth state")
        with self._lock.write_locked():
            session = self._sessions.pop(state, None)
        if session is None:
            raise SessionExpiredOrInvalid("unknown or already used OAuth state")
        if session.is_expired(self._clock()):
            raise SessionExpiredOrInvalid("OAuth state expired")
        return session

    def sweep(self) -> int:
        """Remove every expired session; returns how many were dropped."""
        now = self._clock()
        with self._lock.write_locked():
            expired = [s for s, sess in self._sessions.items() if sess.is_expired(now)]
            for state in expired:
                del self._sessions[state]
        if expired:
            logger.debug("Swept %d expired OAuth sessions", len(expired))
        return len(expired)

    # ── Sweeper lifecycle ───────────────────────────────────────────────

    def start_sweeper(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_forever(), name="oauth-session-sweeper")

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("OAuth session sweep failed")
