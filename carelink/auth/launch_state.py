"""Pending SMART launches, keyed by their anti-forgery ``state`` value."""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional


@dataclass(frozen=True)
class LaunchGrant:
    state: str
    issuer: str
    launch: str
    client_id: str
    redirect_uri: str
    scope: str
    created_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LaunchStateStore:
    """In-memory store of launches awaiting their callback.

    Each state is accepted once and only within ``ttl_seconds`` of the launch.
    """

    def __init__(
        self,
        ttl_seconds: int = 600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._pending: Dict[str, LaunchGrant] = {}

    @staticmethod
    def new_state() -> str:
        return secrets.token_urlsafe(32)

    def _purge_expired(self) -> None:
        cutoff = self._clock() - self.ttl
        for state, grant in list(self._pending.items()):
            if grant.created_at < cutoff:
                self._pending.pop(state, None)

    def record(
        self,
        *,
        issuer: str,
        launch: str,
        client_id: str,
        redirect_uri: str,
        scope: str,
    ) -> LaunchGrant:
        self._purge_expired()
        state = self.new_state()
        while state in self._pending:
            state = self.new_state()
        grant = LaunchGrant(
            state=state,
            issuer=issuer,
            launch=launch,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            created_at=self._clock(),
        )
        self._pending[state] = grant
        return grant

    def consume(self, state: Optional[str]) -> Optional[LaunchGrant]:
        """Remove and return the grant for ``state``; None if unknown or stale."""
        if not state:
            return None
        grant = self._pending.pop(state, None)
        if grant is None:
            return None
        if self._clock() - grant.created_at > self.ttl:
            return None
        return grant

    def __len__(self) -> int:
        return len(self._pending)
