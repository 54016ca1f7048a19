"""Per-issuer cache for SMART / OpenID Connect provider metadata."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProviderMetadata(BaseModel):
    """Subset of the discovery document the gateway relies on."""

    model_config = ConfigDict(extra="ignore")

    authorization_endpoint: str
    token_endpoint: str
    issuer: Optional[str] = None
    jwks_uri: Optional[str] = None
    id_token_signing_alg_values_supported: List[str] = Field(default_factory=lambda: ["RS256"])
    scopes_supported: List[str] = Field(default_factory=list)


class IssuerCache:
    """Process-lifetime cache keyed by issuer URL.

    Population is lazy and lock-free: two concurrent misses may both fetch,
    but ``dict.setdefault`` keeps whichever value landed first and both
    callers get that value back.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Any] = {}

    @staticmethod
    def _key(issuer: str) -> str:
        return issuer.rstrip("/")

    def get(self, issuer: str) -> Optional[Any]:
        return self._entries.get(self._key(issuer))

    def put_if_absent(self, issuer: str, value: Any) -> Any:
        return self._entries.setdefault(self._key(issuer), value)

    async def get_or_populate(self, issuer: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        cached = self.get(issuer)
        if cached is not None:
            return cached
        value = await loader()
        return self.put_if_absent(issuer, value)

    def invalidate(self, issuer: str) -> None:
        self._entries.pop(self._key(issuer), None)

    def __len__(self) -> int:
        return len(self._entries)
