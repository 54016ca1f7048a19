"""
Runtime settings for the CareLink gateway, read from the environment.
"""

import os
from dataclasses import dataclass, field
from typing import FrozenSet, List, Tuple

from dotenv import load_dotenv


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class Settings:
    jwt_secret: str = field(repr=False)
    jwt_expires_hours: int = 24
    refresh_token_expires_days: int = 7
    fhir_server_url: str = "https://hapi.fhir.org/baseR4"
    smart_client_id: str = ""
    smart_client_secret: str = field(default="", repr=False)
    base_url: str = "http://localhost:3000"
    upstream_timeout_seconds: float = 10.0
    launch_state_ttl_seconds: int = 600
    trusted_issuers: Tuple[str, ...] = ()
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173"])
    rate_limit_enabled: bool = True
    rate_limit_max_requests: int = 100
    rate_limit_window_seconds: int = 900
    security_headers_enabled: bool = True
    debug: bool = False

    @property
    def smart_redirect_uri(self) -> str:
        return f"{self.base_url.rstrip('/')}/auth/smart/callback"

    @property
    def issuer_allow_list(self) -> FrozenSet[str]:
        """Issuers SMART launches may use: the FHIR server plus ``trusted_issuers``."""
        issuers = (self.fhir_server_url,) + tuple(self.trusted_issuers)
        return frozenset(issuer.rstrip("/") for issuer in issuers if issuer)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (and a local .env file)."""
        load_dotenv()

        jwt_secret = os.getenv("JWT_SECRET")
        if not jwt_secret:
            raise RuntimeError("JWT_SECRET must be configured")

        return cls(
            jwt_secret=jwt_secret,
            jwt_expires_hours=int(os.getenv("JWT_EXPIRES_HOURS", "24")),
            refresh_token_expires_days=int(os.getenv("REFRESH_TOKEN_EXPIRES_DAYS", "7")),
            fhir_server_url=os.getenv("FHIR_SERVER_URL", "https://hapi.fhir.org/baseR4"),
            smart_client_id=os.getenv("SMART_CLIENT_ID", ""),
            smart_client_secret=os.getenv("SMART_CLIENT_SECRET", ""),
            base_url=os.getenv("BASE_URL", "http://localhost:3000"),
            upstream_timeout_seconds=float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "10.0")),
            launch_state_ttl_seconds=int(os.getenv("LAUNCH_STATE_TTL_SECONDS", "600")),
            trusted_issuers=tuple(
                issuer.strip()
                for issuer in os.getenv("TRUSTED_ISSUERS", "").split(",")
                if issuer.strip()
            ),
            cors_origins=os.getenv("CORS_ORIGINS", "http://localhost:5173").split(","),
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", "true"),
            rate_limit_max_requests=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100")),
            rate_limit_window_seconds=int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "900")),
            security_headers_enabled=_env_bool("SECURITY_HEADERS_ENABLED", "true"),
            debug=_env_bool("DEBUG", "false"),
        )


__all__ = ["Settings"]
