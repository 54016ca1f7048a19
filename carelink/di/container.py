import logging
from datetime import timedelta
from typing import Optional

import httpx

from carelink.auth.discovery import IssuerCache
from carelink.auth.launch_state import LaunchStateStore
from carelink.auth.smart import SmartIdentityGateway
from carelink.auth.users import UserDirectory
from carelink.config import Settings
from carelink.fhir_gateway import FhirResourceGateway
from carelink.security.session_tokens import SessionTokenCodec

logger = logging.getLogger(__name__)


class ServiceContainer:
    """Centralized application service container for shared singletons."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        user_directory: Optional[UserDirectory] = None,
    ) -> None:
        self.settings = settings
        self.http_client = http_client
        self._owns_http_client = http_client is None
        self.user_directory = user_directory

        self.token_codec: Optional[SessionTokenCodec] = None
        self.refresh_ttl: timedelta = timedelta(days=settings.refresh_token_expires_days)
        self.identity_gateway: Optional[SmartIdentityGateway] = None
        self.fhir_gateway: Optional[FhirResourceGateway] = None

    async def startup(self) -> None:
        settings = self.settings

        if self.http_client is None:
            self.http_client = httpx.AsyncClient(timeout=settings.upstream_timeout_seconds)

        logger.info("Loading session token codec...")
        self.token_codec = SessionTokenCodec(
            settings.jwt_secret,
            default_ttl=timedelta(hours=settings.jwt_expires_hours),
        )

        logger.info("Loading SMART identity gateway...")
        self.identity_gateway = SmartIdentityGateway(
            settings,
            self.http_client,
            discovery_cache=IssuerCache(),
            jwks_cache=IssuerCache(),
            state_store=LaunchStateStore(settings.launch_state_ttl_seconds),
        )

        logger.info("Loading FHIR resource gateway for %s...", settings.fhir_server_url)
        self.fhir_gateway = FhirResourceGateway(
            settings.fhir_server_url,
            self.http_client,
            timeout=settings.upstream_timeout_seconds,
        )

        if self.user_directory is None:
            self.user_directory = UserDirectory()

    async def shutdown(self) -> None:
        if self.http_client is not None and self._owns_http_client:
            await self.http_client.aclose()
            self.http_client = None
