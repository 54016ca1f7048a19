import os
import platform
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from carelink import __version__
from carelink.di import ServiceContainer, get_container
from carelink.utils.error_responses import success_envelope

router = APIRouter()

_started_at = time.monotonic()


def _base_status() -> dict:
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - _started_at, 3),
        "environment": os.getenv("ENVIRONMENT", "development"),
        "version": __version__,
    }


@router.get("/health")
async def health():
    """Lightweight liveness check."""
    return success_envelope(_base_status())


@router.get("/health/detailed")
async def health_detailed(container: ServiceContainer = Depends(get_container)):
    """Liveness plus the state of the gateway's collaborators."""
    identity = container.identity_gateway
    payload = _base_status()
    payload.update(
        {
            "services": {
                "tokenCodec": "ready" if container.token_codec else "unavailable",
                "fhirGateway": {
                    "status": "ready" if container.fhir_gateway else "unavailable",
                    "baseUrl": container.settings.fhir_server_url,
                },
                "identityGateway": {
                    "status": "ready" if identity else "unavailable",
                    "cachedIssuers": len(identity.discovery_cache) if identity else 0,
                    "pendingLaunches": len(identity.state_store) if identity else 0,
                },
            },
            "system": {
                "python": platform.python_version(),
                "platform": platform.system(),
            },
        }
    )
    return success_envelope(payload)
