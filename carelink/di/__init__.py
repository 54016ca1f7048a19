from .container import ServiceContainer
from .deps import (
    get_container,
    get_fhir_gateway,
    get_identity_gateway,
    get_token_codec,
    get_user_directory,
)

__all__ = [
    "ServiceContainer",
    "get_container",
    "get_fhir_gateway",
    "get_identity_gateway",
    "get_token_codec",
    "get_user_directory",
]
