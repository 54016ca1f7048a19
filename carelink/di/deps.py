from fastapi import Depends, Request

from carelink.auth.smart import SmartIdentityGateway
from carelink.auth.users import UserDirectory
from carelink.fhir_gateway import FhirResourceGateway
from carelink.security.session_tokens import SessionTokenCodec
from .container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if not container:
        raise RuntimeError("Service container not initialized")
    return container


def get_token_codec(
    container: ServiceContainer = Depends(get_container),
) -> SessionTokenCodec:
    codec = container.token_codec
    if codec is None:
        raise RuntimeError("Session token codec not initialized")
    return codec


def get_identity_gateway(
    container: ServiceContainer = Depends(get_container),
) -> SmartIdentityGateway:
    gateway = container.identity_gateway
    if gateway is None:
        raise RuntimeError("SMART identity gateway not initialized")
    return gateway


def get_fhir_gateway(
    container: ServiceContainer = Depends(get_container),
) -> FhirResourceGateway:
    gateway = container.fhir_gateway
    if gateway is None:
        raise RuntimeError("FHIR gateway not initialized")
    return gateway


def get_user_directory(
    container: ServiceContainer = Depends(get_container),
) -> UserDirectory:
    directory = container.user_directory
    if directory is None:
        raise RuntimeError("User directory not initialized")
    return directory
