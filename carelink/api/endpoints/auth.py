from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from carelink.auth.smart import SmartIdentityGateway
from carelink.auth.users import UserDirectory
from carelink.di import (
    ServiceContainer,
    get_container,
    get_identity_gateway,
    get_token_codec,
    get_user_directory,
)
from carelink.exceptions import InvalidCredential, ValidationFailed
from carelink.models import LoginRequest, RefreshRequest, RegisterRequest
from carelink.security.dependencies import AccessRule, require_access
from carelink.security.principal import Principal
from carelink.security.session_tokens import REFRESH_USE, SessionTokenCodec, TokenError
from carelink.utils.error_responses import success_envelope
from carelink.utils.logging_utils import log_info, log_warning

router = APIRouter()


@router.get("/smart/launch")
async def smart_launch(
    request: Request,
    iss: Optional[str] = Query(None, description="FHIR server (issuer) URL"),
    launch: Optional[str] = Query(None, description="EHR launch token"),
    gateway: SmartIdentityGateway = Depends(get_identity_gateway),
):
    """Build the authorization redirect for an EHR launch."""
    if not iss or not launch:
        raise ValidationFailed("Missing required parameters: iss and launch")

    redirect = await gateway.build_launch_redirect(iss, launch)
    log_info("SMART launch initiated", request=request, issuer=iss)
    return success_envelope(
        {
            "launchUrl": redirect.launch_url,
            "clientId": redirect.client_id,
            "scope": redirect.scope,
        }
    )


@router.get("/smart/callback")
async def smart_callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code"),
    state: Optional[str] = Query(None, description="Anti-forgery state from the launch"),
    gateway: SmartIdentityGateway = Depends(get_identity_gateway),
    codec: SessionTokenCodec = Depends(get_token_codec),
):
    """Exchange the authorization code and mint a session token."""
    if not code:
        raise ValidationFailed("Authorization code required")

    result = await gateway.exchange_code(None, code, state)
    token = codec.issue(result.principal)
    log_info("SMART callback completed", request=request, principal=result.principal.id)

    return success_envelope(
        {
            "user": result.principal.to_public_dict(),
            "token": token,
            "accessToken": result.access_token,
            "refreshToken": result.refresh_token,
        }
    )


@router.post("/login")
async def login(
    payload: LoginRequest,
    request: Request,
    directory: UserDirectory = Depends(get_user_directory),
    container: ServiceContainer = Depends(get_container),
):
    """Authenticate a local account and issue session and refresh tokens."""
    principal = directory.authenticate(payload.username, payload.password)
    if principal is None:
        log_warning("Login failed", request=request)
        raise InvalidCredential("Invalid credentials")

    codec = container.token_codec
    log_info("Login succeeded", request=request, principal=principal.id)
    return success_envelope(
        {
            "user": principal.to_public_dict(),
            "token": codec.issue(principal),
            "refreshToken": codec.issue(principal, container.refresh_ttl, token_use=REFRESH_USE),
        }
    )


@router.post("/register", status_code=201)
async def register(
    payload: RegisterRequest,
    request: Request,
    directory: UserDirectory = Depends(get_user_directory),
):
    """Create a local patient account."""
    try:
        account = directory.register(
            username=payload.username,
            email=payload.email,
            password=payload.password,
            name=payload.name,
        )
    except ValueError as exc:
        raise ValidationFailed(str(exc))

    log_info("User registered", request=request, principal=account.id)
    return success_envelope(
        {
            "user": account.to_principal().to_public_dict(),
            "message": "User registered successfully",
        }
    )


@router.post("/refresh")
async def refresh(
    payload: RefreshRequest,
    request: Request,
    codec: SessionTokenCodec = Depends(get_token_codec),
):
    """Trade a refresh token for a fresh session token."""
    try:
        principal = codec.verify(payload.refresh_token, token_use=REFRESH_USE)
    except TokenError as exc:
        log_warning("Refresh rejected", request=request, reason=exc.__class__.__name__)
        raise InvalidCredential("Invalid or expired refresh token")

    return success_envelope({"token": codec.issue(principal)})


@router.get("/me")
async def me(principal: Principal = Depends(require_access(AccessRule()))):
    """Return the user encoded in the presented session token."""
    return success_envelope({"user": principal.to_public_dict()})
