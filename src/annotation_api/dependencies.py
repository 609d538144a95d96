"""
FastAPI dependencies: service providers and bearer-token authentication.

Services are created once in main and stored on app.state; the providers
here only look them up, so tests can swap them on the running app.
"""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, Request

from .annotation_manager import AnnotationManager
from .errors import Forbidden, NotFound, Unauthenticated
from .events import ProgressBroadcaster
from .identity import IdentityService, UserRecord
from .models import Capability, has_capability
from .tokens import TokenService

FORBIDDEN_MESSAGES = {
    Capability.MANAGE_ANNOTATIONS: "Access denied. Content creator role required.",
    Capability.VIEW_ANNOTATIONS: "Access denied. Required role not found.",
}


def get_annotation_manager(request: Request) -> AnnotationManager:
    return request.app.state.annotation_manager


def get_identity_service(request: Request) -> IdentityService:
    return request.app.state.identity_service


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def get_broadcaster(request: Request) -> ProgressBroadcaster:
    return request.app.state.broadcaster


def bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization")
    if not header:
        raise Unauthenticated("Authorization header required")
    parts = header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        raise Unauthenticated("Invalid authorization header format. Use: Bearer <token>")
    return parts[1]


def get_current_user(
    token: str = Depends(bearer_token),
    tokens: TokenService = Depends(get_token_service),
    identity: IdentityService = Depends(get_identity_service),
) -> UserRecord:
    claims = tokens.decode_token(token)
    try:
        return identity.get_user(claims.user_id)
    except NotFound as exc:
        raise Unauthenticated("User not found") from exc


def require_capability(capability: Capability) -> Callable[..., UserRecord]:
    """Dependency factory: the current user, if their role grants `capability`."""

    def checker(user: UserRecord = Depends(get_current_user)) -> UserRecord:
        if not has_capability(user.role, capability):
            raise Forbidden(FORBIDDEN_MESSAGES[capability])
        return user

    return checker
