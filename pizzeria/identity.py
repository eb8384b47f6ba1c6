from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request

from shared.security_config import is_valid_session_id
from shared.utils import UnauthorizedException, verify_token


@dataclass(frozen=True)
class IdentityContext:
    """Who is calling: an authenticated user or an anonymous guest session, never both."""

    user_id: Optional[str] = None
    session_id: Optional[str] = None
    role: Optional[str] = None

    def __post_init__(self):
        if not self.user_id and not self.session_id:
            raise UnauthorizedException("Session ID or authentication required")
        if self.user_id and self.session_id:
            # An authenticated caller owns its documents by user id only
            object.__setattr__(self, "session_id", None)

    @classmethod
    def for_user(cls, user_id: str, role: Optional[str] = "customer") -> "IdentityContext":
        return cls(user_id=user_id, role=role)

    @classmethod
    def for_guest(cls, session_id: str) -> "IdentityContext":
        return cls(session_id=session_id)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def owner_filter(self) -> dict:
        if self.user_id:
            return {"user_id": self.user_id}
        return {"session_id": self.session_id}

    def owns(self, document: dict) -> bool:
        if self.user_id:
            return document.get("user_id") == self.user_id
        return document.get("session_id") == self.session_id


def _bearer_payload(authorization: Optional[str]) -> Optional[dict]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    try:
        return verify_token(token)
    except UnauthorizedException:
        # A stale token should not lock a guest out of their cart
        return None


async def get_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_session_id: Optional[str] = Header(None),
) -> IdentityContext:
    payload = _bearer_payload(authorization)
    if payload:
        identity = IdentityContext.for_user(payload["sub"], payload.get("role"))
    elif x_session_id:
        if not is_valid_session_id(x_session_id):
            raise UnauthorizedException("Invalid session ID")
        identity = IdentityContext.for_guest(x_session_id)
    else:
        raise UnauthorizedException("Session ID or authentication required")
    request.state.identity = identity
    return identity


async def get_user_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> IdentityContext:
    payload = _bearer_payload(authorization)
    if not payload:
        raise UnauthorizedException("Authentication required")
    identity = IdentityContext.for_user(payload["sub"], payload.get("role"))
    request.state.identity = identity
    return identity


async def get_optional_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_session_id: Optional[str] = Header(None),
) -> Optional[IdentityContext]:
    try:
        return await get_identity(request, authorization, x_session_id)
    except UnauthorizedException:
        return None
