"""FastAPI dependency injection functions."""

import logging
from dataclasses import dataclass
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, Request, Response

from src.api.middleware.auth import AuthError, AuthErrorCode, decode_jwt
from src.api.middleware.error_handler import AuthenticationError, AuthorizationError
from src.core.config import get_settings
from src.schemas.auth import UserContext
from src.schemas.cart import CartOwner
from src.services.cart_repository import resolve_owner
from src.services.session_service import SessionService

logger = logging.getLogger(__name__)

SESSION_HEADER = "x-session-token"


def get_session_cookie_config() -> dict:
    """Get guest session cookie configuration from settings."""
    settings = get_settings()
    # SameSite=None is only accepted by browsers together with Secure
    samesite = "none" if settings.session_cookie_secure else "lax"
    return {
        "key": settings.session_cookie_name,
        "max_age": settings.session_cookie_max_age,
        "httponly": True,
        "secure": settings.session_cookie_secure,
        "samesite": samesite,
        "path": "/",
    }


@dataclass
class SessionContext:
    """Context for an anonymous guest session."""

    session_id: UUID
    session_token: str


@dataclass
class AuthContext:
    """Identity of the caller: a signed-in user or a guest session.

    When both are known (a guest who just signed in) the user wins.
    """

    user: UserContext | None = None
    session: SessionContext | None = None

    @property
    def is_authenticated(self) -> bool:
        """Check if this is an authenticated user (vs guest session)."""
        return self.user is not None

    @property
    def user_id(self) -> UUID | None:
        return self.user.user_id if self.user else None

    @property
    def session_id(self) -> UUID | None:
        return self.session.session_id if self.session else None

    @property
    def owner(self) -> CartOwner:
        """Cart owner for this caller.

        Raises:
            NoIdentityError: If there is neither a user nor a session.
        """
        return resolve_owner(self.user_id, self.session_id)


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def _decode_user(token: str) -> UserContext:
    try:
        return decode_jwt(token).to_user_context()
    except AuthError as e:
        message = "Token has expired" if e.code == AuthErrorCode.TOKEN_EXPIRED else e.message
        raise AuthenticationError(message) from e


async def get_current_user(
    authorization: Annotated[str, Header(description="Bearer token")] = "",
) -> UserContext:
    """Extract and validate the current user from the Authorization header.

    Raises:
        AuthenticationError: 401 if token is missing, invalid, or expired.
    """
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationError("Authorization header required. Expected: Bearer <token>")

    return _decode_user(token)


CurrentUser = Annotated[UserContext, Depends(get_current_user)]


def is_admin(user: UserContext) -> bool:
    """Check whether a user may see every customer's payment events."""
    if user.role == "admin":
        return True
    return bool(user.email) and user.email.lower() in get_settings().admin_emails_list


async def require_admin(user: CurrentUser) -> UserContext:
    """Require a signed-in operator for webhook monitoring.

    Raises:
        AuthenticationError: 401 if not signed in.
        AuthorizationError: 403 if the user is not an admin.
    """
    if not is_admin(user):
        logger.warning("User %s denied access to webhook monitoring", user.user_id)
        raise AuthorizationError("Admin access required")
    return user


AdminUser = Annotated[UserContext, Depends(require_admin)]


def get_session_token(request: Request) -> str | None:
    """Extract the guest session token from X-Session-Token or the cookie.

    The header is checked first since it still works when browsers block
    third-party cookies.
    """
    header_token = request.headers.get(SESSION_HEADER)
    if header_token:
        return header_token

    return request.cookies.get(get_session_cookie_config()["key"])


def set_session_cookie(response: Response, token: str) -> None:
    """Set the guest session cookie on a response."""
    config = get_session_cookie_config()
    response.set_cookie(
        key=config["key"],
        value=token,
        max_age=config["max_age"],
        httponly=config["httponly"],
        secure=config["secure"],
        samesite=config["samesite"],
        path=config["path"],
    )


async def _existing_session(request: Request, session_service: SessionService) -> SessionContext | None:
    token = get_session_token(request)
    if not token or not await session_service.is_session_valid(token):
        return None

    session = await session_service.get_session_by_token(token)
    if not session:
        return None
    return SessionContext(session_id=UUID(str(session["id"])), session_token=token)


def _user_from_header(authorization: str | None) -> UserContext | None:
    """Resolve the bearer user, if a bearer token was sent.

    A bearer token that fails verification raises; it never falls back
    to the guest session.
    """
    token = _bearer_token(authorization)
    if not token:
        return None
    return _decode_user(token)


async def get_current_user_or_session(
    request: Request,
    response: Response,
    authorization: Annotated[str | None, Header()] = None,
) -> AuthContext:
    """Get the signed-in user or the guest session, creating a session if needed.

    A new guest session's token is returned both as a cookie and in the
    ``X-Session-Token`` response header.

    Raises:
        AuthenticationError: 401 if a bearer token is sent but invalid.
    """
    user = _user_from_header(authorization)
    session_service = SessionService()
    session = await _existing_session(request, session_service)

    if user or session:
        return AuthContext(user=user, session=session)

    session_data, new_token = await session_service.create_session()
    set_session_cookie(response, new_token)
    response.headers[SESSION_HEADER] = new_token

    return AuthContext(
        session=SessionContext(session_id=UUID(str(session_data["id"])), session_token=new_token),
    )


async def get_required_user_or_session(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
) -> AuthContext:
    """Get the signed-in user or an existing guest session (no auto-create).

    Raises:
        AuthenticationError: 401 if no valid identity is present.
    """
    user = _user_from_header(authorization)
    session = await _existing_session(request, SessionService())
    if user or session:
        return AuthContext(user=user, session=session)

    raise AuthenticationError()


DualAuth = Annotated[AuthContext, Depends(get_current_user_or_session)]
RequiredDualAuth = Annotated[AuthContext, Depends(get_required_user_or_session)]
