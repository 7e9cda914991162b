"""Shared API dependencies."""
from collections.abc import Callable

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from tessera.database import get_db
from tessera.models.user import User
from tessera.services.errors import AuthError
from tessera.services.issuer import AuthContext, authenticate

bearer_scheme = HTTPBearer(auto_error=False)

__all__ = ["get_db", "get_auth_context", "get_current_user", "require_role"]


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_auth_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    x_session_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> AuthContext:
    """Verify the bearer access credential and touch its session."""
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise _unauthorized("Not authenticated")

    try:
        context = authenticate(db, credentials.credentials)
    except AuthError as exc:
        raise _unauthorized(str(exc)) from exc

    if x_session_id and x_session_id != context.session_id:
        raise _unauthorized("Session header does not match token")
    return context


def get_current_user(context: AuthContext = Depends(get_auth_context)) -> User:
    """Resolve the authenticated user."""
    return context.user


def require_role(role: str) -> Callable[..., AuthContext]:
    """Dependency factory restricting an endpoint to holders of ``role``."""

    def checker(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if role not in context.claims.roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return context

    return checker
