"""Authentication API endpoints."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from tessera.api.deps import get_auth_context, get_current_user, get_db, require_role
from tessera.models.user import DEFAULT_ROLES, User
from tessera.schemas.auth import (
    BlacklistStatsResponse,
    CountStats,
    LogoutRequest,
    MessageResponse,
    PasswordUpdate,
    RefreshRequest,
    RevocationEntryResponse,
    RevokeRenewalRequest,
    SessionResponse,
    TokenPair,
    TokenStatsResponse,
    UserLogin,
    UserRegister,
    UserResponse,
)
from tessera.services import codec, issuer, renewal, revocation, sessions
from tessera.services.devices import DeviceDescriptor, describe_request
from tessera.services.errors import (
    AuthError,
    Conflict,
    NotFound,
    RotationError,
    SessionExpired,
    Unauthorized,
)
from tessera.services.identity import get_password_hash
from tessera.services.issuer import AuthContext, LogoutScope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def raise_for_auth_error(exc: AuthError) -> None:
    """Translate a service error into the matching HTTP response."""
    if isinstance(exc, SessionExpired):
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(exc)) from exc
    if isinstance(exc, RotationError):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Credential rotation failed",
        ) from exc
    if isinstance(exc, (Unauthorized, NotFound, Conflict)):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication failed") from exc


def _token_pair(issued: issuer.IssuedCredentials) -> TokenPair:
    return TokenPair(access=issued.access, renewal=issued.renewal, session_id=issued.session_id)


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        roles=user.roles,
        created_at=user.created_at,
    )


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register(user_data: UserRegister, db: Session = Depends(get_db)):
    """Register a new user."""
    # Check username
    if db.query(User).filter(User.username == user_data.username).first():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username already registered",
        )

    # Check email
    if db.query(User).filter(User.email == user_data.email).first():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered",
        )

    user = User(
        username=user_data.username,
        email=user_data.email,
        password_hash=get_password_hash(user_data.password),
    )
    user.roles = DEFAULT_ROLES
    db.add(user)
    db.commit()
    db.refresh(user)

    return _user_response(user)


@router.post("/login", response_model=TokenPair)
def login(user_data: UserLogin, request: Request, db: Session = Depends(get_db)):
    """Verify the identity assertion and open a session for this device."""
    try:
        issued = issuer.login(db, user_data.username, user_data.password, describe_request(request))
    except AuthError as exc:
        raise_for_auth_error(exc)
    return _token_pair(issued)


@router.post("/refresh-token", response_model=TokenPair)
def refresh_token(payload: RefreshRequest, request: Request, db: Session = Depends(get_db)):
    """Rotate the renewal credential and mint a new access credential."""
    try:
        issued = issuer.renew(
            db,
            payload.renewal_secret,
            device=describe_request(request),
            session_id=payload.session_id,
        )
    except AuthError as exc:
        raise_for_auth_error(exc)
    return _token_pair(issued)


@router.post("/revoke-refresh-token", response_model=MessageResponse)
def revoke_refresh_token(payload: RevokeRenewalRequest, db: Session = Depends(get_db)):
    """Deactivate a renewal credential without needing an access credential."""
    revoked = renewal.revoke_by_fingerprint(db, codec.fingerprint(payload.renewal_secret))
    db.commit()
    if not revoked:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Renewal credential not found")
    return MessageResponse(message="Renewal credential revoked")


@router.post("/logout", response_model=MessageResponse)
def logout(
    payload: LogoutRequest | None = None,
    db: Session = Depends(get_db),
    context: AuthContext = Depends(get_auth_context),
):
    """End the calling session, or every session of the user."""
    scope = payload.scope if payload else LogoutScope.THIS_SESSION
    try:
        count = issuer.logout(
            db,
            context.session_id,
            scope=scope,
            access_token=context.token,
            claims=context.claims,
        )
    except AuthError as exc:
        raise_for_auth_error(exc)
    if scope == LogoutScope.ALL_SESSIONS:
        return MessageResponse(message=f"Logged out from {count} device(s)")
    return MessageResponse(message="Successfully logged out")


@router.post("/logout-all-devices", response_model=MessageResponse)
def logout_all_devices(
    db: Session = Depends(get_db),
    context: AuthContext = Depends(get_auth_context),
):
    """End every session of the user, including this one."""
    return logout(LogoutRequest(scope=LogoutScope.ALL_SESSIONS), db=db, context=context)


@router.get("/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)):
    """Return the verified user id and role set."""
    return _user_response(current_user)


@router.get("/sessions", response_model=list[SessionResponse])
def list_sessions(
    db: Session = Depends(get_db),
    context: AuthContext = Depends(get_auth_context),
):
    """List the caller's active sessions, most recently used first."""
    result = []
    for session in sessions.active_for_user(db, context.user.id):
        device = DeviceDescriptor.from_json(session.device_info)
        result.append(SessionResponse(
            id=session.id,
            browser=device.browser,
            os=device.os,
            device=device.device,
            ip_address=session.ip_address,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
            expires_at=session.expires_at,
            is_current=session.id == context.session_id,
        ))
    return result


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
def revoke_session(
    session_id: str,
    db: Session = Depends(get_db),
    context: AuthContext = Depends(get_auth_context),
):
    """Log out one of the caller's devices."""
    try:
        issuer.revoke_session(db, context.user.id, session_id)
    except NotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    except AuthError as exc:
        raise_for_auth_error(exc)
    return MessageResponse(message="Session revoked")


@router.delete("/sessions", response_model=MessageResponse)
def revoke_other_sessions(
    db: Session = Depends(get_db),
    context: AuthContext = Depends(get_auth_context),
):
    """Log out everywhere except the calling device."""
    try:
        count = issuer.revoke_other_sessions(db, context.user.id, context.session_id)
    except AuthError as exc:
        raise_for_auth_error(exc)
    return MessageResponse(message=f"Revoked {count} other session(s)")


@router.patch("/update-password", response_model=MessageResponse)
def update_password(
    payload: PasswordUpdate,
    db: Session = Depends(get_db),
    context: AuthContext = Depends(get_auth_context),
):
    """Change the password and force every other session to log in again."""
    try:
        count = issuer.change_password(db, context, payload.current_password, payload.new_password)
    except Unauthorized as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except AuthError as exc:
        raise_for_auth_error(exc)
    return MessageResponse(message=f"Password updated; {count} other session(s) signed out")


@router.get("/token-stats", response_model=TokenStatsResponse)
def token_stats(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Session and renewal credential counts for the caller."""
    return TokenStatsResponse(
        sessions=CountStats(**sessions.get_stats(db, current_user.id)),
        renewal_credentials=CountStats(**renewal.get_stats(db, current_user.id)),
    )


@router.get("/blacklist", response_model=list[RevocationEntryResponse])
def user_blacklist(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Revocation ledger entries recorded against the caller."""
    return [
        RevocationEntryResponse(
            credential_kind=entry.credential_kind.value,
            reason=entry.reason,
            session_id=entry.session_id,
            blacklisted_at=entry.blacklisted_at,
            expiry_of_original=entry.expiry_of_original,
        )
        for entry in revocation.entries_for_user(db, current_user.id)
    ]


@router.get("/admin/blacklist-stats", response_model=BlacklistStatsResponse)
def blacklist_stats(
    db: Session = Depends(get_db),
    context: AuthContext = Depends(require_role("admin")),
):
    """Ledger-wide statistics (admin only)."""
    return BlacklistStatsResponse(**revocation.get_stats(db))
