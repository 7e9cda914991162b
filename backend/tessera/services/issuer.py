"""Token issuer: login, renewal, logout and access-credential checks.

This module is the only place credential pairs are minted. Each public
function is one unit of work: it commits on success and rolls back before
re-raising on failure.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
import enum
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tessera.config import get_settings
from tessera.models.renewal import RenewalCredential
from tessera.models.revocation import CredentialKind, RevocationReason
from tessera.models.session import UserSession
from tessera.models.user import User
from tessera.services import codec, renewal, revocation, sessions
from tessera.services.devices import DeviceDescriptor
from tessera.services.errors import AuthError, NotFound, RotationError, SessionExpired, Unauthorized
from tessera.services.identity import get_password_hash, verify_identity, verify_password
from tessera.timeutil import from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


class LogoutScope(str, enum.Enum):
    THIS_SESSION = "this_session"
    ALL_SESSIONS = "all_sessions"


@dataclass(frozen=True)
class IssuedCredentials:
    access: str
    renewal: str
    session_id: str


@dataclass(frozen=True)
class AuthContext:
    """Verified identity for one authenticated call."""

    user: User
    claims: codec.AccessClaims
    token: str

    @property
    def session_id(self) -> str:
        return self.claims.session_id


def _session_ttl() -> timedelta:
    return timedelta(days=get_settings().session_expire_days)


def _renewal_ttl() -> timedelta:
    return timedelta(days=get_settings().refresh_token_expire_days)


def _commit(db: Session) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Credential transaction failed to commit")
        raise RotationError("Credential state could not be persisted") from exc


def _internal_failure(db: Session) -> RotationError:
    db.rollback()
    logger.exception("Credential transaction failed")
    return RotationError("Credential state could not be updated")


def open_session(
    db: Session,
    user: User,
    device: DeviceDescriptor,
    now: datetime | None = None,
) -> IssuedCredentials:
    """Create a session for an already-verified user and mint its first pair.

    When the user already holds ``max_sessions_per_user`` active sessions, the
    least recently active ones are ended in the same unit of work.
    """
    now = now or utcnow()
    try:
        _enforce_session_cap(db, user.id, now)
        session = sessions.create(db, user.id, device, _session_ttl(), now=now)
        session_id = session.id
        secret = codec.new_renewal_secret()
        renewal.issue(db, session_id, secret, _renewal_ttl(), now=now)
        access = codec.issue(user.id, user.roles, session_id)
    except AuthError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        raise _internal_failure(db) from exc
    _commit(db)

    logger.info(f"Opened session for user {user.id} ({device.browser}/{device.os})")
    return IssuedCredentials(access=access, renewal=secret, session_id=session_id)


def _enforce_session_cap(db: Session, user_id: str, now: datetime) -> None:
    cap = get_settings().max_sessions_per_user
    if cap <= 0:
        return
    # Ordered most recently active first.
    active = sessions.active_for_user(db, user_id, now=now)
    for oldest in active[cap - 1:]:
        _end_session(db, oldest.id, RevocationReason.SESSION_REVOKED, now)
        logger.info(f"Session cap reached for user {user_id}, ended session {oldest.id}")


def login(
    db: Session,
    login_name: str,
    password: str,
    device: DeviceDescriptor,
    now: datetime | None = None,
) -> IssuedCredentials:
    """Verify an identity assertion and open a new session for it.

    Raises:
        Unauthorized: the assertion was rejected.
    """
    user = verify_identity(db, login_name, password)
    return open_session(db, user, device, now=now)


def renew(
    db: Session,
    renewal_secret: str,
    device: DeviceDescriptor | None = None,
    session_id: str | None = None,
    now: datetime | None = None,
) -> IssuedCredentials:
    """Exchange a renewal secret for a fresh access + renewal pair.

    Raises:
        Unauthorized: unknown, revoked, rotated or expired renewal credential.
        SessionExpired: the owning session is deactivated or past expiry.
        Conflict: a concurrent renewal of the same credential won.
        RotationError: the rotation could not be applied atomically.
    """
    now = now or utcnow()
    fp = codec.fingerprint(renewal_secret)
    try:
        credential, user = _renewable(db, fp, session_id, now)
    except SQLAlchemyError as exc:
        raise _internal_failure(db) from exc
    owning_session_id = credential.session_id

    if device is not None and device.fingerprint:
        original = DeviceDescriptor.from_json(credential.device_info)
        if original.fingerprint and original.fingerprint != device.fingerprint:
            logger.warning(f"Renewal for session {owning_session_id} came from a different device")

    new_secret = codec.new_renewal_secret()
    try:
        renewal.rotate(db, fp, new_secret, _renewal_ttl(), now=now)
        sessions.touch(db, owning_session_id, now=now)
        access = codec.issue(user.id, user.roles, owning_session_id)
    except AuthError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        raise _internal_failure(db) from exc
    _commit(db)

    logger.info(f"Renewed credentials for session {owning_session_id}")
    return IssuedCredentials(access=access, renewal=new_secret, session_id=owning_session_id)


def _renewable(
    db: Session, fp: str, session_id: str | None, now: datetime
) -> tuple[RenewalCredential, User]:
    """Run the ordered checks a renewal credential must pass before rotation."""
    credential = renewal.find_by_fingerprint(db, fp)
    if credential is None:
        raise Unauthorized("Invalid renewal credential")
    if session_id is not None and credential.session_id != session_id:
        raise Unauthorized("Renewal credential does not belong to this session")

    owning_session_id = credential.session_id
    if not sessions.is_valid(db, owning_session_id, now=now):
        raise SessionExpired("Session has ended")

    if revocation.is_revoked(db, fp, now=now):
        logger.warning(f"Rejected replayed renewal credential for session {owning_session_id}")
        raise Unauthorized("Renewal credential has been revoked")
    if not credential.is_active or from_iso(credential.expires_at) <= now:
        raise Unauthorized("Renewal credential is no longer active")

    user = db.get(User, credential.user_id)
    if user is None:
        raise Unauthorized("User not found")
    return credential, user


def revoke_access_token(
    db: Session,
    token: str,
    claims: codec.AccessClaims,
    reason: RevocationReason = RevocationReason.LOGOUT,
) -> None:
    revocation.add(
        db,
        codec.fingerprint(token),
        CredentialKind.ACCESS,
        claims.expires_at,
        reason,
        user_id=claims.user_id,
        session_id=claims.session_id,
    )


def _end_session(db: Session, session_id: str, reason: RevocationReason, now: datetime) -> None:
    sessions.deactivate(db, session_id, now=now)
    renewal.revoke_for_session(db, session_id, reason=reason, now=now)


def logout(
    db: Session,
    session_id: str,
    scope: LogoutScope = LogoutScope.THIS_SESSION,
    access_token: str | None = None,
    claims: codec.AccessClaims | None = None,
    now: datetime | None = None,
) -> int:
    """Deactivate the session (or all of the user's sessions) and stamp the ledger.

    Returns the number of sessions ended.
    """
    now = now or utcnow()
    session = sessions.get(db, session_id)
    if session is None:
        raise NotFound("Session not found")
    user_id = session.user_id

    try:
        if scope == LogoutScope.ALL_SESSIONS:
            ended = sessions.deactivate_all_for_user(db, user_id, now=now)
            renewal.revoke_all_for_user(db, user_id, reason=RevocationReason.LOGOUT, now=now)
            count = len(ended)
        else:
            count = 1 if sessions.deactivate(db, session_id, now=now) else 0
            renewal.revoke_for_session(db, session_id, reason=RevocationReason.LOGOUT, now=now)
        if access_token and claims:
            revoke_access_token(db, access_token, claims)
    except AuthError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        raise _internal_failure(db) from exc
    _commit(db)

    logger.info(f"Logged out user {user_id} (scope={LogoutScope(scope).value}, sessions={count})")
    return count


def revoke_session(
    db: Session,
    user_id: str,
    session_id: str,
    reason: RevocationReason = RevocationReason.SESSION_REVOKED,
    now: datetime | None = None,
) -> None:
    """End one of the user's own sessions.

    Raises:
        NotFound: no such session for this user.
    """
    now = now or utcnow()
    session = sessions.get(db, session_id)
    if session is None or session.user_id != user_id:
        raise NotFound("Session not found")
    try:
        _end_session(db, session_id, reason, now)
    except AuthError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        raise _internal_failure(db) from exc
    _commit(db)
    logger.info(f"Revoked session {session_id} for user {user_id}")


def revoke_other_sessions(
    db: Session,
    user_id: str,
    current_session_id: str,
    reason: RevocationReason = RevocationReason.SESSION_REVOKED,
    now: datetime | None = None,
    commit: bool = True,
) -> int:
    """Log out everywhere except ``current_session_id``. Returns sessions ended."""
    now = now or utcnow()
    try:
        ended = sessions.deactivate_all_for_user(db, user_id, except_session_id=current_session_id, now=now)
        renewal.revoke_all_for_user(db, user_id, reason=reason, except_session_id=current_session_id, now=now)
    except AuthError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        raise _internal_failure(db) from exc
    if commit:
        _commit(db)
    if ended:
        logger.info(f"Revoked {len(ended)} other sessions for user {user_id} ({RevocationReason(reason).value})")
    return len(ended)


def change_password(
    db: Session,
    context: AuthContext,
    current_password: str,
    new_password: str,
    now: datetime | None = None,
) -> int:
    """Re-hash the password and force-revoke every other session.

    Returns the number of sessions ended.
    """
    now = now or utcnow()
    user = context.user
    if not verify_password(current_password, user.password_hash):
        raise Unauthorized("Current password is incorrect")

    user.password_hash = get_password_hash(new_password)
    user.password_changed_at = to_iso(now)
    ended = revoke_other_sessions(
        db,
        user.id,
        context.session_id,
        reason=RevocationReason.PASSWORD_CHANGE,
        now=now,
        commit=False,
    )
    _commit(db)
    return ended


def authenticate(db: Session, token: str, now: datetime | None = None) -> AuthContext:
    """Verify an access credential for one call and record session activity.

    Raises:
        Unauthorized: invalid, expired or revoked token, or its session ended.
    """
    now = now or utcnow()
    claims = codec.verify(token)

    if revocation.is_revoked(db, codec.fingerprint(token), now=now):
        raise Unauthorized("Token has been revoked")

    session: UserSession | None = sessions.get(db, claims.session_id)
    if session is None or session.user_id != claims.user_id or not sessions.is_session_valid(session, now):
        raise Unauthorized("Session is no longer active")

    user = db.get(User, claims.user_id)
    if user is None:
        raise Unauthorized("User not found")

    sessions.touch(db, session.id, now=now)
    _commit(db)
    return AuthContext(user=user, claims=claims, token=token)
