"""Renewal credential store.

Only fingerprints are persisted. A session has at most one active renewal
credential; rotation swaps it for a fresh sibling inside the caller's
transaction, and the swap is guarded by a compare-and-swap on ``is_active``
so that two concurrent rotations of the same credential cannot both win.
"""
from datetime import datetime, timedelta
import logging

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tessera.models.renewal import RenewalCredential
from tessera.models.revocation import CredentialKind, RevocationReason
from tessera.services import revocation, sessions
from tessera.services.codec import fingerprint
from tessera.services.errors import Conflict, NotFound, RotationError, SessionInactive
from tessera.timeutil import from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


def _expiry_for(session_expires_at: str, now: datetime, ttl: timedelta) -> str:
    # A renewal credential never outlives its session.
    return to_iso(min(now + ttl, from_iso(session_expires_at)))


def issue(
    db: Session,
    session_id: str,
    secret: str,
    ttl: timedelta,
    now: datetime | None = None,
    rotated_from_id: int | None = None,
) -> RenewalCredential:
    """Store the fingerprint of ``secret`` as the session's renewal credential."""
    now = now or utcnow()
    session = sessions.get(db, session_id)
    if session is None or not sessions.is_session_valid(session, now):
        raise SessionInactive("Session is no longer active")

    credential = RenewalCredential(
        fingerprint=fingerprint(secret),
        session_id=session.id,
        user_id=session.user_id,
        device_info=session.device_info,
        is_active=True,
        created_at=to_iso(now),
        updated_at=to_iso(now),
        expires_at=_expiry_for(session.expires_at, now, ttl),
        rotated_from_id=rotated_from_id,
    )
    db.add(credential)
    db.flush()
    return credential


def find_by_fingerprint(db: Session, fp: str) -> RenewalCredential | None:
    """Look up a credential in any state."""
    return db.query(RenewalCredential).filter(RenewalCredential.fingerprint == fp).first()


def find_active_by_fingerprint(
    db: Session, fp: str, now: datetime | None = None
) -> RenewalCredential | None:
    now_iso = to_iso(now or utcnow())
    return (
        db.query(RenewalCredential)
        .filter(
            RenewalCredential.fingerprint == fp,
            RenewalCredential.is_active.is_(True),
            RenewalCredential.expires_at > now_iso,
        )
        .first()
    )


def _compare_and_deactivate(db: Session, credential_id: int, now_iso: str) -> bool:
    updated = (
        db.query(RenewalCredential)
        .filter(RenewalCredential.id == credential_id, RenewalCredential.is_active.is_(True))
        .update(
            {"is_active": False, "last_used_at": now_iso, "updated_at": now_iso},
            synchronize_session="fetch",
        )
    )
    return updated == 1


def rotate(
    db: Session,
    old_fp: str,
    new_secret: str,
    ttl: timedelta,
    now: datetime | None = None,
) -> RenewalCredential:
    """Replace the active credential ``old_fp`` with one for ``new_secret``.

    The old record is deactivated and ledger-stamped (reason ``rotation``) and
    the new record inserted for the same session. Nothing is committed here;
    the caller owns the transaction and must roll back on any error.

    Raises:
        NotFound: ``old_fp`` has no active record.
        SessionInactive: the owning session is deactivated or expired.
        Conflict: a concurrent rotation deactivated ``old_fp`` first.
        RotationError: the swap was only partially applied.
    """
    now = now or utcnow()
    now_iso = to_iso(now)

    old = find_active_by_fingerprint(db, old_fp, now)
    if old is None:
        raise NotFound("No active renewal credential for fingerprint")

    session = sessions.get(db, old.session_id)
    if session is None or not sessions.is_session_valid(session, now):
        raise SessionInactive("Session is no longer active")

    if not _compare_and_deactivate(db, old.id, now_iso):
        logger.warning(f"Lost rotation race for session {old.session_id}")
        raise Conflict("Renewal credential was already rotated")

    try:
        revocation.add(
            db,
            old_fp,
            CredentialKind.RENEWAL,
            old.expires_at,
            RevocationReason.ROTATION,
            user_id=old.user_id,
            session_id=old.session_id,
            now=now,
        )
        new = issue(db, old.session_id, new_secret, ttl, now=now, rotated_from_id=old.id)
    except SQLAlchemyError as exc:
        logger.exception(f"Rotation partially applied for session {old.session_id}")
        raise RotationError("Renewal credential rotation failed") from exc

    return new


def _revoke(
    db: Session,
    credentials: list[RenewalCredential],
    reason: RevocationReason,
    now: datetime,
) -> int:
    now_iso = to_iso(now)
    revoked = 0
    for credential in credentials:
        if not _compare_and_deactivate(db, credential.id, now_iso):
            continue
        revocation.add(
            db,
            credential.fingerprint,
            CredentialKind.RENEWAL,
            credential.expires_at,
            reason,
            user_id=credential.user_id,
            session_id=credential.session_id,
            now=now,
        )
        revoked += 1
    return revoked


def revoke_for_session(
    db: Session,
    session_id: str,
    reason: RevocationReason = RevocationReason.LOGOUT,
    now: datetime | None = None,
) -> int:
    """Deactivate and ledger-stamp every active credential of a session."""
    credentials = (
        db.query(RenewalCredential)
        .filter(RenewalCredential.session_id == session_id, RenewalCredential.is_active.is_(True))
        .all()
    )
    return _revoke(db, credentials, reason, now or utcnow())


def revoke_all_for_user(
    db: Session,
    user_id: str,
    reason: RevocationReason = RevocationReason.LOGOUT,
    except_session_id: str | None = None,
    now: datetime | None = None,
) -> int:
    """Deactivate and ledger-stamp every active credential of a user."""
    query = db.query(RenewalCredential).filter(
        RenewalCredential.user_id == user_id,
        RenewalCredential.is_active.is_(True),
    )
    if except_session_id:
        query = query.filter(RenewalCredential.session_id != except_session_id)
    return _revoke(db, query.all(), reason, now or utcnow())


def revoke_by_fingerprint(
    db: Session,
    fp: str,
    reason: RevocationReason = RevocationReason.LOGOUT,
    now: datetime | None = None,
) -> bool:
    credential = find_active_by_fingerprint(db, fp, now)
    if credential is None:
        return False
    return _revoke(db, [credential], reason, now or utcnow()) == 1


def sweep_expired(db: Session, now: datetime | None = None) -> int:
    now_iso = to_iso(now or utcnow())
    deleted = (
        db.query(RenewalCredential)
        .filter(RenewalCredential.expires_at <= now_iso)
        .delete(synchronize_session="fetch")
    )
    if deleted:
        logger.info(f"Swept {deleted} expired renewal credentials")
    return deleted


def sweep_stale_inactive(db: Session, age: timedelta, now: datetime | None = None) -> int:
    """Delete deactivated credentials not touched for longer than ``age``."""
    cutoff_iso = to_iso((now or utcnow()) - age)
    deleted = (
        db.query(RenewalCredential)
        .filter(RenewalCredential.is_active.is_(False), RenewalCredential.updated_at < cutoff_iso)
        .delete(synchronize_session="fetch")
    )
    if deleted:
        logger.info(f"Swept {deleted} inactive renewal credentials older than {age.days} days")
    return deleted


def get_stats(db: Session, user_id: str, now: datetime | None = None) -> dict:
    now_iso = to_iso(now or utcnow())
    base = db.query(func.count(RenewalCredential.id)).filter(RenewalCredential.user_id == user_id)
    total = base.scalar() or 0
    active = (
        base.filter(RenewalCredential.is_active.is_(True), RenewalCredential.expires_at > now_iso).scalar()
        or 0
    )
    expired = base.filter(RenewalCredential.expires_at <= now_iso).scalar() or 0
    return {"total": total, "active": active, "expired": expired, "inactive": total - active - expired}
