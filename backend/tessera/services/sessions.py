"""Session store: one durable session record per logged-in device."""
from datetime import datetime, timedelta
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from tessera.models.renewal import RenewalCredential
from tessera.models.session import UserSession
from tessera.services.codec import new_session_id
from tessera.services.devices import DeviceDescriptor
from tessera.timeutil import from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


def create(
    db: Session,
    user_id: str,
    device: DeviceDescriptor,
    ttl: timedelta,
    now: datetime | None = None,
) -> UserSession:
    """Insert a new active session expiring ``ttl`` from now."""
    now = now or utcnow()
    session = UserSession(
        id=new_session_id(),
        user_id=user_id,
        device_info=device.to_json(),
        user_agent=device.user_agent or None,
        ip_address=device.ip_address,
        is_active=True,
        last_activity_at=to_iso(now),
        created_at=to_iso(now),
        expires_at=to_iso(now + ttl),
    )
    db.add(session)
    db.flush()
    return session


def get(db: Session, session_id: str) -> UserSession | None:
    return db.query(UserSession).filter(UserSession.id == session_id).first()


def touch(db: Session, session_id: str, now: datetime | None = None) -> bool:
    """Record activity on an active session.

    Inactive sessions are left untouched, and the timestamp never moves
    backwards. Returns whether a row was updated.
    """
    now_iso = to_iso(now or utcnow())
    updated = (
        db.query(UserSession)
        .filter(
            UserSession.id == session_id,
            UserSession.is_active.is_(True),
            UserSession.last_activity_at < now_iso,
        )
        .update({"last_activity_at": now_iso}, synchronize_session="fetch")
    )
    return updated > 0


def deactivate(db: Session, session_id: str, now: datetime | None = None) -> bool:
    """Deactivate one session. Returns False if it was already inactive or missing."""
    now_iso = to_iso(now or utcnow())
    updated = (
        db.query(UserSession)
        .filter(UserSession.id == session_id, UserSession.is_active.is_(True))
        .update({"is_active": False, "deactivated_at": now_iso}, synchronize_session="fetch")
    )
    return updated > 0


def deactivate_all_for_user(
    db: Session,
    user_id: str,
    except_session_id: str | None = None,
    now: datetime | None = None,
) -> list[str]:
    """Deactivate every active session of a user, optionally sparing one.

    Returns the ids of the sessions that were deactivated.
    """
    now_iso = to_iso(now or utcnow())
    query = db.query(UserSession.id).filter(
        UserSession.user_id == user_id,
        UserSession.is_active.is_(True),
    )
    if except_session_id:
        query = query.filter(UserSession.id != except_session_id)
    session_ids = [row.id for row in query.all()]
    if not session_ids:
        return []

    db.query(UserSession).filter(
        UserSession.id.in_(session_ids),
        UserSession.is_active.is_(True),
    ).update({"is_active": False, "deactivated_at": now_iso}, synchronize_session="fetch")
    return session_ids


def is_valid(db: Session, session_id: str, now: datetime | None = None) -> bool:
    """Active and not past its absolute expiry."""
    session = get(db, session_id)
    if session is None:
        return False
    return is_session_valid(session, now)


def is_session_valid(session: UserSession, now: datetime | None = None) -> bool:
    now = now or utcnow()
    return bool(session.is_active) and now < from_iso(session.expires_at)


def active_for_user(db: Session, user_id: str, now: datetime | None = None) -> list[UserSession]:
    now_iso = to_iso(now or utcnow())
    return (
        db.query(UserSession)
        .filter(
            UserSession.user_id == user_id,
            UserSession.is_active.is_(True),
            UserSession.expires_at > now_iso,
        )
        .order_by(UserSession.last_activity_at.desc())
        .all()
    )


def _delete_sessions(db: Session, session_ids: list[str]) -> int:
    if not session_ids:
        return 0
    # Credentials go first; SQLite does not enforce ON DELETE CASCADE by default.
    db.query(RenewalCredential).filter(RenewalCredential.session_id.in_(session_ids)).delete(
        synchronize_session="fetch"
    )
    return (
        db.query(UserSession)
        .filter(UserSession.id.in_(session_ids))
        .delete(synchronize_session="fetch")
    )


def sweep_expired(db: Session, now: datetime | None = None) -> int:
    """Delete sessions past their absolute expiry."""
    now_iso = to_iso(now or utcnow())
    session_ids = [
        row.id for row in db.query(UserSession.id).filter(UserSession.expires_at <= now_iso).all()
    ]
    deleted = _delete_sessions(db, session_ids)
    if deleted:
        logger.info(f"Swept {deleted} expired sessions")
    return deleted


def sweep_stale_inactive(db: Session, age: timedelta, now: datetime | None = None) -> int:
    """Delete deactivated sessions whose last activity is older than ``age``."""
    cutoff_iso = to_iso((now or utcnow()) - age)
    session_ids = [
        row.id
        for row in db.query(UserSession.id)
        .filter(UserSession.is_active.is_(False), UserSession.last_activity_at < cutoff_iso)
        .all()
    ]
    deleted = _delete_sessions(db, session_ids)
    if deleted:
        logger.info(f"Swept {deleted} inactive sessions older than {age.days} days")
    return deleted


def get_stats(db: Session, user_id: str, now: datetime | None = None) -> dict:
    now_iso = to_iso(now or utcnow())
    base = db.query(func.count(UserSession.id)).filter(UserSession.user_id == user_id)
    total = base.scalar() or 0
    active = (
        base.filter(UserSession.is_active.is_(True), UserSession.expires_at > now_iso).scalar() or 0
    )
    expired = base.filter(UserSession.expires_at <= now_iso).scalar() or 0
    return {"total": total, "active": active, "expired": expired, "inactive": total - active - expired}
