"""Revocation ledger: a denylist of credential fingerprints.

An entry only matters while the credential it names could still be used,
i.e. while ``expiry_of_original`` is in the future. Absence of an entry means
"not revoked"; the ledger is never consulted as proof that a credential is
valid.
"""
from datetime import datetime
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from tessera.models.revocation import CredentialKind, RevocationEntry, RevocationReason
from tessera.timeutil import to_iso, utcnow

logger = logging.getLogger(__name__)


def add(
    db: Session,
    fingerprint: str,
    kind: CredentialKind,
    original_expiry: datetime | str,
    reason: RevocationReason | str,
    user_id: str | None = None,
    session_id: str | None = None,
    now: datetime | None = None,
) -> RevocationEntry:
    """Append a fingerprint to the ledger.

    Adding a fingerprint that is already present returns the existing entry;
    the first recorded reason is kept.
    """
    existing = db.query(RevocationEntry).filter(RevocationEntry.fingerprint == fingerprint).first()
    if existing:
        return existing

    entry = RevocationEntry(
        fingerprint=fingerprint,
        credential_kind=CredentialKind(kind),
        expiry_of_original=original_expiry if isinstance(original_expiry, str) else to_iso(original_expiry),
        blacklisted_at=to_iso(now or utcnow()),
        reason=RevocationReason(reason).value,
        user_id=user_id,
        session_id=session_id,
    )
    db.add(entry)
    db.flush()
    return entry


def is_revoked(db: Session, fingerprint: str, now: datetime | None = None) -> bool:
    """True iff an entry exists whose original credential has not yet expired."""
    now_iso = to_iso(now or utcnow())
    return db.query(
        db.query(RevocationEntry)
        .filter(
            RevocationEntry.fingerprint == fingerprint,
            RevocationEntry.expiry_of_original > now_iso,
        )
        .exists()
    ).scalar()


def entries_for_user(db: Session, user_id: str) -> list[RevocationEntry]:
    return (
        db.query(RevocationEntry)
        .filter(RevocationEntry.user_id == user_id)
        .order_by(RevocationEntry.blacklisted_at.desc())
        .all()
    )


def entries_for_session(db: Session, session_id: str) -> list[RevocationEntry]:
    return (
        db.query(RevocationEntry)
        .filter(RevocationEntry.session_id == session_id)
        .order_by(RevocationEntry.blacklisted_at.desc())
        .all()
    )


def sweep_expired(db: Session, now: datetime | None = None) -> int:
    """Delete entries whose original credential has expired."""
    now_iso = to_iso(now or utcnow())
    deleted = (
        db.query(RevocationEntry)
        .filter(RevocationEntry.expiry_of_original <= now_iso)
        .delete(synchronize_session="fetch")
    )
    if deleted:
        logger.info(f"Swept {deleted} expired revocation entries")
    return deleted


def get_stats(db: Session, now: datetime | None = None) -> dict:
    """Ledger-wide counts: total, still-effective, moot, by kind and by reason."""
    now_iso = to_iso(now or utcnow())
    total = db.query(func.count(RevocationEntry.id)).scalar() or 0
    active = (
        db.query(func.count(RevocationEntry.id))
        .filter(RevocationEntry.expiry_of_original > now_iso)
        .scalar()
        or 0
    )
    by_kind = {
        CredentialKind(kind).value: count
        for kind, count in db.query(RevocationEntry.credential_kind, func.count(RevocationEntry.id))
        .group_by(RevocationEntry.credential_kind)
        .all()
    }
    by_reason = dict(
        db.query(RevocationEntry.reason, func.count(RevocationEntry.id))
        .group_by(RevocationEntry.reason)
        .all()
    )
    return {
        "total": total,
        "active": active,
        "expired": total - active,
        "by_kind": by_kind,
        "by_reason": by_reason,
    }
