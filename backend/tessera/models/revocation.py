"""Revocation ledger model."""
import enum

from sqlalchemy import Column, Enum, Index, Integer, String

from tessera.database import Base
from tessera.timeutil import now_iso


class CredentialKind(str, enum.Enum):
    ACCESS = "access"
    RENEWAL = "renewal"


class RevocationReason(str, enum.Enum):
    LOGOUT = "logout"
    ROTATION = "rotation"
    PASSWORD_CHANGE = "password_change"
    SESSION_REVOKED = "session_revoked"
    SECURITY_EVENT = "security_event"


class RevocationEntry(Base):
    """Denylisted credential fingerprint. Rows are appended, never updated."""

    __tablename__ = "revocation_entries"
    __table_args__ = (
        Index("ix_revocation_entries_expiry", "expiry_of_original"),
        Index("ix_revocation_entries_user", "user_id"),
        Index("ix_revocation_entries_session", "session_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    fingerprint = Column(String(64), unique=True, nullable=False, index=True)
    credential_kind = Column(
        Enum(CredentialKind, values_callable=lambda kinds: [k.value for k in kinds], native_enum=False),
        nullable=False,
    )
    expiry_of_original = Column(String(26), nullable=False)
    blacklisted_at = Column(String(26), nullable=False, default=now_iso)
    reason = Column(String(100), nullable=False, default=RevocationReason.LOGOUT.value)
    user_id = Column(String(36))
    session_id = Column(String(64))
