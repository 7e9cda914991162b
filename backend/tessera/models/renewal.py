"""Renewal (refresh) credential model."""
from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from tessera.database import Base
from tessera.timeutil import now_iso


class RenewalCredential(Base):
    """Fingerprint of a renewal secret, bound to exactly one session.

    The raw secret is never stored.
    """

    __tablename__ = "renewal_credentials"
    __table_args__ = (
        Index("ix_renewal_credentials_session_active", "session_id", "is_active"),
        Index("ix_renewal_credentials_user_active", "user_id", "is_active"),
        Index("ix_renewal_credentials_expires_at", "expires_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    fingerprint = Column(String(64), unique=True, nullable=False, index=True)
    session_id = Column(String(64), ForeignKey("user_sessions.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), nullable=False)
    device_info = Column(Text, nullable=False, default="{}")
    is_active = Column(Boolean, nullable=False, default=True)
    last_used_at = Column(String(26))
    created_at = Column(String(26), nullable=False, default=now_iso)
    updated_at = Column(String(26), nullable=False, default=now_iso, onupdate=now_iso)
    expires_at = Column(String(26), nullable=False)
    rotated_from_id = Column(Integer, ForeignKey("renewal_credentials.id", ondelete="SET NULL"))

    session = relationship("UserSession", back_populates="renewal_credentials")
