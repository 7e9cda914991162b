"""Per-device login session model."""
from sqlalchemy import Boolean, Column, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship

from tessera.database import Base
from tessera.timeutil import now_iso


class UserSession(Base):
    """One session per logged-in device.

    Deactivated on logout or forced revocation and never reactivated.
    Physically removed only by the cleanup sweep.
    """

    __tablename__ = "user_sessions"
    __table_args__ = (
        Index("ix_user_sessions_user_active", "user_id", "is_active"),
        Index("ix_user_sessions_expires_at", "expires_at"),
        Index("ix_user_sessions_last_activity_at", "last_activity_at"),
    )

    id = Column(String(64), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    device_info = Column(Text, nullable=False, default="{}")  # JSON device descriptor
    user_agent = Column(String(255))
    ip_address = Column(String(45))
    is_active = Column(Boolean, nullable=False, default=True)
    last_activity_at = Column(String(26), nullable=False, default=now_iso)
    created_at = Column(String(26), nullable=False, default=now_iso)
    expires_at = Column(String(26), nullable=False)
    deactivated_at = Column(String(26))

    user = relationship("User", back_populates="sessions")
    renewal_credentials = relationship("RenewalCredential", back_populates="session")
