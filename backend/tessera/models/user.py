"""User model."""
import json
import uuid

from sqlalchemy import Column, String, Text
from sqlalchemy.orm import relationship

from tessera.database import Base
from tessera.timeutil import now_iso

DEFAULT_ROLES = ["customer"]


class User(Base):
    """User account. Only the id and role set are consumed by session code."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String(50), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    roles_json = Column("roles", Text, default=lambda: json.dumps(DEFAULT_ROLES))
    password_changed_at = Column(String(26))
    created_at = Column(String(26), default=now_iso)
    updated_at = Column(String(26), default=now_iso, onupdate=now_iso)

    sessions = relationship("UserSession", back_populates="user", cascade="all, delete-orphan")

    @property
    def roles(self) -> list[str]:
        try:
            roles = json.loads(self.roles_json or "[]")
        except ValueError:
            return []
        return [str(role) for role in roles]

    @roles.setter
    def roles(self, value: list[str]) -> None:
        self.roles_json = json.dumps(sorted(set(value)))
