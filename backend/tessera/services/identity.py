"""Identity assertions: username/email + password checked against a bcrypt hash."""
import logging

import bcrypt
from sqlalchemy.orm import Session

from tessera.models.user import User
from tessera.services.errors import Unauthorized

logger = logging.getLogger(__name__)

# Compared against when the user does not exist so both paths cost one bcrypt check.
_DUMMY_HASH = bcrypt.hashpw(b"tessera-dummy-password", bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"),
            hashed_password.encode("utf-8"),
        )
    except ValueError:
        return False


def get_password_hash(password: str) -> str:
    """Hash a password."""
    return bcrypt.hashpw(
        password.encode("utf-8"),
        bcrypt.gensalt(),
    ).decode("utf-8")


def find_user(db: Session, login: str) -> User | None:
    """Find a user by username or email."""
    return db.query(User).filter((User.username == login) | (User.email == login)).first()


def verify_identity(db: Session, login: str, password: str) -> User:
    """Resolve an identity assertion to a user.

    Raises:
        Unauthorized: unknown user or wrong password (indistinguishable).
    """
    user = find_user(db, login)
    if user is None:
        verify_password(password, _DUMMY_HASH)
        raise Unauthorized("Incorrect username or password")
    if not verify_password(password, user.password_hash):
        logger.info(f"Failed login for user {user.id}")
        raise Unauthorized("Incorrect username or password")
    return user
