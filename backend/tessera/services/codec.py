"""Credential codec: signed access credentials and secret fingerprints."""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import secrets

from jose import ExpiredSignatureError, JWTError, jwt

from tessera.config import get_settings
from tessera.services.errors import Unauthorized

ACCESS_TOKEN_TYPE = "access"


class InvalidToken(Unauthorized):
    """Bad signature, malformed structure, wrong type or expired."""

    pass


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of an access credential."""

    user_id: str
    roles: list[str]
    session_id: str
    expires_at: datetime


def issue(
    user_id: str,
    roles: list[str],
    session_id: str,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed access credential."""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (
        expires_delta if expires_delta is not None else timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode = {
        "sub": user_id,
        "roles": list(roles),
        "sid": session_id,
        "exp": expire,
        "type": ACCESS_TOKEN_TYPE,
        # Two pairs minted in the same second must still differ.
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def verify(token: str) -> AccessClaims:
    """Verify an access credential and return its claims.

    Raises:
        InvalidToken: signature mismatch, malformed token, wrong type or expired.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except ExpiredSignatureError as exc:
        raise InvalidToken("Access token has expired") from exc
    except JWTError as exc:
        raise InvalidToken("Invalid access token") from exc

    if payload.get("type") != ACCESS_TOKEN_TYPE:
        raise InvalidToken("Invalid token type")

    user_id = payload.get("sub")
    session_id = payload.get("sid")
    exp = payload.get("exp")
    roles = payload.get("roles", [])
    if not user_id or not session_id or exp is None or not isinstance(roles, list):
        raise InvalidToken("Invalid access token")

    return AccessClaims(
        user_id=user_id,
        roles=[str(role) for role in roles],
        session_id=session_id,
        expires_at=datetime.fromtimestamp(int(exp), tz=timezone.utc).replace(tzinfo=None),
    )


def fingerprint(secret: str) -> str:
    """Keyed one-way hash of a secret, used as its storage key."""
    salt = get_settings().effective_fingerprint_salt
    return hmac.new(salt.encode("utf-8"), secret.encode("utf-8"), hashlib.sha256).hexdigest()


def new_renewal_secret() -> str:
    """Generate an opaque, unguessable renewal secret."""
    return secrets.token_urlsafe(48)


def new_session_id() -> str:
    return secrets.token_hex(32)
