"""Authentication schemas."""
from pydantic import BaseModel, EmailStr, Field

from tessera.services.issuer import LogoutScope


class UserRegister(BaseModel):
    """User registration request."""

    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=8)


class UserLogin(BaseModel):
    """Identity assertion presented at login."""

    username: str  # Can be username or email
    password: str


class TokenPair(BaseModel):
    """Credential pair returned by login and renewal."""

    access: str
    renewal: str
    session_id: str
    token_type: str = "bearer"


class RefreshRequest(BaseModel):
    """Renewal request."""

    renewal_secret: str = Field(..., min_length=1)
    session_id: str | None = None


class RevokeRenewalRequest(BaseModel):
    renewal_secret: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    scope: LogoutScope = LogoutScope.THIS_SESSION


class PasswordUpdate(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8)


class UserResponse(BaseModel):
    """User info response."""

    id: str
    username: str
    email: str
    roles: list[str]
    created_at: str

    class Config:
        from_attributes = True


class SessionResponse(BaseModel):
    """One active session as shown to its owner."""

    id: str
    browser: str
    os: str
    device: str
    ip_address: str | None
    created_at: str
    last_activity_at: str
    expires_at: str
    is_current: bool


class CountStats(BaseModel):
    total: int
    active: int
    expired: int
    inactive: int


class TokenStatsResponse(BaseModel):
    sessions: CountStats
    renewal_credentials: CountStats


class RevocationEntryResponse(BaseModel):
    credential_kind: str
    reason: str
    session_id: str | None
    blacklisted_at: str
    expiry_of_original: str

    class Config:
        from_attributes = True


class BlacklistStatsResponse(BaseModel):
    total: int
    active: int
    expired: int
    by_kind: dict[str, int]
    by_reason: dict[str, int]


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str
