"""SQLAlchemy models package."""
from tessera.models.user import User
from tessera.models.session import UserSession
from tessera.models.renewal import RenewalCredential
from tessera.models.revocation import CredentialKind, RevocationEntry, RevocationReason

__all__ = [
    "User",
    "UserSession",
    "RenewalCredential",
    "RevocationEntry",
    "CredentialKind",
    "RevocationReason",
]
