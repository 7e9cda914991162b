"""Credential and session error taxonomy."""


class AuthError(Exception):
    """Base authentication error."""

    pass


class Unauthorized(AuthError):
    """Bad, missing or revoked credential."""

    pass


class SessionExpired(AuthError):
    """The owning session is deactivated or past its absolute expiry."""

    pass


class NotFound(AuthError):
    """No active renewal credential matches the presented fingerprint."""

    pass


class SessionInactive(SessionExpired):
    """The renewal credential is fine but its session no longer is."""

    pass


class Conflict(AuthError):
    """Lost a rotation race: another request already rotated the credential."""

    pass


class RotationError(AuthError):
    """A rotation was only partially applied. Never reported as success."""

    pass
