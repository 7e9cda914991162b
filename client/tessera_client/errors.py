"""Errors raised by the credential coordinator."""


class CoordinatorError(Exception):
    """Base client-side credential error."""

    pass


class Unauthorized(CoordinatorError):
    """The issuer rejected the renewal credential. Terminal."""

    pass


class SessionExpired(CoordinatorError):
    """The session is past its absolute expiry or was revoked. Terminal."""

    pass


class NetworkFailure(CoordinatorError):
    """Transient transport failure. Retried under backoff."""

    pass


class Conflict(CoordinatorError):
    """Another tab rotated the renewal credential first."""

    pass


class SessionEnded(CoordinatorError):
    """A call was made after this tab's session ended."""

    pass


class CallAborted(CoordinatorError):
    """A queued call was rejected because the coordinator was closed."""

    pass
