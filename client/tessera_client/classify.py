"""Map issuer transport results onto a small outcome enum."""
import asyncio
from enum import Enum

import httpx

from tessera_client.errors import CoordinatorError, NetworkFailure, SessionExpired, Unauthorized

RATE_LIMITED = 429


class Outcome(Enum):
    SUCCESS = "success"
    UNAUTHORIZED = "unauthorized"
    SESSION_EXPIRED = "session_expired"
    NETWORK_FAILURE = "network_failure"
    REJECTED = "rejected"


def classify_response(response: httpx.Response) -> Outcome:
    status = response.status_code
    if status == 200:
        return Outcome.SUCCESS
    if status == 401:
        return Outcome.UNAUTHORIZED
    if status == 410:
        return Outcome.SESSION_EXPIRED
    if status == RATE_LIMITED or status >= 500:
        return Outcome.NETWORK_FAILURE
    return Outcome.REJECTED


def is_network_exception(exc: BaseException) -> bool:
    """Transport errors and timeouts count as network failures."""
    return isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, ConnectionError))


def response_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return f"HTTP {response.status_code}"


def error_for(outcome: Outcome, detail: str) -> CoordinatorError:
    """Exception for a non-success outcome."""
    if outcome is Outcome.SESSION_EXPIRED:
        return SessionExpired(detail)
    if outcome is Outcome.NETWORK_FAILURE:
        return NetworkFailure(detail)
    if outcome is Outcome.REJECTED:
        return Unauthorized(f"Renewal rejected: {detail}")
    return Unauthorized(detail)
