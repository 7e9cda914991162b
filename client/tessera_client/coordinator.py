"""Per-tab credential coordinator.

Attaches the access credential to outgoing calls, performs at most one
renewal at a time when a call is rejected, parks concurrent callers until
that renewal settles, and keeps sibling tabs in step through a broadcast
channel.
"""
import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
import logging
import time

import httpx
from pydantic import BaseModel, ValidationError

from tessera_client import storage as credential_storage
from tessera_client.channel import AuthEvent, AuthEventKind, BroadcastChannel
from tessera_client.classify import Outcome, classify_response, error_for, is_network_exception, response_detail
from tessera_client.config import ClientSettings, get_client_settings
from tessera_client.errors import (
    CallAborted,
    Conflict,
    CoordinatorError,
    NetworkFailure,
    SessionEnded,
    Unauthorized,
)
from tessera_client.retry import RetryPolicy, calculate_backoff_delay
from tessera_client.storage import CredentialStorage

logger = logging.getLogger(__name__)

LOGIN_PATH = "/auth/login"
REFRESH_PATH = "/auth/refresh-token"
LOGOUT_PATH = "/auth/logout"
REVOKE_RENEWAL_PATH = "/auth/revoke-refresh-token"

SESSION_HEADER = "X-Session-Id"


class CoordinatorState(Enum):
    IDLE = "idle"
    RENEWING = "renewing"
    ENDED = "ended"


class IssuedPair(BaseModel):
    access: str
    renewal: str
    session_id: str


class CredentialCoordinator:
    """Credential state machine owned by one tab.

    Args:
        client: HTTP client pointed at the issuer (and the API it protects).
        storage: Persisted state shared by tabs of the same origin.
        channel: Broadcast channel to sibling tabs, if any.
        settings: Retry, timeout and inactivity settings.
        sleep: Awaitable used between renewal attempts.
        clock: Wall clock in seconds, for activity tracking.
        on_session_ended: Called with the terminal error when the session ends.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        storage: CredentialStorage,
        channel: BroadcastChannel | None = None,
        settings: ClientSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        on_session_ended: Callable[[CoordinatorError], None] | None = None,
    ):
        self._client = client
        self._storage = storage
        self._channel = channel
        self._settings = settings or get_client_settings()
        self._policy = RetryPolicy.from_settings(self._settings)
        self._sleep = sleep
        self._clock = clock
        self._on_session_ended = on_session_ended

        self._state = CoordinatorState.IDLE
        self._access: str | None = None
        self._waiters: list[asyncio.Future] = []
        self._adopted: str | None = None
        self._presented: str | None = None
        self._unsubscribe = channel.subscribe(self._on_event) if channel else None

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def access_token(self) -> str | None:
        return self._access

    @property
    def session_id(self) -> str | None:
        return self._storage.load().session_id

    @property
    def pending_waiters(self) -> int:
        return len(self._waiters)

    # Session lifecycle

    async def login(self, username: str, password: str) -> str:
        """Open a new session and return its id.

        A renewal already in flight is allowed to settle first.
        """
        if self._state is CoordinatorState.RENEWING:
            await self._settle_renewal()
        try:
            response = await self._client.post(
                LOGIN_PATH,
                json={"username": username, "password": password},
                timeout=self._settings.renew_timeout,
            )
        except Exception as exc:
            if is_network_exception(exc):
                raise NetworkFailure(f"Login failed: {exc}") from exc
            raise

        outcome = classify_response(response)
        if outcome is not Outcome.SUCCESS:
            raise error_for(outcome, response_detail(response))

        pair = self._parse_pair(response)
        self._store(pair)
        if self._state is CoordinatorState.ENDED:
            self._state = CoordinatorState.IDLE
        logger.info(f"Logged in, session {pair.session_id}")
        return pair.session_id

    async def resume(self) -> str:
        """Restore a tab from persisted state by renewing once.

        Returns the new access credential. Joins a renewal already in flight.
        """
        if self._state is CoordinatorState.RENEWING:
            return await self._enqueue()
        if not self._storage.load().renewal_secret:
            raise SessionEnded("No stored session to resume")
        if self._state is CoordinatorState.ENDED:
            self._state = CoordinatorState.IDLE
        return await self._renew_or_wait(self._access)

    async def logout(self, scope: str = "this_session") -> None:
        """End the session locally and on the server.

        Local state is cleared and the logout broadcast even when the
        server call fails.
        """
        stored = self._storage.load()
        try:
            if self._access:
                response = await self._client.post(
                    LOGOUT_PATH,
                    json={"scope": scope},
                    headers=self._auth_headers(self._access, stored.session_id),
                    timeout=self._settings.renew_timeout,
                )
            elif stored.renewal_secret:
                response = await self._client.post(
                    REVOKE_RENEWAL_PATH,
                    json={"renewal_secret": stored.renewal_secret},
                    timeout=self._settings.renew_timeout,
                )
            else:
                response = None
            if response is not None and response.status_code != 200:
                logger.warning(f"Server logout returned {response.status_code}: {response_detail(response)}")
        except httpx.TransportError as e:
            logger.warning(f"Server logout failed, clearing local session anyway: {e}")
        finally:
            self._end_session(SessionEnded("Logged out"), notify=False, broadcast=True)

    async def close(self) -> None:
        """Detach from the channel and reject every queued call."""
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        self._reject_waiters(CallAborted("Coordinator closed"))

    # Calls

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        return await self.call(self._client.build_request(method, url, **kwargs))

    async def call(self, request: httpx.Request) -> httpx.Response:
        """Send ``request`` with the current access credential.

        A 401 triggers one coordinated renewal and a single retry. Every
        other response is returned as-is.
        """
        access = await self._current_access()
        response = await self._send(request, access)
        if response.status_code != 401:
            return response

        await response.aclose()
        logger.debug(f"{request.method} {request.url.path} rejected, renewing access credential")
        access = await self._renew_or_wait(access)
        return await self._send(request, access)

    async def _current_access(self) -> str:
        if self._state is CoordinatorState.ENDED:
            raise SessionEnded("Session has ended")
        if self._state is CoordinatorState.RENEWING:
            return await self._enqueue()
        if self._access is None:
            if not self._storage.load().renewal_secret:
                raise SessionEnded("Not logged in")
            return await self._renew_or_wait(None)
        if self._is_stale():
            logger.info("Session idle past the inactivity window, renewing before the call")
            return await self._renew_or_wait(self._access)
        return self._access

    async def _send(self, request: httpx.Request, access: str) -> httpx.Response:
        stored = credential_storage.update(self._storage, last_activity_at=self._clock())
        request.headers.update(self._auth_headers(access, stored.session_id))
        return await self._client.send(request)

    @staticmethod
    def _auth_headers(access: str, session_id: str | None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {access}"}
        if session_id:
            headers[SESSION_HEADER] = session_id
        return headers

    def _is_stale(self) -> bool:
        last_activity = self._storage.load().last_activity_at
        if last_activity is None:
            return False
        return self._clock() - last_activity > self._settings.inactivity_window_seconds

    # Renewal

    async def _renew_or_wait(self, failed_access: str | None) -> str:
        if self._state is CoordinatorState.ENDED:
            raise SessionEnded("Session has ended")
        if self._access is not None and self._access != failed_access:
            # Already replaced by an earlier renewal or a sibling's broadcast.
            return self._access
        if self._state is CoordinatorState.RENEWING:
            return await self._enqueue()
        return await self._renew()

    async def _enqueue(self) -> str:
        future = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        return await future

    async def _settle_renewal(self) -> None:
        try:
            await self._enqueue()
        except CoordinatorError as exc:
            logger.info(f"Renewal in flight ended the previous session: {type(exc).__name__}")

    async def _renew(self) -> str:
        self._state = CoordinatorState.RENEWING
        self._adopted = None
        self._presented = None
        try:
            pair = await self._renew_with_retry()
        except CoordinatorError as exc:
            if self._adopted is not None:
                logger.info(f"Own renewal failed ({type(exc).__name__}), adopting sibling's credential")
                return self._finish_renewal(self._adopted)
            if self._state is not CoordinatorState.ENDED:
                # Only this tab's view ends; siblings find out through their own renewals.
                self._end_session(exc, notify=True, clear_storage=self._rejected_secret_still_stored(exc))
            raise
        except asyncio.CancelledError:
            self._state = CoordinatorState.IDLE
            self._reject_waiters(CallAborted("Renewal was cancelled"))
            raise

        if self._state is CoordinatorState.ENDED:
            # Logged out by a sibling while the renewal was in flight.
            raise SessionEnded("Session has ended")
        if pair is None:
            logger.info("Adopted credential renewed by another tab")
            return self._finish_renewal(self._adopted)

        self._store(pair)
        self._publish(AuthEvent(kind=AuthEventKind.RENEWED, access=pair.access, session_id=pair.session_id))
        logger.info(f"Renewed access credential for session {pair.session_id}")
        return self._finish_renewal(pair.access)

    def _finish_renewal(self, access: str) -> str:
        self._access = access
        self._state = CoordinatorState.IDLE
        self._adopted = None
        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if not future.done():
                future.set_result(access)
        return access

    async def _renew_with_retry(self) -> IssuedPair | None:
        """Run renewal attempts until one settles.

        Returns None when a sibling's renewal was adopted instead.
        """
        last_error: NetworkFailure | None = None
        for attempt in range(1, self._policy.max_attempts + 1):
            if self._adopted is not None:
                return None
            try:
                return await self._attempt_renewal(attempt)
            except NetworkFailure as exc:
                last_error = exc
                if attempt >= self._policy.max_attempts:
                    break
                delay = calculate_backoff_delay(attempt, self._policy)
                logger.info(
                    f"Renewal attempt {attempt}/{self._policy.max_attempts} failed, "
                    f"retrying in {delay:.2f}s: {exc}"
                )
                await self._sleep(delay)

        if self._adopted is not None:
            return None
        logger.warning(f"Renewal failed after {self._policy.max_attempts} attempts: {last_error}")
        raise last_error

    async def _attempt_renewal(self, attempt: int) -> IssuedPair:
        stored = self._storage.load()
        if not stored.renewal_secret:
            raise SessionEnded("Session ended in another tab")
        self._presented = stored.renewal_secret

        logger.debug(f"Renewal attempt {attempt}/{self._policy.max_attempts}")
        try:
            response = await asyncio.wait_for(
                self._client.post(
                    REFRESH_PATH,
                    json={"renewal_secret": stored.renewal_secret, "session_id": stored.session_id},
                    timeout=self._settings.renew_timeout,
                ),
                timeout=self._settings.renew_timeout,
            )
        except Exception as exc:
            if is_network_exception(exc):
                raise NetworkFailure(f"Renewal request failed: {exc!r}") from exc
            raise

        outcome = classify_response(response)
        if outcome is Outcome.SUCCESS:
            return self._parse_pair(response)

        detail = response_detail(response)
        if outcome is Outcome.UNAUTHORIZED and self._storage.load().renewal_secret != stored.renewal_secret:
            raise Conflict(f"Renewal credential was rotated by another tab: {detail}")
        raise error_for(outcome, detail)

    @staticmethod
    def _parse_pair(response: httpx.Response) -> IssuedPair:
        try:
            return IssuedPair.model_validate_json(response.content)
        except ValidationError as exc:
            raise Unauthorized("Issuer returned a malformed credential pair") from exc

    def _store(self, pair: IssuedPair) -> None:
        self._access = pair.access
        credential_storage.update(
            self._storage,
            renewal_secret=pair.renewal,
            session_id=pair.session_id,
            last_activity_at=self._clock(),
        )

    # Ending and broadcast

    def _reject_waiters(self, error: CoordinatorError) -> None:
        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if not future.done():
                future.set_exception(error)

    def _rejected_secret_still_stored(self, error: CoordinatorError) -> bool:
        """True when the issuer refused the secret this tab presented and no sibling has replaced it."""
        if isinstance(error, NetworkFailure) or self._presented is None:
            return False
        return self._storage.load().renewal_secret == self._presented

    def _end_session(
        self,
        error: CoordinatorError,
        notify: bool,
        broadcast: bool = False,
        clear_storage: bool = True,
    ) -> None:
        self._state = CoordinatorState.ENDED
        self._access = None
        self._adopted = None
        self._presented = None
        if clear_storage:
            self._storage.clear()
        self._reject_waiters(error)
        if broadcast:
            self._publish(AuthEvent(kind=AuthEventKind.LOGOUT))
        logger.info(f"Session ended: {type(error).__name__}: {error}")
        if notify and self._on_session_ended:
            self._on_session_ended(error)

    def _publish(self, event: AuthEvent) -> None:
        if self._channel:
            self._channel.publish(event)

    def _on_event(self, event: AuthEvent) -> None:
        if event.kind is AuthEventKind.LOGOUT:
            if self._state is CoordinatorState.ENDED:
                return
            logger.info("Logout received from another tab")
            self._end_session(SessionEnded("Logged out in another tab"), notify=True)
            return

        if self._state is CoordinatorState.ENDED or not event.access:
            return
        session_id = self._storage.load().session_id
        if event.session_id and session_id and event.session_id != session_id:
            return
        logger.debug("Adopting access credential renewed by another tab")
        self._access = event.access
        if self._state is CoordinatorState.RENEWING:
            self._adopted = event.access
