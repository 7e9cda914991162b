import asyncio
import json

import httpx
import pytest
import pytest_asyncio

from tessera_client import ClientSettings, CredentialCoordinator

BASE_URL = "http://issuer.test"
PASSWORD = "TestPass123!"


class FakeIssuer:
    """In-memory issuer and protected API behind an httpx.MockTransport."""

    def __init__(self):
        self.session_id = "session-1"
        self.valid_access: set[str] = set()
        self.valid_renewals: set[str] = set()
        self.session_ended = False
        self.refresh_calls = 0
        self.api_calls: list[str | None] = []
        self.last_headers: httpx.Headers | None = None
        self.logout_calls = 0
        self.refresh_failures: list = []
        self.refresh_gate: asyncio.Event | None = None
        self.refresh_started = asyncio.Event()
        self.refresh_hook = None
        self.response_hold: asyncio.Event | None = None
        self.response_held = asyncio.Event()
        self.unreachable_paths: set[str] = set()
        self._counter = 0

    def _issue(self) -> dict:
        self._counter += 1
        access = f"access-{self._counter}"
        renewal = f"renewal-{self._counter}"
        self.valid_access.add(access)
        self.valid_renewals.add(renewal)
        return {"access": access, "renewal": renewal, "session_id": self.session_id, "token_type": "bearer"}

    def expire_access(self) -> None:
        self.valid_access.clear()

    async def handler(self, request: httpx.Request) -> httpx.Response:
        # Yield so concurrent calls genuinely interleave.
        await asyncio.sleep(0)
        path = request.url.path
        if path in self.unreachable_paths:
            raise httpx.ConnectError("issuer unreachable", request=request)

        if path == "/auth/login":
            body = json.loads(request.content)
            if body["password"] != PASSWORD:
                return httpx.Response(401, json={"detail": "Incorrect username or password"})
            self.session_ended = False
            return httpx.Response(200, json=self._issue())

        if path == "/auth/refresh-token":
            return await self._refresh(request)

        if path == "/auth/logout":
            self.logout_calls += 1
            self.session_ended = True
            return httpx.Response(200, json={"message": "Successfully logged out"})

        if path == "/auth/revoke-refresh-token":
            body = json.loads(request.content)
            if body["renewal_secret"] not in self.valid_renewals:
                return httpx.Response(404, json={"detail": "Renewal credential not found"})
            self.valid_renewals.discard(body["renewal_secret"])
            return httpx.Response(200, json={"message": "Renewal credential revoked"})

        self.last_headers = request.headers
        token = request.headers.get("authorization", "").removeprefix("Bearer ")
        self.api_calls.append(token or None)
        if path == "/api/data":
            if self.session_ended or token not in self.valid_access:
                return httpx.Response(401, json={"detail": "Access token has expired"})
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404, json={"detail": "Not Found"})

    async def _refresh(self, request: httpx.Request) -> httpx.Response:
        self.refresh_calls += 1
        self.refresh_started.set()
        if self.refresh_gate is not None:
            gate, self.refresh_gate = self.refresh_gate, None
            await gate.wait()
        await asyncio.sleep(0.01)
        if self.refresh_failures:
            failure = self.refresh_failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return httpx.Response(failure, json={"detail": "Issuer unavailable"})
        if self.refresh_hook:
            self.refresh_hook()

        body = json.loads(request.content)
        if self.session_ended:
            return httpx.Response(410, json={"detail": "Session has ended"})
        if body["renewal_secret"] not in self.valid_renewals:
            return httpx.Response(401, json={"detail": "Renewal credential has been revoked"})
        self.valid_renewals.discard(body["renewal_secret"])
        issued = self._issue()
        if self.response_hold is not None:
            # Rotated server-side, but the caller has not seen the new pair yet.
            hold, self.response_hold = self.response_hold, None
            self.response_held.set()
            await hold.wait()
        return httpx.Response(200, json=issued)


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def issuer():
    return FakeIssuer()


@pytest_asyncio.fixture
async def http_client(issuer):
    async with httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(issuer.handler)) as client:
        yield client


@pytest.fixture
def settings():
    return ClientSettings(
        base_url=BASE_URL,
        max_renew_attempts=5,
        renew_base_delay=1.0,
        renew_max_delay=30.0,
        renew_timeout=5.0,
        inactivity_window_seconds=1800,
    )


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def make_tab(http_client, settings, sleep):
    def _make_tab(storage, channel=None, ended=None, clock=None, tab_settings=None):
        kwargs = {}
        if clock is not None:
            kwargs["clock"] = clock
        return CredentialCoordinator(
            http_client,
            storage,
            channel=channel,
            settings=tab_settings or settings,
            sleep=sleep,
            on_session_ended=ended.append if ended is not None else None,
            **kwargs,
        )

    return _make_tab
