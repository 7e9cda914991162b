import asyncio

import httpx
import pytest

from tessera_client import (
    CallAborted,
    ClientSettings,
    Conflict,
    CoordinatorState,
    JsonFileStorage,
    LocalBroadcastHub,
    MemoryStorage,
    NetworkFailure,
    SessionEnded,
    SessionExpired,
    Unauthorized,
)

pytestmark = pytest.mark.asyncio

PASSWORD = "TestPass123!"


async def _signed_in(make_tab, storage=None, **kwargs):
    tab = make_tab(storage or MemoryStorage(), **kwargs)
    await tab.login("alice", PASSWORD)
    return tab


class TestCalls:
    async def test_login_attaches_credentials(self, make_tab, issuer):
        tab = await _signed_in(make_tab)

        response = await tab.request("GET", "/api/data")

        assert response.status_code == 200
        assert issuer.last_headers["authorization"] == f"Bearer {tab.access_token}"
        assert issuer.last_headers["x-session-id"] == issuer.session_id

    async def test_bad_login_is_unauthorized(self, make_tab):
        tab = make_tab(MemoryStorage())

        with pytest.raises(Unauthorized):
            await tab.login("alice", "wrong-password")
        with pytest.raises(SessionEnded):
            await tab.request("GET", "/api/data")

    async def test_non_authorization_failures_returned_as_is(self, make_tab, issuer):
        tab = await _signed_in(make_tab)

        response = await tab.request("GET", "/api/missing")

        assert response.status_code == 404
        assert issuer.refresh_calls == 0

    async def test_concurrent_expired_calls_share_one_renewal(self, make_tab, issuer):
        tab = await _signed_in(make_tab)
        issuer.expire_access()

        responses = await asyncio.gather(*(tab.request("GET", "/api/data") for _ in range(5)))

        assert [r.status_code for r in responses] == [200] * 5
        assert issuer.refresh_calls == 1
        assert tab.state is CoordinatorState.IDLE
        assert issuer.api_calls[-5:] == [tab.access_token] * 5


class TestRetry:
    async def test_network_failures_retried_with_backoff(self, make_tab, issuer, sleep):
        tab = await _signed_in(make_tab)
        issuer.expire_access()
        issuer.refresh_failures = [httpx.ConnectError("connection refused")] * 3

        response = await tab.request("GET", "/api/data")

        assert response.status_code == 200
        assert issuer.refresh_calls == 4
        assert sleep.delays == [1.0, 2.0, 4.0]
        assert tab.state is CoordinatorState.IDLE

    async def test_server_errors_and_timeouts_are_retryable(self, make_tab, issuer, sleep):
        tab = await _signed_in(make_tab)
        issuer.expire_access()
        issuer.refresh_failures = [503, httpx.ReadTimeout("slow issuer"), 429]

        response = await tab.request("GET", "/api/data")

        assert response.status_code == 200
        assert len(sleep.delays) == 3

    async def test_exceeding_attempt_ceiling_ends_session(self, make_tab, issuer, sleep):
        ended = []
        storage = MemoryStorage()
        tab = await _signed_in(
            make_tab,
            storage,
            ended=ended,
            tab_settings=ClientSettings(max_renew_attempts=3, renew_base_delay=0.5),
        )
        issuer.expire_access()
        issuer.refresh_failures = [httpx.ConnectError("connection refused")] * 3

        with pytest.raises(NetworkFailure):
            await tab.request("GET", "/api/data")

        assert issuer.refresh_calls == 3
        assert sleep.delays == [0.5, 1.0]
        assert tab.state is CoordinatorState.ENDED
        assert tab.access_token is None
        # The issuer never rejected the secret, so it stays for other tabs.
        assert storage.load().renewal_secret in issuer.valid_renewals
        assert len(ended) == 1 and isinstance(ended[0], NetworkFailure)
        with pytest.raises(SessionEnded):
            await tab.request("GET", "/api/data")


class TestTerminalFailures:
    async def test_waiters_rejected_with_the_renewal_error(self, make_tab, issuer):
        ended = []
        tab = await _signed_in(make_tab, ended=ended)
        issuer.expire_access()
        issuer.valid_renewals.clear()

        results = await asyncio.gather(
            *(tab.request("GET", "/api/data") for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, Unauthorized) for r in results)
        assert results[0] is results[1] is results[2]
        assert issuer.refresh_calls == 1
        assert ended == [results[0]]

    async def test_session_expired_ends_this_tab_and_clears_storage(self, make_tab, issuer):
        hub = LocalBroadcastHub()
        storage = MemoryStorage()
        ended_a, ended_b = [], []
        tab_a = await _signed_in(make_tab, storage, channel=hub.channel(), ended=ended_a)
        tab_b = make_tab(storage, channel=hub.channel(), ended=ended_b)
        await tab_b.resume()
        issuer.expire_access()
        issuer.session_ended = True

        with pytest.raises(SessionExpired):
            await tab_a.request("GET", "/api/data")

        assert tab_a.state is CoordinatorState.ENDED
        assert isinstance(ended_a[0], SessionExpired)
        assert storage.load().renewal_secret is None
        assert tab_b.state is CoordinatorState.IDLE
        assert ended_b == []

        refresh_calls = issuer.refresh_calls
        with pytest.raises(SessionEnded):
            await tab_b.request("GET", "/api/data")

        assert tab_b.state is CoordinatorState.ENDED
        assert isinstance(ended_b[0], SessionEnded)
        assert issuer.refresh_calls == refresh_calls

    async def test_conflict_without_sibling_broadcast_ends_session(self, make_tab, issuer):
        storage = MemoryStorage()
        tab = await _signed_in(make_tab, storage)
        issuer.expire_access()
        issuer.valid_renewals.clear()
        issuer.refresh_hook = lambda: storage.save(
            storage.load().model_copy(update={"renewal_secret": "rotated-elsewhere"})
        )

        with pytest.raises(Conflict):
            await tab.request("GET", "/api/data")
        assert tab.state is CoordinatorState.ENDED
        assert storage.load().renewal_secret == "rotated-elsewhere"


class TestCrossTab:
    async def test_sibling_adopts_broadcast_renewal(self, make_tab, issuer):
        hub = LocalBroadcastHub()
        storage = MemoryStorage()
        tab_a = await _signed_in(make_tab, storage, channel=hub.channel())
        tab_b = make_tab(storage, channel=hub.channel())
        await tab_b.resume()
        issuer.expire_access()

        assert (await tab_a.request("GET", "/api/data")).status_code == 200
        assert issuer.refresh_calls == 2
        assert tab_b.access_token == tab_a.access_token

        response = await tab_b.request("GET", "/api/data")

        assert response.status_code == 200
        assert issuer.refresh_calls == 2

    async def test_rotation_race_loser_adopts_winner(self, make_tab, issuer):
        hub = LocalBroadcastHub()
        storage = MemoryStorage()
        tab_a = await _signed_in(make_tab, storage, channel=hub.channel())
        tab_b = make_tab(storage, channel=hub.channel())
        await tab_b.resume()
        issuer.expire_access()
        gate = asyncio.Event()
        issuer.refresh_gate = gate
        issuer.refresh_started.clear()

        b_call = asyncio.create_task(tab_b.request("GET", "/api/data"))
        await issuer.refresh_started.wait()
        a_response = await tab_a.request("GET", "/api/data")
        gate.set()
        b_response = await b_call

        assert a_response.status_code == 200
        assert b_response.status_code == 200
        assert tab_b.state is CoordinatorState.IDLE
        assert tab_b.access_token == tab_a.access_token
        assert issuer.refresh_calls == 3

    async def test_loser_rejected_before_winner_stores_leaves_winner_intact(self, make_tab, issuer):
        hub = LocalBroadcastHub()
        storage = MemoryStorage()
        ended_a, ended_b = [], []
        tab_a = await _signed_in(make_tab, storage, channel=hub.channel(), ended=ended_a)
        tab_b = make_tab(storage, channel=hub.channel(), ended=ended_b)
        await tab_b.resume()
        issuer.expire_access()
        held = asyncio.Event()
        issuer.response_hold = held

        a_call = asyncio.create_task(tab_a.request("GET", "/api/data"))
        await issuer.response_held.wait()
        with pytest.raises(Unauthorized):
            await tab_b.request("GET", "/api/data")
        held.set()
        a_response = await a_call

        assert tab_b.state is CoordinatorState.ENDED
        assert isinstance(ended_b[0], Unauthorized)
        assert a_response.status_code == 200
        assert tab_a.state is CoordinatorState.IDLE
        assert ended_a == []
        assert not issuer.session_ended
        assert issuer.logout_calls == 0
        assert storage.load().renewal_secret in issuer.valid_renewals
        assert (await tab_a.request("GET", "/api/data")).status_code == 200

    async def test_network_exhaustion_in_one_tab_leaves_sibling_working(self, make_tab, issuer):
        hub = LocalBroadcastHub()
        storage = MemoryStorage()
        ended_a = []
        tab_a = await _signed_in(make_tab, storage, channel=hub.channel(), ended=ended_a)
        tab_b = make_tab(
            storage,
            channel=hub.channel(),
            tab_settings=ClientSettings(max_renew_attempts=2, renew_base_delay=0.5),
        )
        await tab_b.resume()
        issuer.expire_access()
        issuer.refresh_failures = [httpx.ConnectError("connection refused")] * 2

        with pytest.raises(NetworkFailure):
            await tab_b.request("GET", "/api/data")

        assert tab_b.state is CoordinatorState.ENDED
        assert tab_a.state is CoordinatorState.IDLE
        assert ended_a == []
        response = await tab_a.request("GET", "/api/data")
        assert response.status_code == 200
        assert tab_a.state is CoordinatorState.IDLE

    async def test_logout_propagates_to_sibling_tabs(self, make_tab, issuer):
        hub = LocalBroadcastHub()
        storage = MemoryStorage()
        ended_b = []
        tab_a = await _signed_in(make_tab, storage, channel=hub.channel())
        tab_b = make_tab(storage, channel=hub.channel(), ended=ended_b)
        await tab_b.resume()

        await tab_a.logout()

        assert issuer.logout_calls == 1
        assert tab_a.state is CoordinatorState.ENDED
        assert tab_b.state is CoordinatorState.ENDED
        assert isinstance(ended_b[0], SessionEnded)
        assert storage.load().renewal_secret is None
        with pytest.raises(SessionEnded):
            await tab_b.request("GET", "/api/data")

    async def test_logout_clears_local_state_when_issuer_unreachable(self, make_tab, issuer):
        storage = MemoryStorage()
        tab = await _signed_in(make_tab, storage)
        issuer.unreachable_paths.add("/auth/logout")

        await tab.logout()

        assert tab.state is CoordinatorState.ENDED
        assert storage.load().renewal_secret is None


class TestLifecycle:
    async def test_stale_session_renews_before_the_call(self, make_tab, issuer):
        now = [1000.0]
        tab = await _signed_in(make_tab, clock=lambda: now[0])
        old_access = tab.access_token
        now[0] += 1801

        response = await tab.request("GET", "/api/data")

        assert response.status_code == 200
        assert issuer.refresh_calls == 1
        assert issuer.api_calls == [tab.access_token]
        assert tab.access_token != old_access

    async def test_recent_activity_skips_preflight_renewal(self, make_tab, issuer):
        now = [1000.0]
        tab = await _signed_in(make_tab, clock=lambda: now[0])
        now[0] += 600

        await tab.request("GET", "/api/data")

        assert issuer.refresh_calls == 0

    async def test_resume_from_file_after_reload(self, make_tab, issuer, tmp_path):
        path = tmp_path / "credentials.json"
        first = await _signed_in(make_tab, JsonFileStorage(path))
        await first.close()

        reloaded = make_tab(JsonFileStorage(path))
        access = await reloaded.resume()

        assert access == reloaded.access_token
        assert reloaded.session_id == issuer.session_id
        assert (await reloaded.request("GET", "/api/data")).status_code == 200

    async def test_resume_without_stored_session(self, make_tab):
        with pytest.raises(SessionEnded):
            await make_tab(MemoryStorage()).resume()

    async def test_close_rejects_queued_calls(self, make_tab, issuer):
        tab = await _signed_in(make_tab)
        issuer.expire_access()
        gate = asyncio.Event()
        issuer.refresh_gate = gate

        renewing = asyncio.create_task(tab.request("GET", "/api/data"))
        queued = asyncio.create_task(tab.request("GET", "/api/data"))
        for _ in range(100):
            if tab.pending_waiters:
                break
            await asyncio.sleep(0.005)
        assert tab.pending_waiters == 1

        await tab.close()

        with pytest.raises(CallAborted):
            await queued
        gate.set()
        assert (await renewing).status_code == 200

    async def test_resume_during_renewal_joins_it(self, make_tab, issuer):
        tab = await _signed_in(make_tab)
        issuer.expire_access()
        gate = asyncio.Event()
        issuer.refresh_gate = gate

        call = asyncio.create_task(tab.request("GET", "/api/data"))
        await issuer.refresh_started.wait()
        resumed = asyncio.create_task(tab.resume())
        for _ in range(100):
            if tab.pending_waiters:
                break
            await asyncio.sleep(0.005)
        gate.set()

        assert (await call).status_code == 200
        assert await resumed == tab.access_token
        assert issuer.refresh_calls == 1
        assert tab.state is CoordinatorState.IDLE

    async def test_login_during_renewal_waits_for_it(self, make_tab, issuer):
        tab = await _signed_in(make_tab)
        issuer.expire_access()
        gate = asyncio.Event()
        issuer.refresh_gate = gate

        call = asyncio.create_task(tab.request("GET", "/api/data"))
        await issuer.refresh_started.wait()
        login = asyncio.create_task(tab.login("alice", PASSWORD))
        for _ in range(100):
            if tab.pending_waiters:
                break
            await asyncio.sleep(0.005)
        assert tab.pending_waiters == 1
        gate.set()

        assert (await call).status_code == 200
        assert await login == issuer.session_id
        assert issuer.refresh_calls == 1
        assert tab.state is CoordinatorState.IDLE
        assert (await tab.request("GET", "/api/data")).status_code == 200
