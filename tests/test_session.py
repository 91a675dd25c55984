"""
Tests for Session Management.
=============================

Tests for:
- Login handshake and token extraction
- Session reuse within the TTL, fresh login after expiry or invalidation
- Rejected credentials, revoked sessions and unreachable portal
- Read-only request guard
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from src.ingest.errors import (
    AuthenticationError,
    PermanentError,
    PortalUnavailableError,
    SessionExpiredError,
)
from src.ingest.session import SessionManager, extract_login_token
from src.ingest.utils import check_read_only

from tests.conftest import PRINCIPAL, SECRET


class ManualClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sessions(config, portal, clock) -> SessionManager:
    return SessionManager(config, transport=portal.transport(), clock=clock)


def run(coro):
    return asyncio.run(coro)


# ─────────────────────────────────────────────────────────────────────────────
# Login Token
# ─────────────────────────────────────────────────────────────────────────────


class TestExtractLoginToken:
    def test_hidden_input(self, fixture_html):
        assert extract_login_token(fixture_html("login.html")) == "r4nd0mT0k3n"

    def test_value_before_name(self):
        assert extract_login_token('<input type="hidden" value="abc123" name="rnd">') == "abc123"

    def test_missing_token(self):
        assert extract_login_token("<html><body>Down for maintenance</body></html>") is None
        assert extract_login_token("") is None


# ─────────────────────────────────────────────────────────────────────────────
# Session Cache
# ─────────────────────────────────────────────────────────────────────────────


class TestSessionCache:
    def test_handshake_posts_credentials(self, sessions, portal):
        async def scenario():
            await sessions.acquire_session(PRINCIPAL, SECRET)
            await sessions.aclose()

        run(scenario())

        path, form = portal.posts[0]
        assert path == "/login.do"
        assert form["userName"] == PRINCIPAL
        assert form["command"] == "login"
        assert form["rnd"] == "r4nd0mT0k3n"
        assert portal.calls["/J_VMCS.do"] == 1

    def test_reuse_within_ttl_makes_no_login_calls(self, sessions, portal, clock):
        async def scenario():
            first = await sessions.acquire_session(PRINCIPAL, SECRET)
            calls_after_login = portal.login_calls
            clock.advance(minutes=29)
            second = await sessions.acquire_session(PRINCIPAL, SECRET)
            await sessions.aclose()
            return first, second, calls_after_login

        first, second, calls_after_login = run(scenario())

        assert second.session_id == first.session_id
        assert portal.login_calls == calls_after_login
        assert portal.calls["/login.do"] == 1

    def test_expired_session_logs_in_again(self, sessions, portal, clock):
        async def scenario():
            first = await sessions.acquire_session(PRINCIPAL, SECRET)
            clock.advance(minutes=31)
            assert sessions.is_session_valid(PRINCIPAL) is False
            second = await sessions.acquire_session(PRINCIPAL, SECRET)
            await sessions.aclose()
            return first, second

        first, second = run(scenario())

        assert second.session_id != first.session_id
        assert portal.calls["/login.do"] == 2

    def test_invalidate_forces_new_handshake(self, sessions, portal):
        async def scenario():
            await sessions.acquire_session(PRINCIPAL, SECRET)
            await sessions.invalidate_session(PRINCIPAL)
            assert sessions.current_session(PRINCIPAL) is None
            await sessions.acquire_session(PRINCIPAL, SECRET)
            await sessions.aclose()

        run(scenario())
        assert portal.calls["/login.do"] == 2

    def test_expires_at_uses_ttl(self, sessions, clock):
        async def scenario():
            session = await sessions.acquire_session(PRINCIPAL, SECRET)
            await sessions.aclose()
            return session

        session = run(scenario())
        assert session.acquired_at == clock.now
        assert session.expires_at == clock.now + timedelta(minutes=30)

    def test_concurrent_acquire_yields_one_cached_session(self, sessions):
        async def scenario():
            a, b = await asyncio.gather(
                sessions.acquire_session(PRINCIPAL, SECRET),
                sessions.acquire_session(PRINCIPAL, SECRET),
            )
            stats = sessions.session_stats()
            await sessions.aclose()
            return a, b, stats

        a, b, stats = run(scenario())
        assert a.session_id == b.session_id
        assert stats["cached"] == 1
        assert stats["principals"] == ["20123***"]

    def test_concurrent_acquire_runs_one_handshake(self, sessions, portal):
        async def scenario():
            await asyncio.gather(*(sessions.acquire_session(PRINCIPAL, SECRET) for _ in range(4)))
            await sessions.aclose()

        run(scenario())
        assert portal.calls["/displayLogin.do"] == 1
        assert portal.calls["/login.do"] == 1

    def test_login_link_on_authenticated_page_is_not_a_rejection(self, sessions, portal):
        portal.pages["/J_VMCS.do"] = (
            '<html><body><a href="/j_aisis/displayLogin.do?command=logout">Sign out</a>'
            "<table><tr><td>Mon</td></tr></table></body></html>"
        )

        async def scenario():
            session = await sessions.acquire_session(PRINCIPAL, SECRET)
            await sessions.aclose()
            return session

        assert run(scenario()).principal == PRINCIPAL


# ─────────────────────────────────────────────────────────────────────────────
# Failures
# ─────────────────────────────────────────────────────────────────────────────


class TestSessionFailures:
    def test_bad_credential_raises_authentication_error(self, config, clock):
        from tests.conftest import FakePortal

        portal = FakePortal(secret="something-else")
        sessions = SessionManager(config, transport=portal.transport(), clock=clock)

        with pytest.raises(AuthenticationError):
            run(sessions.acquire_session(PRINCIPAL, SECRET))
        assert sessions.is_session_valid(PRINCIPAL) is False

    def test_revoked_session_raises_and_is_dropped(self, sessions, portal):
        async def scenario():
            await sessions.acquire_session(PRINCIPAL, SECRET)
            portal.revoke_all()
            with pytest.raises(SessionExpiredError):
                await sessions.get(PRINCIPAL, "/J_VG.do")
            assert sessions.is_session_valid(PRINCIPAL) is False

            await sessions.acquire_session(PRINCIPAL, SECRET)
            html = await sessions.get(PRINCIPAL, "/J_VG.do")
            await sessions.aclose()
            return html

        assert "Final Grade" in run(scenario())
        assert portal.calls["/login.do"] == 2

    def test_request_without_session(self, sessions):
        with pytest.raises(SessionExpiredError):
            run(sessions.get(PRINCIPAL, "/J_VG.do"))

    def test_unreachable_portal(self, sessions, portal):
        portal.down = True
        with pytest.raises(PortalUnavailableError):
            run(sessions.acquire_session(PRINCIPAL, SECRET))

    def test_server_error_is_portal_unavailable(self, config, clock):
        transport = httpx.MockTransport(lambda request: httpx.Response(503, text="Service Unavailable"))
        sessions = SessionManager(config, transport=transport, clock=clock)

        with pytest.raises(PortalUnavailableError):
            run(sessions.acquire_session(PRINCIPAL, SECRET))

    def test_login_page_without_token(self, config, clock):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>Maintenance</html>"))
        sessions = SessionManager(config, transport=transport, clock=clock)

        with pytest.raises(PortalUnavailableError):
            run(sessions.acquire_session(PRINCIPAL, SECRET))


# ─────────────────────────────────────────────────────────────────────────────
# Read-only Guard
# ─────────────────────────────────────────────────────────────────────────────


class TestReadOnlyGuard:
    @pytest.mark.parametrize("path", ["/J_VCSC.do", "/J_VOFC.do", "/login.do", "/J_VCSC.do?x=1"])
    def test_whitelisted_posts_allowed(self, path: str):
        check_read_only("POST", path)

    def test_gets_allowed(self):
        check_read_only("GET", "/J_VG.do")

    @pytest.mark.parametrize("method, path", [("POST", "/J_VPE.do"), ("DELETE", "/J_VCSC.do"), ("put", "/J_VG.do")])
    def test_mutating_requests_blocked(self, method: str, path: str):
        with pytest.raises(PermanentError):
            check_read_only(method, path)

    def test_blocked_post_never_reaches_portal(self, sessions, portal):
        async def scenario():
            await sessions.acquire_session(PRINCIPAL, SECRET)
            with pytest.raises(PermanentError):
                await sessions.post(PRINCIPAL, "/J_VPE.do", {"command": "save"})
            await sessions.aclose()

        run(scenario())
        assert portal.calls["/J_VPE.do"] == 0
