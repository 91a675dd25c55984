"""Portal session management.

SessionManager performs the login handshake, caches the resulting cookie
bundle per principal for a fixed TTL, and sends authenticated requests.
Reusing sessions avoids a three-request login for every page.

Handshake (the portal answers 200 on both success and failure, so the
only reliable failure signal is a redirect back to the login page):

    1. GET  /displayLogin.do   -> per-session anti-forgery token ("rnd")
    2. POST /login.do          -> userName, password, command=login, rnd
    3. GET  an authenticated-only page, which must not bounce to login
"""

from __future__ import annotations

import asyncio
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx
from pydantic import BaseModel

from src.ingest.config import IngestConfig, get_config
from src.ingest.errors import AuthenticationError, PortalUnavailableError, SessionExpiredError
from src.ingest.logging import get_logger, mask_principal
from src.ingest.utils import (
    LOGIN_ACTION_PATH,
    LOGIN_MARKERS,
    LOGIN_PAGE_PATH,
    VERIFY_PATH,
    check_read_only,
    is_login_form,
    make_soup,
)

logger = get_logger(__name__)

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

# Fallbacks for login pages whose hidden input is not well-formed HTML
_TOKEN_PATTERNS = [
    re.compile(r"""name\s*=\s*["']?rnd["']?\s+value\s*=\s*["']?([^"'\s>]+)["']?""", re.IGNORECASE),
    re.compile(r"""value\s*=\s*["']?([^"'\s>]+)["']?\s+name\s*=\s*["']?rnd["']?""", re.IGNORECASE),
    re.compile(r"name=rnd\s+value=([a-z0-9]+)", re.IGNORECASE),
]


def extract_login_token(html: str) -> str | None:
    """Extract the anti-forgery token from the login form."""
    field = make_soup(html).find("input", attrs={"name": "rnd"})
    if field is not None and field.get("value"):
        return str(field["value"])
    for pattern in _TOKEN_PATTERNS:
        match = pattern.search(html or "")
        if match:
            return match.group(1)
    return None


class Session(BaseModel):
    """Handle to a cached portal session.

    The credential bundle itself stays inside the SessionManager; callers
    only ever use it through SessionManager.request().
    """

    principal: str
    session_id: str
    acquired_at: datetime
    expires_at: datetime


@dataclass
class _CachedSession:
    session: Session
    client: httpx.AsyncClient


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Per-principal portal sessions with TTL eviction.

    One instance is owned by a pipeline run and passed to whatever needs
    authenticated access. The cache is only touched from the event loop;
    a per-principal lock makes concurrent callers share one login handshake.
    """

    def __init__(
        self,
        config: IngestConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize SessionManager.

        Args:
            config: Ingestion configuration (defaults to the singleton).
            transport: Optional httpx transport (tests plug a MockTransport here).
            clock: Source of "now" used for TTL checks.
        """
        self.config = config or get_config()
        self.ttl = timedelta(minutes=self.config.session_ttl_minutes)
        self._transport = transport
        self._clock = clock
        self._cache: dict[str, _CachedSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

        logger.debug(
            "session_manager_initialized",
            portal=self.config.portal_url,
            ttl_minutes=self.config.session_ttl_minutes,
        )

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.portal_url,
            timeout=httpx.Timeout(self.config.request_timeout_seconds),
            follow_redirects=True,
            headers={
                "User-Agent": USER_AGENT,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            },
            transport=self._transport,
        )

    def is_session_valid(self, principal: str) -> bool:
        """Check if a cached session exists and is still within TTL."""
        cached = self._cache.get(principal)
        if cached is None:
            logger.debug("session_check", result="missing", principal=mask_principal(principal))
            return False
        if cached.session.expires_at <= self._clock():
            logger.info("session_check", result="expired", principal=mask_principal(principal))
            return False
        return True

    def current_session(self, principal: str) -> Session | None:
        if not self.is_session_valid(principal):
            return None
        return self._cache[principal].session

    async def acquire_session(self, principal: str, secret: str) -> Session:
        """Return the cached session for a principal or log in.

        Raises:
            AuthenticationError: If the portal rejects the credential.
            PortalUnavailableError: On network error, timeout or 5xx.
        """
        if self.is_session_valid(principal):
            logger.debug("session_reused", principal=mask_principal(principal))
            return self._cache[principal].session

        async with self._locks.setdefault(principal, asyncio.Lock()):
            # Another task may have logged in while this one waited
            if self.is_session_valid(principal):
                logger.debug("session_reused", principal=mask_principal(principal))
                return self._cache[principal].session
            return await self._login(principal, secret)

    async def _login(self, principal: str, secret: str) -> Session:
        if principal in self._cache:
            await self.invalidate_session(principal)

        client = self._new_client()
        try:
            await self._authenticate(client, principal, secret)
        except BaseException:
            await client.aclose()
            raise

        now = self._clock()
        session = Session(
            principal=principal,
            session_id=uuid.uuid4().hex,
            acquired_at=now,
            expires_at=now + self.ttl,
        )
        self._cache[principal] = _CachedSession(session=session, client=client)
        logger.info(
            "session_created",
            principal=mask_principal(principal),
            expires_at=session.expires_at.isoformat(),
        )
        return session

    async def _authenticate(self, client: httpx.AsyncClient, principal: str, secret: str) -> None:
        """Run the three-step login handshake on a fresh client."""
        logger.info("authentication_started", principal=mask_principal(principal))

        login_page = await self._send(client, "GET", LOGIN_PAGE_PATH)
        token = extract_login_token(login_page.text)
        if token is None:
            logger.error("authentication_failed", reason="missing_login_token")
            raise PortalUnavailableError("Login form has no anti-forgery token")

        await self._send(
            client,
            "POST",
            LOGIN_ACTION_PATH,
            data={
                "userName": principal,
                "password": secret,
                "command": "login",
                "submit": "Sign in",
                "rnd": token,
            },
            headers={"Referer": str(login_page.url)},
        )

        verify = await self._send(client, "GET", VERIFY_PATH)
        if self._redirected_to_login(verify) or is_login_form(verify.text):
            logger.error("authentication_failed", reason="verification_redirected_to_login")
            raise AuthenticationError(f"Portal rejected the credential for {mask_principal(principal)}")

        logger.info("authentication_succeeded", principal=mask_principal(principal))

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        data: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        check_read_only(method, path)
        try:
            response = await client.request(method, path, data=data, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("portal_timeout", method=method, path=path)
            raise PortalUnavailableError(f"Timed out on {method} {path}") from e
        except httpx.TransportError as e:
            logger.warning("portal_unreachable", method=method, path=path, error=str(e))
            raise PortalUnavailableError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 500:
            logger.warning("portal_error_status", method=method, path=path, status=response.status_code)
            raise PortalUnavailableError(f"{method} {path} returned {response.status_code}")
        return response

    @staticmethod
    def _redirected_to_login(response: httpx.Response) -> bool:
        hops = [str(r.headers.get("location", "")) for r in response.history]
        hops.append(response.url.path)
        return any(marker in hop for hop in hops for marker in LOGIN_MARKERS)

    async def request(
        self,
        principal: str,
        method: str,
        path: str,
        data: dict[str, str] | None = None,
    ) -> str:
        """Send an authenticated request and return the response body.

        No retry happens here. A bounce to the login page drops the cached
        session before SessionExpiredError is raised.

        Raises:
            SessionExpiredError: No valid session, or the portal revoked it.
            PortalUnavailableError: On network error, timeout or 5xx.
        """
        if not self.is_session_valid(principal):
            raise SessionExpiredError(principal, path)

        cached = self._cache[principal]
        response = await self._send(cached.client, method, path, data=data)
        if self._redirected_to_login(response):
            logger.warning(
                "session_revoked",
                principal=mask_principal(principal),
                path=path,
            )
            await self.invalidate_session(principal)
            raise SessionExpiredError(principal, path)
        return response.text

    async def get(self, principal: str, path: str) -> str:
        return await self.request(principal, "GET", path)

    async def post(self, principal: str, path: str, data: dict[str, str]) -> str:
        return await self.request(principal, "POST", path, data=data)

    async def invalidate_session(self, principal: str) -> None:
        """Drop a cached session (call after any unexpected login redirect)."""
        cached = self._cache.pop(principal, None)
        if cached is None:
            logger.debug("session_clear_skipped", reason="not_cached")
            return
        await cached.client.aclose()
        logger.info("session_invalidated", principal=mask_principal(principal))

    def session_stats(self) -> dict[str, object]:
        return {
            "cached": len(self._cache),
            "principals": [mask_principal(p) for p in self._cache],
        }

    async def aclose(self) -> None:
        for principal in list(self._cache):
            await self.invalidate_session(principal)

    async def __aenter__(self) -> "SessionManager":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
