"""
Pytest Configuration and Fixtures.
===================================

Shared fixtures for all test modules:
- HTML fixtures captured from the portal (trimmed)
- FakePortal: an in-memory portal behind httpx.MockTransport
- Configuration overrides pointing at temporary directories
"""

from collections import Counter
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import pytest

from src.ingest.config import IngestConfig

FIXTURES = Path(__file__).parent / "fixtures"
PORTAL_URL = "https://portal.test/j_aisis"
PORTAL_PREFIX = "/j_aisis"

PRINCIPAL = "2012345"
SECRET = "correct-horse"


def load_fixture(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


def schedule_table(rows: list[tuple[str, str]]) -> str:
    """Minimal schedule result page with one row per (course code, section)."""
    header = (
        "<tr><td>Subject Code</td><td>Section</td><td>Course Title</td><td>Units</td><td>Time</td>"
        "<td>Room</td><td>Instructor</td><td>Max No</td><td>Lang</td><td>Level</td>"
        "<td>Free Slots</td><td>Remarks</td><td>S</td><td>P</td></tr>"
    )
    body = "".join(
        f"<tr><td>{code}</td><td>{section}</td><td>TITLE</td><td>3</td><td>MWF 0800-0900</td>"
        f"<td>F-113</td><td>DOE, Jane</td><td>30</td><td>ENG</td><td>U</td><td>10</td><td></td><td>N</td><td></td></tr>"
        for code, section in rows
    )
    return f"<html><body><table>{header}{body}</table></body></html>"


def department_rows(prefix: str, count: int) -> list[tuple[str, str]]:
    return [(f"{prefix} {100 + i}", "A") for i in range(count)]


# ─────────────────────────────────────────────────────────────────────────────
# Fake Portal
# ─────────────────────────────────────────────────────────────────────────────


class FakePortal:
    """In-memory stand-in for the portal.

    Mirrors the real portal's quirks: every answer is HTTP 200, a rejected
    login just shows the login form again, and any authenticated page
    requested without a live session redirects to the login form.
    """

    def __init__(self, secret: str = SECRET) -> None:
        self.secret = secret
        self.calls: Counter[str] = Counter()
        self.posts: list[tuple[str, dict[str, str]]] = []
        self.authenticated: set[str] = set()
        self._next_session = 0

        self.pages: dict[str, str] = {
            "/J_VMCS.do": load_fixture("my_schedule.html"),
            "/J_VCSC.do": load_fixture("schedule_form.html"),
            "/J_VOFC.do": load_fixture("curriculum_form.html"),
            "/J_VG.do": load_fixture("grades.html"),
            "/J_VIPS.do": load_fixture("ips.html"),
            "/J_VHOR.do": load_fixture("holds_none.html"),
            "/J_VCEC.do": load_fixture("enrolled.html"),
        }
        # deptCode -> result page; "*" is the fallback for any department
        self.schedule_results: dict[str, str] = {"*": load_fixture("schedule_results.html")}
        # (term, deptCode) -> result page, checked before schedule_results
        self.term_results: dict[tuple[str, str], str] = {}
        # degCode -> curriculum page
        self.curricula: dict[str, str] = {"*": load_fixture("curriculum.html")}
        # deptCode/degCode -> number of 503 answers left before succeeding
        self.fail_next: Counter[str] = Counter()
        self.always_fail: set[str] = set()
        self.down = False

    @property
    def login_calls(self) -> int:
        return self.calls["/displayLogin.do"] + self.calls["/login.do"]

    def revoke_all(self) -> None:
        self.authenticated.clear()

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def _redirect_to_login(self) -> httpx.Response:
        return httpx.Response(302, headers={"Location": f"{PORTAL_URL}/displayLogin.do"})

    def _html(self, html: str, **kwargs) -> httpx.Response:
        return httpx.Response(200, text=html, headers={"Content-Type": "text/html"}, **kwargs)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("portal down", request=request)

        path = request.url.path.removeprefix(PORTAL_PREFIX)
        self.calls[path] += 1
        session_id = request.headers.get("cookie", "").partition("JSESSIONID=")[2].split(";")[0]

        if path == "/displayLogin.do":
            self._next_session += 1
            response = self._html(load_fixture("login.html"))
            response.headers["Set-Cookie"] = f"JSESSIONID=s{self._next_session}; Path=/"
            return response

        if request.method == "POST":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            self.posts.append((path, form))
        else:
            form = {}

        if path == "/login.do":
            if form.get("password") == self.secret and form.get("rnd") == "r4nd0mT0k3n":
                self.authenticated.add(session_id)
                return self._html("<html><body>Welcome</body></html>")
            return self._html(load_fixture("login.html"))

        if session_id not in self.authenticated:
            return self._redirect_to_login()

        if request.method == "POST":
            key = form.get("deptCode") or form.get("degCode") or ""
            if key in self.always_fail or self.fail_next[key] > 0:
                self.fail_next[key] -= 1
                return httpx.Response(503, text="Service Unavailable")
            if path == "/J_VCSC.do":
                term = form.get("applicablePeriod", "")
                html = self.term_results.get((term, key)) or self.schedule_results.get(key) or self.schedule_results["*"]
                return self._html(html)
            if path == "/J_VOFC.do":
                return self._html(self.curricula.get(key) or self.curricula["*"])

        html = self.pages.get(path)
        if html is None:
            return httpx.Response(404, text="Not Found")
        return self._html(html)


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def portal() -> FakePortal:
    return FakePortal()


@pytest.fixture
def config(tmp_path: Path) -> IngestConfig:
    """Configuration with no pacing and temp directories for artifacts."""
    return IngestConfig(
        _env_file=None,
        portal_url=PORTAL_URL,
        batch_delay_ms=0,
        term_probe_delay_ms=0,
        baseline_dir=str(tmp_path / "baselines"),
        raw_html_dir=str(tmp_path / "raw"),
    )


@pytest.fixture
def fixture_html():
    return load_fixture
