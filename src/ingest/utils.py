"""Shared portal utilities: endpoint paths, read-only guardrails, HTML table helpers."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

from bs4 import BeautifulSoup, Tag

from src.ingest.errors import PermanentError
from src.ingest.logging import get_logger

log = get_logger(__name__)

# Portal endpoints, relative to IngestConfig.portal_url
LOGIN_PAGE_PATH = "/displayLogin.do"
LOGIN_ACTION_PATH = "/login.do"
WELCOME_PATH = "/welcome.do"
SCHEDULE_PATH = "/J_VCSC.do"
CURRICULUM_PATH = "/J_VOFC.do"
MY_SCHEDULE_PATH = "/J_VMCS.do"
GRADES_PATH = "/J_VG.do"
IPS_PATH = "/J_VIPS.do"
HOLDS_PATH = "/J_VHOR.do"
ENROLLED_PATH = "/J_VCEC.do"

# Authenticated-only page used to verify a fresh login
VERIFY_PATH = MY_SCHEDULE_PATH

# Markers of the login page; an authenticated request that lands on one of
# these has lost its session.
LOGIN_MARKERS: tuple[str, ...] = ("displayLogin.do", "login.do")

# Methods that could modify portal state
_BLOCKED_METHODS: frozenset[str] = frozenset({"PUT", "DELETE", "PATCH"})

# Form endpoints that are safe to POST in read-only mode (search queries and login)
WHITELISTED_POST_PATHS: frozenset[str] = frozenset(
    {
        LOGIN_ACTION_PATH,
        SCHEDULE_PATH,
        CURRICULUM_PATH,
    }
)


def check_read_only(method: str, path: str) -> None:
    """Refuse any request that could change portal state.

    GET is always allowed. POST is allowed only to whitelisted query
    endpoints; the portal uses POST for searches, but other POST targets
    (enlistment, profile forms) must never be hit by the crawler.

    Raises:
        PermanentError: If the request is blocked.
    """
    verb = method.upper()
    bare_path = path.split("?", 1)[0]
    if verb in _BLOCKED_METHODS or (verb == "POST" and bare_path not in WHITELISTED_POST_PATHS):
        log.warning("blocked_mutating_request", method=verb, path=path)
        raise PermanentError(f"Blocked {verb} {path}: portal access is read-only")


# ---------------------------------------------------------------------------
# HTML helpers
# ---------------------------------------------------------------------------
def make_soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def clean_text(value: str) -> str:
    return " ".join(value.split())


def cell_text(cell: Tag | None) -> str:
    """Whitespace-collapsed text of a cell ("" for a missing cell)."""
    if cell is None:
        return ""
    return clean_text(cell.get_text(" "))


def cell_lines(cell: Tag | None) -> list[str]:
    """Non-empty text lines of a cell, splitting on <br> and block breaks."""
    if cell is None:
        return []
    text = cell.get_text("\n")
    return [clean_text(line) for line in text.split("\n") if line.strip()]


def table_rows(table: Tag) -> list[Tag]:
    """Rows of this table only, not of tables nested inside it."""
    return [row for row in table.find_all("tr") if row.find_parent("table") is table]


def row_cells(row: Tag) -> list[Tag]:
    return row.find_all(["td", "th"], recursive=False)


def is_leaf_table(table: Tag) -> bool:
    return table.find("table") is None


def header_text(table: Tag) -> str:
    """Lower-cased text of the table's first row."""
    rows = table_rows(table)
    if not rows:
        return ""
    return cell_text(rows[0]).lower()


def find_tables(
    soup: BeautifulSoup,
    required: Sequence[Iterable[str]],
    *,
    leaf_only: bool = True,
) -> list[Tag]:
    """Find tables whose header row matches keyword groups.

    Every group in ``required`` must have at least one keyword present in
    the header row (lower-cased). Order of columns is irrelevant, which is
    what makes this robust against layout drift.

    Example:
        find_tables(soup, [("subject",), ("section", "sect")])
    """
    matches: list[Tag] = []
    for table in soup.find_all("table"):
        if leaf_only and not is_leaf_table(table):
            continue
        header = header_text(table)
        if not header:
            continue
        if all(any(keyword in header for keyword in group) for group in required):
            matches.append(table)
    return matches


def column_map(
    header_cells: Sequence[str],
    keywords: dict[str, Sequence[str]],
    defaults: dict[str, int],
) -> dict[str, int]:
    """Map field names to column positions.

    Header labels are matched against keyword lists; a field whose label is
    not recognised keeps its default position.
    """
    lowered = [h.lower() for h in header_cells]
    mapping = dict(defaults)
    taken: set[int] = set()
    for field, words in keywords.items():
        for idx, label in enumerate(lowered):
            if idx in taken:
                continue
            if any(word in label for word in words):
                mapping[field] = idx
                taken.add(idx)
                break
    return mapping


def value_at(cells: Sequence[str], index: int | None) -> str:
    if index is None or index < 0 or index >= len(cells):
        return ""
    return cells[index]


_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


def parse_number(value: str) -> float:
    """First number in a cell, 0 when absent ("3.0 units" -> 3.0)."""
    match = _NUMBER_RE.search(value or "")
    return float(match.group(0)) if match else 0.0


def parse_int(value: str) -> int:
    return int(parse_number(value))


def select_options(soup: BeautifulSoup, name: str) -> list[tuple[str, str]]:
    """(value, label) pairs of a <select name=...>, skipping empty values."""
    select = soup.find("select", attrs={"name": name})
    if select is None:
        return []
    options: list[tuple[str, str]] = []
    for option in select.find_all("option"):
        value = (option.get("value") or "").strip()
        if value:
            options.append((value, cell_text(option)))
    return options


def is_login_form(html: str) -> bool:
    """True when the page is the login form itself (it carries the rnd token input)."""
    if not html:
        return False
    return make_soup(html).find("input", attrs={"name": "rnd"}) is not None
