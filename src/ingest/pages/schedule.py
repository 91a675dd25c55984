"""SchedulePage - class schedule search (J_VCSC.do).

The search form is a plain POST; results come back as one table:

    Subject Code | Section | Course Title | Units | Time | Room | Instructor |
    Max No | Lang | Level | Free Slots | Remarks | S | P

Time cells hold one line per meeting range, each optionally followed by a
parenthesised modality:

    M-TH 0800-0930
    (FULLY ONSITE)
    SAT 1300-1600
    (FULLY ONLINE)

Column order has drifted across portal releases, so columns are mapped
from header labels first and fixed positions second.
"""

import asyncio
import re

from bs4 import Tag

from src.ingest.logging import get_logger
from src.ingest.models import (
    Department,
    Extraction,
    ExtractionStatus,
    ScheduleSection,
    ScheduleSlot,
    TermOption,
    WorkItem,
)
from src.ingest.normalize import normalize_instructor_name
from src.ingest.session import SessionManager
from src.ingest.utils import (
    SCHEDULE_PATH,
    cell_lines,
    cell_text,
    column_map,
    find_tables,
    make_soup,
    parse_int,
    parse_number,
    row_cells,
    select_options,
    table_rows,
    value_at,
)

log = get_logger(__name__)

ALL_DEPARTMENTS = "**IE**"

# Header keywords per field; unmatched fields fall back to DEFAULT_COLUMNS
COLUMN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "code": ("subject", "subj"),
    "section": ("section", "sect"),
    "title": ("title",),
    "units": ("unit",),
    "time": ("time", "schedule"),
    "room": ("room",),
    "instructor": ("instructor", "faculty"),
    "capacity": ("max", "capacity"),
    "language": ("lang",),
    "level": ("level",),
    "free_slots": ("free",),
    "remarks": ("remark",),
}

DEFAULT_COLUMNS: dict[str, int] = {
    "code": 0,
    "section": 1,
    "title": 2,
    "units": 3,
    "time": 4,
    "room": 5,
    "instructor": 6,
    "capacity": 7,
    "language": 8,
    "level": 9,
    "free_slots": 10,
    "remarks": 11,
    "s": 12,
    "p": 13,
}

_TIME_RANGE_RE = re.compile(r"^([A-Z-]+)\s+(\d{2}:?\d{2})-(\d{2}:?\d{2})(.*)$", re.IGNORECASE)
_MODALITY_RE = re.compile(r"\(([^)]+)\)")

_DAY_NAMES = {
    "M": "Monday",
    "T": "Tuesday",
    "W": "Wednesday",
    "F": "Friday",
    "S": "Saturday",
}


def expand_days(code: str) -> list[str]:
    """Explode a day code into weekday names.

    Dashes are separators only. "TH" and "SU" are read before single
    letters, and "SAT" is Saturday.

    >>> expand_days("M-TH")
    ['Monday', 'Thursday']
    >>> expand_days("MWF")
    ['Monday', 'Wednesday', 'Friday']
    """
    letters = code.replace("-", "").upper()
    days: list[str] = []
    i = 0
    while i < len(letters):
        if letters.startswith("SAT", i):
            days.append("Saturday")
            i += 3
        elif letters.startswith("TH", i):
            days.append("Thursday")
            i += 2
        elif letters.startswith("SU", i):
            days.append("Sunday")
            i += 2
        else:
            day = _DAY_NAMES.get(letters[i])
            if day:
                days.append(day)
            i += 1
    return days


def _format_time(raw: str) -> str:
    return raw if ":" in raw else f"{raw[:2]}:{raw[2:]}"


def _modality(annotation: str) -> str:
    return annotation.strip().upper().removeprefix("FULLY ").strip() or "ONSITE"


def parse_time_slots(time_lines: list[str], room_lines: list[str] | None = None) -> list[ScheduleSlot]:
    """Turn the lines of a time cell into one slot per meeting day.

    A modality line belongs to the time range above it. Rooms are matched
    to time ranges by position; a single room applies to every range.
    """
    room_lines = room_lines or []
    ranges: list[tuple[str, str, str, str | None]] = []  # days, start, end, modality

    for line in time_lines:
        match = _TIME_RANGE_RE.match(line)
        if match:
            days, start, end, rest = match.groups()
            inline = _MODALITY_RE.search(rest)
            ranges.append((days, _format_time(start), _format_time(end), inline.group(1) if inline else None))
            continue
        annotation = _MODALITY_RE.fullmatch(line.strip())
        if annotation and ranges and ranges[-1][3] is None:
            days, start, end, _ = ranges[-1]
            ranges[-1] = (days, start, end, annotation.group(1))

    slots: list[ScheduleSlot] = []
    for index, (days, start, end, modality) in enumerate(ranges):
        if index < len(room_lines):
            room = room_lines[index]
        elif len(room_lines) == 1:
            room = room_lines[0]
        else:
            room = None
        for day in expand_days(days):
            slots.append(
                ScheduleSlot(
                    day=day,
                    start_time=start,
                    end_time=end,
                    room=room or None,
                    modality=_modality(modality or ""),
                )
            )
    return slots


def _parse_row(cells: list[Tag], columns: dict[str, int], term: str, department: str) -> ScheduleSection | None:
    texts = [cell_text(c) for c in cells]
    code = value_at(texts, columns["code"])
    if len(code) < 2 or "subject" in code.lower():
        return None

    def lines(field: str) -> list[str]:
        index = columns[field]
        return cell_lines(cells[index]) if 0 <= index < len(cells) else []

    prereq_flag = value_at(texts, columns["p"])
    instructor = normalize_instructor_name(value_at(texts, columns["instructor"]))

    return ScheduleSection(
        course_code=code,
        section=value_at(texts, columns["section"]),
        title=value_at(texts, columns["title"]),
        units=parse_number(value_at(texts, columns["units"])),
        instructor=instructor or None,
        capacity=parse_int(value_at(texts, columns["capacity"])),
        free_slots=parse_int(value_at(texts, columns["free_slots"])),
        slots=parse_time_slots(lines("time"), lines("room")),
        language=value_at(texts, columns["language"]),
        level=value_at(texts, columns["level"]),
        remarks=value_at(texts, columns["remarks"]),
        has_prerequisites=bool(prereq_flag) and prereq_flag != "-",
        term=term,
        department=department,
    )


def parse_schedule_html(html: str, term: str, department: str, source: str = "") -> Extraction[ScheduleSection]:
    """Extract schedule sections from a search result page.

    Never raises: a page without a result table gives NOT_FOUND, a result
    table without data rows gives FOUND with no records.
    """
    soup = make_soup(html)
    tables = find_tables(soup, [COLUMN_KEYWORDS["code"], COLUMN_KEYWORDS["section"]])
    if not tables:
        return Extraction.from_html(html, ExtractionStatus.NOT_FOUND, source=source)

    sections: list[ScheduleSection] = []
    for table in tables:
        rows = table_rows(table)
        header = [cell_text(c) for c in row_cells(rows[0])]
        columns = column_map(header, COLUMN_KEYWORDS, DEFAULT_COLUMNS)
        lowered = [h.lower() for h in header]
        if "p" in lowered:
            columns["p"] = lowered.index("p")

        for row in rows[1:]:
            cells = row_cells(row)
            if not cells:
                continue
            section = _parse_row(cells, columns, term, department)
            if section is not None:
                sections.append(section)

    log.debug("schedule_parsed", source=source, tables=len(tables), sections=len(sections))
    return Extraction.from_html(html, ExtractionStatus.FOUND, sections, source=source)


def parse_schedule_options(html: str) -> tuple[list[TermOption], list[Department]]:
    """Read the term and department selectors of the search form."""
    soup = make_soup(html)
    terms = [TermOption(code=value, label=label) for value, label in select_options(soup, "applicablePeriod")]
    departments = [
        Department(code=value, name="All Departments" if value == ALL_DEPARTMENTS else label)
        for value, label in select_options(soup, "deptCode")
    ]
    return terms, departments


class SchedulePage:
    """Class schedule search at /J_VCSC.do.

    The portal keeps search form state server-side, so the form is fetched
    once per session before the first search POST.
    """

    URL_PATH = SCHEDULE_PATH

    def __init__(self, sessions: SessionManager, principal: str) -> None:
        self.sessions = sessions
        self.principal = principal
        self._primed_session_id: str | None = None
        self._prime_lock = asyncio.Lock()

    def _session_id(self) -> str | None:
        session = self.sessions.current_session(self.principal)
        return session.session_id if session else None

    async def fetch_options(self) -> tuple[list[TermOption], list[Department]]:
        session_id = self._session_id()
        html = await self.sessions.get(self.principal, self.URL_PATH)
        # Loading the selector is the same GET that primes the form
        self._primed_session_id = session_id
        terms, departments = parse_schedule_options(html)
        log.info("schedule_options_loaded", terms=len(terms), departments=len(departments))
        return terms, departments

    async def _prime_form(self) -> None:
        async with self._prime_lock:
            session_id = self._session_id()
            if session_id is not None and session_id == self._primed_session_id:
                return
            await self.sessions.get(self.principal, self.URL_PATH)
            self._primed_session_id = session_id
            log.debug("schedule_form_primed")

    async def fetch(self, item: WorkItem) -> Extraction[ScheduleSection]:
        """Run one (term, department) search and extract its sections.

        Raises:
            SessionExpiredError: If the portal bounced the request to login.
            PortalUnavailableError: On network error, timeout or 5xx.
        """
        await self._prime_form()
        html = await self.sessions.post(
            self.principal,
            self.URL_PATH,
            {
                "applicablePeriod": item.term,
                "deptCode": item.code,
                "subjCode": "ALL",
                "command": "displayResults",
            },
        )
        return parse_schedule_html(html, item.term, item.code, source=item.key)
