"""CurriculumPage - official curriculum viewer (J_VOFC.do).

A curriculum page has no per-row year or semester. The placement comes
from labels that appear *between* course tables:

    FIRST YEAR
      First Semester   <table> Cat No | Course Title | Units | ... </table>
      Second Semester  <table> ... </table>
      Intersession     <table> ... </table>
    SECOND YEAR
      ...

The page is read in a single document-order pass that yields label and
table events; CurriculumState turns them into (year, semester) for every
table. The individual plan of study page uses the same layout.
"""

import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Literal

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from src.ingest.logging import get_logger
from src.ingest.models import CurriculumCourse, DegreeProgram, Extraction, ExtractionStatus, WorkItem
from src.ingest.parsers import parse_degree_code, parse_prerequisites
from src.ingest.session import SessionManager
from src.ingest.utils import (
    CURRICULUM_PATH,
    cell_text,
    column_map,
    header_text,
    is_leaf_table,
    make_soup,
    parse_number,
    row_cells,
    select_options,
    table_rows,
    value_at,
)

log = get_logger(__name__)

_LABEL_RE = re.compile(
    r"(?P<year>\b(?:first|second|third|fourth|fifth|1st|2nd|3rd|4th|5th)\s+year\b)"
    r"|(?P<semester>\b(?:first|second|1st|2nd)\s+sem(?:ester)?\b|\bintersession\b|\bsummer\b)",
    re.IGNORECASE,
)

_ORDINALS = {
    "first": 1,
    "1st": 1,
    "second": 2,
    "2nd": 2,
    "third": 3,
    "3rd": 3,
    "fourth": 4,
    "4th": 4,
    "fifth": 5,
    "5th": 5,
}

COLUMN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "code": ("cat", "code", "subject", "course no"),
    "title": ("title", "description"),
    "units": ("unit",),
    "prerequisites": ("prereq", "pre-req", "pre req"),
    "corequisites": ("coreq", "co-req", "co req"),
    "category": ("categ",),
}

DEFAULT_COLUMNS: dict[str, int] = {
    "code": 0,
    "title": 1,
    "units": 2,
    "prerequisites": 3,
    "category": 4,
    "corequisites": -1,
}

_HEADER_CODES = ("cat no", "code", "course")


@dataclass
class CurriculumEvent:
    kind: Literal["year", "semester", "table"]
    value: int = 0
    table: Tag | None = None


@dataclass
class CurriculumState:
    """Running (year, semester) while walking a curriculum page."""

    year: int = 0
    semester: int = 0

    def apply(self, event: CurriculumEvent) -> None:
        if event.kind == "year":
            self.year = event.value
            self.semester = 1
        elif event.kind == "semester":
            self.semester = event.value


def _label_value(kind: str, text: str) -> int:
    word = text.split()[0].lower()
    if kind == "year":
        return _ORDINALS.get(word, 0)
    if word in ("intersession", "summer"):
        return 0
    return _ORDINALS.get(word, 0)


def iter_events(node: Tag, is_course_table: Callable[[Tag], bool]) -> Iterator[CurriculumEvent]:
    """Yield label and course table events in document order.

    Course tables are yielded whole and not descended into, so text inside
    them never produces a label event.
    """
    for child in node.children:
        if isinstance(child, Comment):
            continue
        if isinstance(child, NavigableString):
            for match in _LABEL_RE.finditer(str(child)):
                kind = "year" if match.group("year") else "semester"
                yield CurriculumEvent(kind=kind, value=_label_value(kind, match.group(0)))
        elif isinstance(child, Tag):
            if child.name in ("script", "style"):
                continue
            if child.name == "table" and is_course_table(child):
                yield CurriculumEvent(kind="table", table=child)
            else:
                yield from iter_events(child, is_course_table)


def placed_tables(soup: BeautifulSoup, is_course_table: Callable[[Tag], bool]) -> list[tuple[int, int, Tag]]:
    """Pair every course table with its inferred (year, semester).

    A page without any year label is flat: every table gets (0, 0).
    """
    events = list(iter_events(soup, is_course_table))
    flat = not any(e.kind == "year" for e in events)

    state = CurriculumState()
    placed: list[tuple[int, int, Tag]] = []
    for event in events:
        if event.kind == "table" and event.table is not None:
            if flat:
                placed.append((0, 0, event.table))
            else:
                placed.append((state.year, state.semester, event.table))
        else:
            state.apply(event)
    return placed


def is_curriculum_table(table: Tag) -> bool:
    if not is_leaf_table(table):
        return False
    header = header_text(table)
    return any(k in header for k in ("cat", "course", "subject")) and "unit" in header


def _parse_table(table: Tag, degree_code: str, year: int, semester: int) -> list[CurriculumCourse]:
    rows = table_rows(table)
    header = [cell_text(c) for c in row_cells(rows[0])]
    columns = column_map(header, COLUMN_KEYWORDS, DEFAULT_COLUMNS)

    courses: list[CurriculumCourse] = []
    for row in rows[1:]:
        texts = [cell_text(c) for c in row_cells(row)]
        if len(texts) < 3:
            continue
        code = value_at(texts, columns["code"])
        lowered = code.lower()
        if len(code) < 2 or lowered.startswith("total") or any(h in lowered for h in _HEADER_CODES):
            continue
        units = value_at(texts, columns["units"])
        if units and not re.search(r"\d", units):
            continue

        prerequisites = value_at(texts, columns["prerequisites"])
        courses.append(
            CurriculumCourse(
                degree_code=degree_code,
                course_code=code,
                title=value_at(texts, columns["title"]),
                units=parse_number(units),
                prerequisites=prerequisites,
                corequisites=value_at(texts, columns["corequisites"]),
                prerequisite_codes=parse_prerequisites(prerequisites).courses,
                year=year,
                semester=semester,
                category=value_at(texts, columns["category"]),
            )
        )
    return courses


def parse_curriculum_html(html: str, degree_code: str, source: str = "") -> Extraction[CurriculumCourse]:
    soup = make_soup(html)
    tables = placed_tables(soup, is_curriculum_table)
    if not tables:
        return Extraction.from_html(html, ExtractionStatus.NOT_FOUND, source=source)

    courses: list[CurriculumCourse] = []
    for year, semester, table in tables:
        courses.extend(_parse_table(table, degree_code, year, semester))

    log.debug("curriculum_parsed", source=source, tables=len(tables), courses=len(courses))
    return Extraction.from_html(html, ExtractionStatus.FOUND, courses, source=source)


def parse_degree_options(html: str) -> list[DegreeProgram]:
    programs: list[DegreeProgram] = []
    for code, name in select_options(make_soup(html), "degCode"):
        parsed = parse_degree_code(code)
        programs.append(
            DegreeProgram(
                code=code,
                name=name,
                program=parsed.program_code,
                is_honors=parsed.is_honors,
                track=parsed.track,
                specialization=parsed.specialization,
                version_year=parsed.year,
                version_semester=parsed.semester,
            )
        )
    return programs


class CurriculumPage:
    """Official curriculum viewer at /J_VOFC.do."""

    URL_PATH = CURRICULUM_PATH

    def __init__(self, sessions: SessionManager, principal: str) -> None:
        self.sessions = sessions
        self.principal = principal

    async def fetch_options(self) -> list[DegreeProgram]:
        html = await self.sessions.get(self.principal, self.URL_PATH)
        programs = parse_degree_options(html)
        log.info("curriculum_options_loaded", degrees=len(programs))
        return programs

    async def fetch(self, item: WorkItem) -> Extraction[CurriculumCourse]:
        """Display one degree's curriculum.

        The form is reloaded before every POST; the portal binds the
        selected degree to that form state.
        """
        await self.sessions.get(self.principal, self.URL_PATH)
        html = await self.sessions.post(
            self.principal,
            self.URL_PATH,
            {"degCode": item.code, "command": "display"},
        )
        return parse_curriculum_html(html, item.code, source=item.key)
