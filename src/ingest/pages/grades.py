"""GradesPage - final grades (J_VG.do).

Columns: School Year | Sem | Course | Subject Code | Course Title | Units | Final Grade
"""

from src.ingest.logging import get_logger
from src.ingest.models import Extraction, ExtractionStatus, GradeEntry
from src.ingest.session import SessionManager
from src.ingest.utils import (
    GRADES_PATH,
    cell_text,
    column_map,
    find_tables,
    make_soup,
    parse_number,
    row_cells,
    table_rows,
    value_at,
)

log = get_logger(__name__)

# 4.0 scale; None marks grades that carry no quality points (W, S, U, INC)
GRADE_POINTS: dict[str, float | None] = {
    "A": 4.0,
    "A-": 3.7,
    "B+": 3.3,
    "B": 3.0,
    "B-": 2.7,
    "C+": 2.3,
    "C": 2.0,
    "C-": 1.7,
    "D+": 1.3,
    "D": 1.0,
    "F": 0.0,
    "W": None,
    "S": None,
    "U": None,
    "INC": None,
}

COLUMN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "school_year": ("year",),
    "semester": ("sem",),
    "course": ("course",),
    "course_code": ("subject", "code"),
    "title": ("title",),
    "units": ("unit",),
    "final_grade": ("grade",),
}

DEFAULT_COLUMNS = {name: index for index, name in enumerate(COLUMN_KEYWORDS)}


def grade_points(grade: str) -> float | None:
    """Quality points of a final grade, None when it does not count."""
    value = grade.strip().upper()
    if value in GRADE_POINTS:
        return GRADE_POINTS[value]
    try:
        return float(value)
    except ValueError:
        return None


def compute_qpi(entries: list[GradeEntry]) -> float | None:
    """Unit-weighted cumulative QPI over the grades that carry points."""
    total_points = 0.0
    total_units = 0.0
    for entry in entries:
        points = grade_points(entry.final_grade)
        if points is None or entry.units <= 0:
            continue
        total_points += points * entry.units
        total_units += entry.units
    if total_units == 0:
        return None
    return round(total_points / total_units, 2)


def parse_grades_html(html: str, source: str = "grades") -> Extraction[GradeEntry]:
    soup = make_soup(html)
    tables = find_tables(soup, [("subject", "final grade")])
    if not tables:
        return Extraction.from_html(html, ExtractionStatus.NOT_FOUND, source=source)

    entries: list[GradeEntry] = []
    for table in tables:
        rows = table_rows(table)
        header = [cell_text(c) for c in row_cells(rows[0])]
        columns = column_map(header, COLUMN_KEYWORDS, DEFAULT_COLUMNS)
        for row in rows[1:]:
            texts = [cell_text(c) for c in row_cells(row)]
            code = value_at(texts, columns["course_code"])
            grade = value_at(texts, columns["final_grade"])
            if not code or not grade:
                continue
            entries.append(
                GradeEntry(
                    school_year=value_at(texts, columns["school_year"]),
                    semester=value_at(texts, columns["semester"]),
                    course=value_at(texts, columns["course"]),
                    course_code=code,
                    title=value_at(texts, columns["title"]),
                    units=parse_number(value_at(texts, columns["units"])),
                    final_grade=grade,
                )
            )

    return Extraction.from_html(html, ExtractionStatus.FOUND, entries, source=source)


class GradesPage:
    URL_PATH = GRADES_PATH

    def __init__(self, sessions: SessionManager, principal: str) -> None:
        self.sessions = sessions
        self.principal = principal

    async def fetch(self, term: str | None = None) -> Extraction[GradeEntry]:
        path = f"{self.URL_PATH}?termCode={term}" if term else self.URL_PATH
        extraction = parse_grades_html(await self.sessions.get(self.principal, path))
        log.info("grades_extracted", status=extraction.status.value, count=extraction.count)
        return extraction
