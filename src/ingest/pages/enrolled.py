"""EnrolledPage - currently enrolled classes (J_VCEC.do).

Columns: SUBJECT CODE | SECTION | DELIVERY MODE | BATCH | SCHEDULE | COURSE TITLE | INSTRUCTOR

Subject codes here carry the 5-digit term suffix ("LLAW 11312018") and
instructors are written "First LAST"; both are normalized and the raw
values kept.
"""

from urllib.parse import urljoin

from src.ingest.logging import get_logger
from src.ingest.models import EnrolledClass, Extraction, ExtractionStatus
from src.ingest.normalize import extract_term_from_code, normalize_course_code, normalize_instructor_name
from src.ingest.session import SessionManager
from src.ingest.utils import (
    ENROLLED_PATH,
    cell_text,
    column_map,
    find_tables,
    make_soup,
    row_cells,
    table_rows,
    value_at,
)

log = get_logger(__name__)

PORTAL_ORIGIN = "https://aisis.ateneo.edu/"

COLUMN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "code": ("subject code",),
    "section": ("section",),
    "delivery_mode": ("delivery", "mode"),
    "batch": ("batch",),
    "schedule": ("schedule",),
    "title": ("title",),
    "instructor": ("instructor",),
}

DEFAULT_COLUMNS = {name: index for index, name in enumerate(COLUMN_KEYWORDS)}


def parse_enrolled_html(html: str, source: str = "enrolled", base_url: str = PORTAL_ORIGIN) -> Extraction[EnrolledClass]:
    soup = make_soup(html)
    tables = find_tables(soup, [("subject code",), ("instructor",)])
    if not tables:
        return Extraction.from_html(html, ExtractionStatus.NOT_FOUND, source=source)

    classes: list[EnrolledClass] = []
    for table in tables:
        rows = table_rows(table)
        header = [cell_text(c) for c in row_cells(rows[0])]
        columns = column_map(header, COLUMN_KEYWORDS, DEFAULT_COLUMNS)
        for row in rows[1:]:
            cells = row_cells(row)
            texts = [cell_text(c) for c in cells]
            code_raw = value_at(texts, columns["code"])
            section = value_at(texts, columns["section"])
            if not code_raw or not section:
                continue

            syllabus_url = None
            for cell in cells:
                link = cell.find("a", href=lambda h: bool(h) and ("/syllabi/" in h or "syllabus" in h.lower()))
                if link is not None:
                    syllabus_url = urljoin(base_url, link["href"])
                    break

            instructor_raw = value_at(texts, columns["instructor"])
            classes.append(
                EnrolledClass(
                    course_code=normalize_course_code(code_raw),
                    course_code_raw=code_raw,
                    section=section,
                    delivery_mode=value_at(texts, columns["delivery_mode"]),
                    title=value_at(texts, columns["title"]),
                    instructor=normalize_instructor_name(instructor_raw),
                    instructor_raw=instructor_raw,
                    term=extract_term_from_code(code_raw),
                    syllabus_url=syllabus_url,
                    syllabus_available=not any("Not Available" in t for t in texts),
                )
            )

    return Extraction.from_html(html, ExtractionStatus.FOUND, classes, source=source)


class EnrolledPage:
    URL_PATH = ENROLLED_PATH

    def __init__(self, sessions: SessionManager, principal: str) -> None:
        self.sessions = sessions
        self.principal = principal

    async def fetch(self) -> Extraction[EnrolledClass]:
        extraction = parse_enrolled_html(await self.sessions.get(self.principal, self.URL_PATH))
        log.info("enrolled_classes_extracted", status=extraction.status.value, count=extraction.count)
        return extraction
