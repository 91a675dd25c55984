"""IPSPage - individual plan of study (J_VIPS.do).

Same year/semester layout as the curriculum viewer, with a units summary
table on top:

    | Total Units | Units Taken | Remaining Units |
    | 189         | 23          | 166             |

Course tables: Status | Category No | Units | Category | Required? | Override Prerequisite?
The status cell holds a one or two letter link (P, C, N, IP, F).
"""

from bs4 import Tag

from src.ingest.logging import get_logger
from src.ingest.models import Extraction, ExtractionStatus, IPSCourse, IPSStatus, IPSSummary
from src.ingest.pages.curriculum import placed_tables
from src.ingest.session import SessionManager
from src.ingest.utils import (
    IPS_PATH,
    cell_text,
    column_map,
    header_text,
    is_leaf_table,
    make_soup,
    parse_number,
    row_cells,
    table_rows,
    value_at,
)

log = get_logger(__name__)

STATUS_MAP: dict[str, IPSStatus] = {
    "P": "passed",
    "C": "credited",
    "N": "not_taken",
    "IP": "in_progress",
    "F": "failed",
}

NO_DATA_MARKERS = (
    "no individual plan of study",
    "no ips",
    "ips is not available",
)

COLUMN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "status": ("status",),
    "course_code": ("category no", "cat no", "course no"),
    "units": ("unit",),
    "required": ("required",),
    "title": ("title", "description"),
}

DEFAULT_COLUMNS = {
    "status": 0,
    "course_code": 1,
    "units": 2,
    "title": 3,
    "required": 4,
}


def is_ips_table(table: Tag) -> bool:
    if not is_leaf_table(table):
        return False
    header = header_text(table)
    return "status" in header and "categ" in header and "units taken" not in header


def parse_ips_summary(html: str) -> IPSSummary:
    summary = IPSSummary()
    soup = make_soup(html)
    for table in soup.find_all("table"):
        rows = table_rows(table)
        for index, row in enumerate(rows[:-1]):
            labels = [cell_text(c).lower() for c in row_cells(row)]
            joined = " ".join(labels)
            if "total units" not in joined or "units taken" not in joined:
                continue
            values = [cell_text(c) for c in row_cells(rows[index + 1])]
            for column, label in enumerate(labels):
                value = parse_number(value_at(values, column))
                if "units taken" in label:
                    summary.units_taken = value
                elif "remaining" in label:
                    summary.remaining_units = value
                elif "total units" in label:
                    summary.total_units = value
            return summary
    return summary


def _parse_rows(table: Tag, year: int, semester: int) -> list[IPSCourse]:
    rows = table_rows(table)
    header = [cell_text(c) for c in row_cells(rows[0])]
    columns = column_map(header, COLUMN_KEYWORDS, DEFAULT_COLUMNS)

    courses: list[IPSCourse] = []
    for row in rows[1:]:
        cells = row_cells(row)
        texts = [cell_text(c) for c in cells]
        if len(texts) < 4:
            continue
        code = value_at(texts, columns["course_code"])
        if not code or "categ" in code.lower() or "status" in code.lower():
            continue

        status_index = columns["status"]
        link = cells[status_index].find("a") if status_index < len(cells) else None
        status_code = (cell_text(link) if link is not None else "") or value_at(texts, status_index)
        status_code = status_code.upper()

        courses.append(
            IPSCourse(
                course_code=code,
                title=value_at(texts, columns["title"]),
                units=parse_number(value_at(texts, columns["units"])),
                status=STATUS_MAP.get(status_code, "not_taken"),
                status_code=status_code,
                year=year,
                semester=semester,
                required=value_at(texts, columns["required"]).upper() == "Y",
            )
        )
    return courses


def parse_ips_html(html: str, source: str = "ips") -> tuple[Extraction[IPSCourse], IPSSummary]:
    soup = make_soup(html)
    tables = placed_tables(soup, is_ips_table)
    summary = parse_ips_summary(html)

    if not tables:
        text = soup.get_text(" ").lower()
        status = (
            ExtractionStatus.EXPLICIT_EMPTY
            if any(marker in text for marker in NO_DATA_MARKERS)
            else ExtractionStatus.NOT_FOUND
        )
        return Extraction.from_html(html, status, source=source), summary

    courses: list[IPSCourse] = []
    for year, semester, table in tables:
        courses.extend(_parse_rows(table, year, semester))
    return Extraction.from_html(html, ExtractionStatus.FOUND, courses, source=source), summary


class IPSPage:
    URL_PATH = IPS_PATH

    def __init__(self, sessions: SessionManager, principal: str) -> None:
        self.sessions = sessions
        self.principal = principal

    async def fetch(self) -> tuple[Extraction[IPSCourse], IPSSummary]:
        extraction, summary = parse_ips_html(await self.sessions.get(self.principal, self.URL_PATH))
        log.info(
            "ips_extracted",
            status=extraction.status.value,
            count=extraction.count,
            progress=summary.progress_percentage,
        )
        return extraction, summary
