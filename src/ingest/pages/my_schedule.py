"""MySchedulePage - personal weekly class grid (J_VMCS.do).

Grid: Time | Mon | Tue | Wed | Thur | Fri | Sat, one row per 30 minutes
("0700-0730"). A class occupies one cell per half hour:

    MATH 31.2 K2 G-206 (FULLY ONSITE)

Contiguous cells of the same class on the same day are merged into one
block ("1400-1430", "1430-1500" -> "1400-1500").
"""

import re

from src.ingest.logging import get_logger
from src.ingest.models import Extraction, ExtractionStatus, PersonalScheduleSlot
from src.ingest.session import SessionManager
from src.ingest.utils import (
    MY_SCHEDULE_PATH,
    cell_text,
    find_tables,
    make_soup,
    row_cells,
    table_rows,
)

log = get_logger(__name__)

_TRAILING_MODALITY_RE = re.compile(r"\s*\(([^)]+)\)\s*$")


def parse_grid_cell(content: str, day: str, time: str) -> PersonalScheduleSlot | None:
    """Split "CODE NUM SECTION ROOM (MODE)" into a slot."""
    match = _TRAILING_MODALITY_RE.search(content)
    modality = match.group(1).strip() if match else "FULLY ONSITE"
    parts = _TRAILING_MODALITY_RE.sub("", content).split()
    if not parts:
        return None

    code_parts = parts[:1]
    rest = parts[1:]
    if rest and (rest[0][0].isdigit() or "." in rest[0]):
        code_parts.append(rest.pop(0))

    return PersonalScheduleSlot(
        day=day,
        time=time,
        course_code=" ".join(code_parts),
        section=rest[0] if rest else "",
        room=rest[1] if len(rest) > 1 else "",
        modality=modality,
    )


def _start(slot: PersonalScheduleSlot) -> int:
    head = slot.time.split("-")[0]
    return int(head) if head.isdigit() else 0


def merge_contiguous(slots: list[PersonalScheduleSlot]) -> list[PersonalScheduleSlot]:
    """Merge back-to-back half hours of the same day, course and section."""
    groups: dict[tuple[str, str, str], list[PersonalScheduleSlot]] = {}
    for slot in slots:
        groups.setdefault((slot.day, slot.course_code, slot.section), []).append(slot)

    merged: list[PersonalScheduleSlot] = []
    for group in groups.values():
        group.sort(key=_start)
        first = group[0]
        start, _, end = first.time.partition("-")
        for slot in group[1:]:
            slot_start, _, slot_end = slot.time.partition("-")
            if slot_start == end:
                end = slot_end
                continue
            merged.append(first.model_copy(update={"time": f"{start}-{end}"}))
            first = slot
            start, end = slot_start, slot_end
        merged.append(first.model_copy(update={"time": f"{start}-{end}"}))
    return merged


def parse_my_schedule_html(html: str, source: str = "my_schedule") -> Extraction[PersonalScheduleSlot]:
    soup = make_soup(html)
    tables = find_tables(soup, [("time",), ("mon",)])
    if not tables:
        return Extraction.from_html(html, ExtractionStatus.NOT_FOUND, source=source)

    cells_found: list[PersonalScheduleSlot] = []
    for table in tables:
        rows = table_rows(table)
        days = [cell_text(c) for c in row_cells(rows[0])][1:]
        for row in rows[1:]:
            texts = [cell_text(c) for c in row_cells(row)]
            if len(texts) < 2:
                continue
            time = texts[0]
            for day, content in zip(days, texts[1:]):
                if not content:
                    continue
                slot = parse_grid_cell(content, day, time)
                if slot is not None:
                    cells_found.append(slot)

    return Extraction.from_html(html, ExtractionStatus.FOUND, merge_contiguous(cells_found), source=source)


class MySchedulePage:
    URL_PATH = MY_SCHEDULE_PATH

    def __init__(self, sessions: SessionManager, principal: str) -> None:
        self.sessions = sessions
        self.principal = principal

    async def fetch(self, term: str | None = None) -> Extraction[PersonalScheduleSlot]:
        path = f"{self.URL_PATH}?termCode={term}" if term else self.URL_PATH
        extraction = parse_my_schedule_html(await self.sessions.get(self.principal, path))
        log.info("personal_schedule_extracted", status=extraction.status.value, count=extraction.count)
        return extraction
