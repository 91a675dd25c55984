"""HoldsPage - hold orders (J_VHOR.do).

Usually a one-line prose message ("You have no pending Hold Orders");
a table only appears when holds exist.
"""

from src.ingest.logging import get_logger
from src.ingest.models import Extraction, ExtractionStatus, HoldOrder
from src.ingest.session import SessionManager
from src.ingest.utils import (
    HOLDS_PATH,
    cell_text,
    column_map,
    find_tables,
    make_soup,
    row_cells,
    table_rows,
    value_at,
)

log = get_logger(__name__)

NO_DATA_MARKERS = ("no pending hold orders", "no hold orders", "you have no")

COLUMN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "type": ("type", "hold"),
    "reason": ("reason", "remark"),
    "office": ("office", "department"),
    "date_placed": ("date",),
    "status": ("status",),
}

DEFAULT_COLUMNS = {name: index for index, name in enumerate(COLUMN_KEYWORDS)}


def parse_holds_html(html: str, source: str = "holds") -> Extraction[HoldOrder]:
    soup = make_soup(html)
    page_text = soup.get_text(" ").lower()
    if any(marker in page_text for marker in NO_DATA_MARKERS):
        return Extraction.from_html(html, ExtractionStatus.EXPLICIT_EMPTY, source=source)

    tables = find_tables(soup, [("type", "hold")])
    if not tables:
        return Extraction.from_html(html, ExtractionStatus.NOT_FOUND, source=source)

    holds: list[HoldOrder] = []
    for table in tables:
        rows = table_rows(table)
        header = [cell_text(c) for c in row_cells(rows[0])]
        columns = column_map(header, COLUMN_KEYWORDS, DEFAULT_COLUMNS)
        for row in rows[1:]:
            texts = [cell_text(c) for c in row_cells(row)]
            if len(texts) < 2:
                continue
            holds.append(
                HoldOrder(
                    type=value_at(texts, columns["type"]),
                    reason=value_at(texts, columns["reason"]),
                    office=value_at(texts, columns["office"]),
                    date_placed=value_at(texts, columns["date_placed"]) or None,
                    status=value_at(texts, columns["status"]) or "Active",
                )
            )
    return Extraction.from_html(html, ExtractionStatus.FOUND, holds, source=source)


class HoldsPage:
    URL_PATH = HOLDS_PATH

    def __init__(self, sessions: SessionManager, principal: str) -> None:
        self.sessions = sessions
        self.principal = principal

    async def fetch(self, term: str | None = None) -> Extraction[HoldOrder]:
        path = f"{self.URL_PATH}?termCode={term}" if term else self.URL_PATH
        extraction = parse_holds_html(await self.sessions.get(self.principal, path))
        log.info("holds_extracted", status=extraction.status.value, count=extraction.count)
        return extraction
