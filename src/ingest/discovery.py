"""Term and curriculum version discovery.

The schedule form only lists recent terms, but older and upcoming term
codes still answer queries. Discovery generates every plausible code
(YYYY-0 intersession, YYYY-1 first, YYYY-2 second semester), skips the
listed ones and probes the rest with a single all-departments search.

Probing is strictly sequential with a fixed pause: it is cheap to run
rarely and the portal does not tolerate bursts of heavy searches.
"""

import asyncio
from collections.abc import Callable, Iterable, Sequence

from pydantic import BaseModel

from src.ingest.errors import ScrapingError
from src.ingest.logging import get_logger
from src.ingest.models import ExtractionStatus, WorkItem
from src.ingest.pages.curriculum import CurriculumPage
from src.ingest.pages.schedule import ALL_DEPARTMENTS, SchedulePage
from src.ingest.parsers import build_degree_code
from src.ingest.session import SessionManager

log = get_logger(__name__)

_SEMESTER_NAMES = {0: "Intersession", 1: "First Semester", 2: "Second Semester"}


class TermInfo(BaseModel):
    code: str  # "2025-2"
    label: str
    year: int
    semester: int
    hidden: bool = False
    section_count: int | None = None


def generate_term_codes(start_year: int, end_year: int) -> list[str]:
    """Every term code from start_year to end_year inclusive.

    >>> generate_term_codes(2024, 2024)
    ['2024-0', '2024-1', '2024-2']
    """
    return [f"{year}-{semester}" for year in range(start_year, end_year + 1) for semester in (0, 1, 2)]


def _split_term(code: str) -> tuple[int, int]:
    year, _, semester = code.partition("-")
    return (int(year) if year.isdigit() else 0, int(semester) if semester.isdigit() else 0)


class TermDiscovery:
    """Finds queryable terms (and curriculum versions) missing from the selectors."""

    def __init__(
        self,
        sessions: SessionManager,
        principal: str,
        *,
        delay: float = 0.5,
        probe_department: str = ALL_DEPARTMENTS,
    ) -> None:
        self.schedule = SchedulePage(sessions, principal)
        self.curriculum = CurriculumPage(sessions, principal)
        self.delay = delay
        self.probe_department = probe_department

    async def list_terms(self) -> list[TermInfo]:
        """Terms advertised by the live term selector."""
        options, _ = await self.schedule.fetch_options()
        terms = []
        for option in options:
            year, semester = _split_term(option.code)
            terms.append(TermInfo(code=option.code, label=option.label, year=year, semester=semester))
        return terms

    async def probe_term(self, code: str) -> int:
        """Section count of a term, or -1 if the probe itself failed."""
        try:
            extraction = await self.schedule.fetch(WorkItem(term=code, code=self.probe_department))
        except ScrapingError as e:
            log.warning("term_probe_failed", term=code, error=str(e))
            return -1
        if extraction.status is not ExtractionStatus.FOUND:
            return 0
        return extraction.count

    async def discover(
        self,
        start_year: int,
        end_year: int,
        on_found: Callable[[TermInfo], None] | None = None,
    ) -> list[TermInfo]:
        """Listed terms plus every hidden term with data, newest first."""
        listed = await self.list_terms()
        listed_codes = {t.code for t in listed}
        candidates = [c for c in generate_term_codes(start_year, end_year) if c not in listed_codes]
        log.info("term_discovery_started", listed=len(listed), probing=len(candidates))

        discovered = list(listed)
        for index, code in enumerate(candidates):
            count = await self.probe_term(code)
            if count > 0:
                year, semester = _split_term(code)
                term = TermInfo(
                    code=code,
                    label=f"{year}-{year + 1} {_SEMESTER_NAMES.get(semester, '')} (hidden)",
                    year=year,
                    semester=semester,
                    hidden=True,
                    section_count=count,
                )
                discovered.append(term)
                log.info("hidden_term_found", term=code, sections=count)
                if on_found is not None:
                    on_found(term)
            if index < len(candidates) - 1 and self.delay > 0:
                await asyncio.sleep(self.delay)

        discovered.sort(key=lambda t: (t.year, t.semester), reverse=True)
        log.info("term_discovery_finished", total=len(discovered), hidden=len(discovered) - len(listed))
        return discovered

    async def probe_curriculum_versions(
        self,
        programs: Iterable[str],
        years: Iterable[int],
        semesters: Sequence[int] = (0, 1, 2),
    ) -> list[str]:
        """Degree codes PROGRAM_YEAR_SEM that display a curriculum but are not listed."""
        listed = {p.code for p in await self.curriculum.fetch_options()}
        years = list(years)
        candidates = [
            build_degree_code(program, year, semester)
            for program in programs
            for year in years
            for semester in semesters
        ]
        candidates = [c for c in candidates if c not in listed]

        hidden: list[str] = []
        for index, code in enumerate(candidates):
            try:
                extraction = await self.curriculum.fetch(WorkItem(code=code, kind="degree"))
            except ScrapingError as e:
                log.warning("curriculum_probe_failed", degree=code, error=str(e))
            else:
                if extraction.status is ExtractionStatus.FOUND and extraction.count > 0:
                    hidden.append(code)
                    log.info("hidden_curriculum_found", degree=code, courses=extraction.count)
            if index < len(candidates) - 1 and self.delay > 0:
                await asyncio.sleep(self.delay)
        return hidden
