"""One ingestion run, end to end.

    SessionManager -> CrawlOrchestrator -> page extractors -> regression guard

IngestPipeline owns the session cache for the run. Retrying is done here,
never below: session acquisition retries transient portal failures with
exponential backoff, and failed work items get extra passes after the
session has been re-acquired.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Literal

import httpx
import structlog
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.ingest.config import IngestConfig, get_config
from src.ingest.crawl import CrawlOrchestrator, ProgressCallback
from src.ingest.discovery import TermDiscovery, TermInfo
from src.ingest.errors import (
    AccountNotLinkedError,
    AuthenticationError,
    PortalUnavailableError,
    ScrapingError,
    SessionExpiredError,
    TransientError,
)
from src.ingest.logging import get_logger, mask_principal
from src.ingest.models import (
    CrawlBatchResult,
    EnrolledClass,
    Extraction,
    ExtractionStatus,
    GradeEntry,
    HoldOrder,
    IPSCourse,
    IPSSummary,
    PersonalScheduleSlot,
    WorkItem,
)
from src.ingest.pages.curriculum import CurriculumPage
from src.ingest.pages.enrolled import EnrolledPage
from src.ingest.pages.grades import GradesPage, compute_qpi
from src.ingest.pages.holds import HoldsPage
from src.ingest.pages.ips import IPSPage
from src.ingest.pages.my_schedule import MySchedulePage
from src.ingest.pages.schedule import ALL_DEPARTMENTS, SchedulePage
from src.ingest.sanity import Baseline, BaselineTracker, GuardReport, load_baselines, run_guard
from src.ingest.session import Session, SessionManager

logger = get_logger(__name__)

PersonalKind = Literal["grades", "ips", "holds", "enrolled", "schedule"]
PERSONAL_KINDS: tuple[PersonalKind, ...] = ("grades", "ips", "holds", "enrolled", "schedule")

FetchCategory = Literal["not_linked", "session_invalid", "portal_unreachable", "extraction_empty"]


class PersonalFetchError(BaseModel):
    """Why one kind of personal record could not be fetched."""

    kind: str
    category: FetchCategory
    message: str


class PersonalRecords(BaseModel):
    """Personal data for one principal, scoped to a single invocation."""

    grades: list[GradeEntry] = Field(default_factory=list)
    qpi: float | None = None
    ips: list[IPSCourse] = Field(default_factory=list)
    ips_summary: IPSSummary | None = None
    holds: list[HoldOrder] = Field(default_factory=list)
    enrolled: list[EnrolledClass] = Field(default_factory=list)
    schedule: list[PersonalScheduleSlot] = Field(default_factory=list)
    statuses: dict[str, ExtractionStatus] = Field(default_factory=dict)
    errors: dict[str, PersonalFetchError] = Field(default_factory=dict)


def classify_error(kind: str, error: ScrapingError) -> PersonalFetchError:
    if isinstance(error, AccountNotLinkedError):
        category: FetchCategory = "not_linked"
    elif isinstance(error, (AuthenticationError, SessionExpiredError)):
        category = "session_invalid"
    elif isinstance(error, TransientError):
        category = "portal_unreachable"
    else:
        category = "extraction_empty"
    return PersonalFetchError(kind=kind, category=category, message=str(error))


def _merge_retry(result: CrawlBatchResult, retry_result: CrawlBatchResult) -> None:
    """Fold an extra pass over failed items back into the main result."""
    for key in list(result.failed):
        if key not in retry_result.failed:
            del result.failed[key]
    result.failed.update(retry_result.failed)
    result.counts.update(retry_result.counts)
    result.prefix_histograms.update(retry_result.prefix_histograms)
    result.extractions.update(retry_result.extractions)
    result.batch_sizes.extend(retry_result.batch_sizes)
    result.duration_seconds = round(result.duration_seconds + retry_result.duration_seconds, 3)
    result.cancelled = retry_result.cancelled
    result.unprocessed = retry_result.unprocessed


class IngestPipeline:
    """Wires session management, crawling and the regression guard."""

    def __init__(
        self,
        config: IngestConfig | None = None,
        *,
        sessions: SessionManager | None = None,
        tracker: BaselineTracker | None = None,
        baselines: dict[str, Baseline] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or get_config()
        self.sessions = sessions or SessionManager(self.config, transport=transport)
        self.tracker = tracker or BaselineTracker(
            self.config.baseline_dir,
            drop_threshold=self.config.baseline_dept_drop_threshold,
        )
        self.baselines = baselines if baselines is not None else load_baselines(self.config.baselines_file)

    @retry(
        retry=retry_if_exception_type(PortalUnavailableError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def acquire(self, principal: str, secret: str) -> Session:
        """Acquire a session, retrying only when the portal is unreachable."""
        return await self.sessions.acquire_session(principal, secret)

    async def _crawl(
        self,
        principal: str,
        secret: str,
        items: Sequence[WorkItem],
        fetch: Callable[[WorkItem], Awaitable[Extraction]],
        *,
        term: str,
        kind: str,
        concurrency: int,
        on_progress: ProgressCallback | None,
        cancel_event: asyncio.Event | None,
    ) -> tuple[CrawlBatchResult, GuardReport]:
        orchestrator = CrawlOrchestrator(
            fetch,
            concurrency=concurrency,
            batch_delay=self.config.batch_delay,
            on_progress=on_progress,
            baseline_counts=self.tracker.baseline_counts(term),
            cancel_event=cancel_event,
        )
        by_key = {item.key: item for item in items}

        # Orchestrator tasks inherit these context vars
        with structlog.contextvars.bound_contextvars(term=term, crawl_kind=kind):
            result = await orchestrator.run(items, term=term, kind=kind)

            for attempt in range(self.config.failed_item_passes):
                if not result.failed or result.cancelled:
                    break
                failed_items = [by_key[key] for key in result.failed if key in by_key]
                logger.info("crawl_retry_pass", attempt=attempt + 1, items=len(failed_items))
                try:
                    await self.acquire(principal, secret)
                except ScrapingError as e:
                    # Failed items stay listed; the finished pass still goes to the guard
                    logger.warning("crawl_retry_skipped", attempt=attempt + 1, error=str(e))
                    break
                _merge_retry(result, await orchestrator.run(failed_items, term=term, kind=kind))

            report = run_guard(result, self.tracker, self.baselines, self.config.raw_html_dir)
            if result.counts and not result.cancelled and (not report.comparison.has_baseline or report.ok):
                self.tracker.save_baseline(term, result)
        return result, report

    async def crawl_schedules(
        self,
        principal: str,
        secret: str,
        term: str,
        departments: Sequence[str] | None = None,
        *,
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> tuple[CrawlBatchResult, GuardReport]:
        """Crawl one term's class schedule, department by department.

        Departments default to every entry of the live selector except the
        all-departments pseudo code.
        """
        await self.acquire(principal, secret)
        page = SchedulePage(self.sessions, principal)
        if departments is None:
            _, options = await page.fetch_options()
            departments = [d.code for d in options if d.code != ALL_DEPARTMENTS]

        items = [WorkItem(term=term, code=code, kind="department") for code in departments]
        return await self._crawl(
            principal,
            secret,
            items,
            page.fetch,
            term=term,
            kind="department",
            concurrency=self.config.crawl_concurrency,
            on_progress=on_progress,
            cancel_event=cancel_event,
        )

    async def crawl_curricula(
        self,
        principal: str,
        secret: str,
        degrees: Sequence[str] | None = None,
        *,
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> tuple[CrawlBatchResult, GuardReport]:
        await self.acquire(principal, secret)
        page = CurriculumPage(self.sessions, principal)
        if degrees is None:
            degrees = [p.code for p in await page.fetch_options()]

        items = [WorkItem(code=code, kind="degree") for code in degrees]
        return await self._crawl(
            principal,
            secret,
            items,
            page.fetch,
            term="curriculum",
            kind="degree",
            concurrency=self.config.curriculum_concurrency,
            on_progress=on_progress,
            cancel_event=cancel_event,
        )

    async def discover_terms(self, principal: str, secret: str, start_year: int, end_year: int) -> list[TermInfo]:
        await self.acquire(principal, secret)
        discovery = TermDiscovery(self.sessions, principal, delay=self.config.term_probe_delay)
        return await discovery.discover(start_year, end_year)

    async def fetch_personal_records(
        self,
        principal: str,
        secret: str | None,
        kinds: Sequence[PersonalKind] = PERSONAL_KINDS,
    ) -> PersonalRecords:
        """Fetch personal records; failures are reported per record kind.

        Only ScrapingError subclasses are turned into PersonalFetchError
        entries; anything else propagates.
        """
        records = PersonalRecords()

        try:
            if not secret:
                raise AccountNotLinkedError(f"No portal credential linked for {mask_principal(principal)}")
            await self.acquire(principal, secret)
        except ScrapingError as e:
            for kind in kinds:
                records.errors[kind] = classify_error(kind, e)
            logger.warning("personal_fetch_aborted", principal=mask_principal(principal), error=str(e))
            return records

        fetchers = {
            "grades": GradesPage(self.sessions, principal).fetch,
            "ips": IPSPage(self.sessions, principal).fetch,
            "holds": HoldsPage(self.sessions, principal).fetch,
            "enrolled": EnrolledPage(self.sessions, principal).fetch,
            "schedule": MySchedulePage(self.sessions, principal).fetch,
        }
        outcomes = await asyncio.gather(*(fetchers[kind]() for kind in kinds), return_exceptions=True)

        for kind, outcome in zip(kinds, outcomes):
            if isinstance(outcome, ScrapingError):
                records.errors[kind] = classify_error(kind, outcome)
                continue
            if isinstance(outcome, BaseException):
                raise outcome

            summary = None
            if kind == "ips":
                outcome, summary = outcome
            try:
                extraction = outcome.require_table(kind)
            except ScrapingError as e:
                records.errors[kind] = classify_error(kind, e)
                continue

            records.statuses[kind] = extraction.status
            if kind == "grades":
                records.grades = extraction.records
                records.qpi = compute_qpi(records.grades)
            elif kind == "ips":
                records.ips = extraction.records
                records.ips_summary = summary
            elif kind == "holds":
                records.holds = extraction.records
            elif kind == "enrolled":
                records.enrolled = extraction.records
            elif kind == "schedule":
                records.schedule = extraction.records

        logger.info(
            "personal_fetch_finished",
            principal=mask_principal(principal),
            fetched=sorted(records.statuses),
            errors=sorted(records.errors),
        )
        return records

    async def aclose(self) -> None:
        await self.sessions.aclose()

    async def __aenter__(self) -> "IngestPipeline":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
