"""Adaptive batch crawler.

CrawlOrchestrator runs a fetch function over a list of work items in
batches. Batch size is the current concurrency:

    - starts at the ceiling
    - halves (floor 2) once two failures happen in a row
    - grows by 2 after a batch without failures, never above the ceiling

Failed items are reported through the progress callback and listed in the
result; nothing is retried here.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from src.ingest.logging import get_logger
from src.ingest.models import CrawlBatchResult, Extraction, ExtractionStatus, WorkItem
from src.ingest.normalize import course_prefix

log = get_logger(__name__)

MIN_CONCURRENCY = 2
RECOVERY_STEP = 2


class ItemState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ProgressEvent(BaseModel):
    """Outcome of one work item, delivered as soon as it completes."""

    key: str
    code: str
    state: ItemState
    count: int = 0
    extraction_status: ExtractionStatus | None = None
    records: list[Any] = Field(default_factory=list)
    error: str | None = None
    unchanged: bool = False  # same count as the previous run's baseline


FetchFn = Callable[[WorkItem], Awaitable[Extraction]]
ProgressCallback = Callable[[ProgressEvent], Awaitable[None] | None]


def prefix_histogram(records: Sequence[Any]) -> dict[str, int]:
    """Count records per course-code subject prefix."""
    counts: Counter[str] = Counter()
    for record in records:
        code = getattr(record, "course_code", None)
        if code:
            counts[course_prefix(code)] += 1
    return dict(counts)


class CrawlOrchestrator:
    """Bounded, adaptive worker pool over work items."""

    def __init__(
        self,
        fetch: FetchFn,
        *,
        concurrency: int = 8,
        batch_delay: float = 0.3,
        on_progress: ProgressCallback | None = None,
        baseline_counts: dict[str, int] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """Initialize CrawlOrchestrator.

        Args:
            fetch: Coroutine function fetching and extracting one work item.
            concurrency: Ceiling for the batch size.
            batch_delay: Seconds to wait between batches.
            on_progress: Called (sync or async) once per completed item.
            baseline_counts: Previous record counts per item code; used only
                to flag unchanged items in progress events.
            cancel_event: When set, the crawl stops and in-flight items are
                cancelled.
        """
        self.fetch = fetch
        self.ceiling = max(concurrency, 1)
        self.floor = min(MIN_CONCURRENCY, self.ceiling)
        self.batch_delay = batch_delay
        self.on_progress = on_progress
        self.baseline_counts = baseline_counts or {}
        self.cancel_event = cancel_event

        self.current_concurrency = self.ceiling
        self.consecutive_errors = 0
        self.states: dict[str, ItemState] = {}

    async def run(self, items: Sequence[WorkItem], *, term: str = "", kind: str = "department") -> CrawlBatchResult:
        """Crawl items for one term; results are keyed by item code.

        Raises:
            ValueError: If two items share a code (e.g. one department
                queued for two terms); crawl each term in its own run.
        """
        duplicates = sorted(code for code, n in Counter(item.code for item in items).items() if n > 1)
        if duplicates:
            raise ValueError(f"Duplicate work item codes in one run: {', '.join(duplicates)}")

        result = CrawlBatchResult(term=term, kind=kind)
        self.current_concurrency = self.ceiling
        self.consecutive_errors = 0
        self.states = {item.key: ItemState.PENDING for item in items}

        pending = deque(items)
        started = time.monotonic()
        log.info("crawl_started", term=term, kind=kind, items=len(items), concurrency=self.ceiling)

        while pending:
            if self._cancelled():
                result.cancelled = True
                break

            batch = [pending.popleft() for _ in range(min(self.current_concurrency, len(pending)))]
            result.batch_sizes.append(len(batch))
            failures_before = len(result.failed)

            if await self._run_batch(batch, result):
                result.cancelled = True
                break

            batch_errors = len(result.failed) - failures_before
            log.info(
                "crawl_batch_completed",
                batch=len(result.batch_sizes),
                size=len(batch),
                errors=batch_errors,
                concurrency=self.current_concurrency,
            )

            if batch_errors == 0 and self.current_concurrency < self.ceiling:
                self.current_concurrency = min(self.ceiling, self.current_concurrency + RECOVERY_STEP)
                log.info("concurrency_increased", concurrency=self.current_concurrency)

            if pending and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        result.unprocessed = [key for key, state in self.states.items() if state in (ItemState.PENDING, ItemState.IN_FLIGHT)]
        result.duration_seconds = round(time.monotonic() - started, 3)

        log.info(
            "crawl_finished",
            term=term,
            kind=kind,
            total=result.total,
            failed=len(result.failed),
            cancelled=result.cancelled,
            duration_seconds=result.duration_seconds,
        )
        return result

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def _run_batch(self, batch: list[WorkItem], result: CrawlBatchResult) -> bool:
        """Run one batch; return True if it was cancelled midway."""
        tasks = [asyncio.create_task(self._run_one(item, result)) for item in batch]
        if self.cancel_event is None:
            await asyncio.gather(*tasks)
            return False

        cancel_wait = asyncio.create_task(self.cancel_event.wait())
        remaining = set(tasks)
        try:
            while remaining:
                done, _ = await asyncio.wait(remaining | {cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
                for task in done - {cancel_wait}:
                    task.result()
                remaining -= done
                if cancel_wait in done:
                    for task in remaining:
                        task.cancel()
                    await asyncio.gather(*remaining, return_exceptions=True)
                    log.warning("crawl_cancelled", in_flight=len(remaining))
                    return True
        finally:
            cancel_wait.cancel()
        return False

    async def _run_one(self, item: WorkItem, result: CrawlBatchResult) -> None:
        self.states[item.key] = ItemState.IN_FLIGHT
        try:
            extraction = await self.fetch(item)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.states[item.key] = ItemState.FAILED
            result.failed[item.key] = f"{type(e).__name__}: {e}"
            self._record_failure(item)
            await self._emit(ProgressEvent(key=item.key, code=item.code, state=ItemState.FAILED, error=str(e)))
            return

        self.states[item.key] = ItemState.SUCCEEDED
        self.consecutive_errors = 0
        result.counts[item.code] = extraction.count
        result.prefix_histograms[item.code] = prefix_histogram(extraction.records)
        result.extractions[item.code] = extraction

        await self._emit(
            ProgressEvent(
                key=item.key,
                code=item.code,
                state=ItemState.SUCCEEDED,
                count=extraction.count,
                extraction_status=extraction.status,
                records=list(extraction.records),
                unchanged=self.baseline_counts.get(item.code) == extraction.count,
            )
        )

    def _record_failure(self, item: WorkItem) -> None:
        self.consecutive_errors += 1
        log.warning("crawl_item_failed", key=item.key, consecutive_errors=self.consecutive_errors)
        if self.consecutive_errors >= 2 and self.current_concurrency > self.floor:
            self.current_concurrency = max(self.floor, self.current_concurrency // 2)
            log.info("concurrency_reduced", concurrency=self.current_concurrency)

    async def _emit(self, event: ProgressEvent) -> None:
        if self.on_progress is None:
            return
        outcome = self.on_progress(event)
        if inspect.isawaitable(outcome):
            await outcome
