"""
Tests for the Adaptive Crawl Orchestrator.
==========================================

Tests for:
- Concurrency backoff after consecutive failures and recovery afterwards
- Failed and unprocessed work items
- Progress events (sync and async callbacks, unchanged flag)
- Cancellation
"""

import asyncio

import pytest

from src.ingest.crawl import CrawlOrchestrator, ItemState, ProgressEvent, prefix_histogram
from src.ingest.errors import PortalUnavailableError
from src.ingest.models import Extraction, ExtractionStatus, ScheduleSection, WorkItem

TERM = "2025-2"


def _items(prefix: str, count: int) -> list[WorkItem]:
    return [WorkItem(term=TERM, code=f"{prefix}{i}") for i in range(count)]


def _extraction(item: WorkItem, count: int = 1) -> Extraction:
    records = [
        ScheduleSection(course_code=f"CSCI {100 + i}", section="A", term=item.term, department=item.code)
        for i in range(count)
    ]
    return Extraction.from_html("<table></table>", ExtractionStatus.FOUND, records, source=item.key)


def _fetch_failing(codes: set[str], count: int = 1):
    async def fetch(item: WorkItem) -> Extraction:
        if item.code in codes:
            raise PortalUnavailableError(f"{item.code} returned 503")
        return _extraction(item, count)

    return fetch


def run(orchestrator: CrawlOrchestrator, items: list[WorkItem]):
    return asyncio.run(orchestrator.run(items, term=TERM, kind="department"))


# ─────────────────────────────────────────────────────────────────────────────
# Adaptive Concurrency
# ─────────────────────────────────────────────────────────────────────────────


class TestAdaptiveConcurrency:
    def test_all_succeed_at_ceiling(self):
        orchestrator = CrawlOrchestrator(_fetch_failing(set()), concurrency=4, batch_delay=0)
        result = run(orchestrator, _items("D", 10))

        assert result.batch_sizes == [4, 4, 2]
        assert result.failed == {}
        assert result.total == 10

    def test_consecutive_failures_halve_next_batch(self):
        items = _items("D", 20)
        failing = {item.code for item in items[:8]}
        orchestrator = CrawlOrchestrator(_fetch_failing(failing), concurrency=8, batch_delay=0)

        result = run(orchestrator, items)

        assert result.batch_sizes[0] == 8
        assert result.batch_sizes[1] <= max(2, 8 // 2)
        assert len(result.failed) == 8

    def test_concurrency_never_below_floor(self):
        items = _items("D", 12)
        orchestrator = CrawlOrchestrator(_fetch_failing({i.code for i in items}), concurrency=8, batch_delay=0)

        result = run(orchestrator, items)

        assert min(result.batch_sizes) >= 2
        assert orchestrator.current_concurrency == 2

    def test_recovery_grows_back_to_ceiling_only(self):
        items = _items("D", 36)
        failing = {item.code for item in items[:6]}
        orchestrator = CrawlOrchestrator(_fetch_failing(failing), concurrency=6, batch_delay=0)

        result = run(orchestrator, items)

        assert result.batch_sizes[:4] == [6, 2, 4, 6]
        assert max(result.batch_sizes) == 6
        assert sum(result.batch_sizes) == 36

    def test_success_resets_consecutive_errors(self):
        items = _items("D", 4)
        orchestrator = CrawlOrchestrator(_fetch_failing({items[0].code}), concurrency=1, batch_delay=0)

        result = run(orchestrator, items)

        assert orchestrator.consecutive_errors == 0
        assert result.batch_sizes == [1, 1, 1, 1]


# ─────────────────────────────────────────────────────────────────────────────
# Results
# ─────────────────────────────────────────────────────────────────────────────


class TestCrawlResult:
    def test_failed_items_listed_and_excluded_from_counts(self):
        items = _items("D", 5)
        orchestrator = CrawlOrchestrator(_fetch_failing({"D1", "D3"}, count=3), concurrency=8, batch_delay=0)

        result = run(orchestrator, items)

        assert set(result.failed) == {f"{TERM}:D1", f"{TERM}:D3"}
        assert "PortalUnavailableError" in result.failed[f"{TERM}:D1"]
        assert set(result.counts) == {"D0", "D2", "D4"}
        assert result.total == 9
        assert result.unprocessed == []
        assert result.records_for("D0")[0].course_code == "CSCI 100"
        assert result.records_for("D1") == []

    def test_prefix_histograms(self):
        orchestrator = CrawlOrchestrator(_fetch_failing(set(), count=2), concurrency=2, batch_delay=0)
        result = run(orchestrator, _items("D", 1))
        assert result.prefix_histograms == {"D0": {"CSCI": 2}}

    def test_prefix_histogram_helper(self):
        records = [
            ScheduleSection(course_code=code, section="A", term=TERM, department="MA")
            for code in ("MATH 10", "MATH 21", "ENGL 11")
        ]
        assert prefix_histogram(records) == {"MATH": 2, "ENGL": 1}

    def test_item_states(self):
        orchestrator = CrawlOrchestrator(_fetch_failing({"D0"}), concurrency=2, batch_delay=0)
        run(orchestrator, _items("D", 2))
        assert orchestrator.states == {f"{TERM}:D0": ItemState.FAILED, f"{TERM}:D1": ItemState.SUCCEEDED}

    def test_same_code_for_two_terms_rejected(self):
        calls: list[str] = []

        async def fetch(item: WorkItem) -> Extraction:
            calls.append(item.key)
            return _extraction(item)

        items = [WorkItem(term="2025-1", code="MA"), WorkItem(term="2025-2", code="MA")]
        orchestrator = CrawlOrchestrator(fetch, concurrency=2, batch_delay=0)

        with pytest.raises(ValueError, match="MA"):
            run(orchestrator, items)
        assert calls == []


# ─────────────────────────────────────────────────────────────────────────────
# Progress Events
# ─────────────────────────────────────────────────────────────────────────────


class TestProgress:
    def test_sync_callback_receives_every_item(self):
        events: list[ProgressEvent] = []
        orchestrator = CrawlOrchestrator(
            _fetch_failing({"D2"}, count=2), concurrency=2, batch_delay=0, on_progress=events.append
        )

        run(orchestrator, _items("D", 4))

        assert sorted(e.code for e in events) == ["D0", "D1", "D2", "D3"]
        failed = next(e for e in events if e.code == "D2")
        assert failed.state is ItemState.FAILED
        assert failed.error == "D2 returned 503"
        ok = next(e for e in events if e.code == "D0")
        assert ok.state is ItemState.SUCCEEDED
        assert ok.count == 2
        assert ok.extraction_status is ExtractionStatus.FOUND
        assert len(ok.records) == 2

    def test_async_callback_awaited(self):
        seen: list[str] = []

        async def on_progress(event: ProgressEvent) -> None:
            await asyncio.sleep(0)
            seen.append(event.key)

        orchestrator = CrawlOrchestrator(_fetch_failing(set()), concurrency=3, batch_delay=0, on_progress=on_progress)
        run(orchestrator, _items("D", 3))

        assert sorted(seen) == [f"{TERM}:D0", f"{TERM}:D1", f"{TERM}:D2"]

    def test_unchanged_flag_against_baseline(self):
        events: list[ProgressEvent] = []
        orchestrator = CrawlOrchestrator(
            _fetch_failing(set(), count=2),
            concurrency=2,
            batch_delay=0,
            on_progress=events.append,
            baseline_counts={"D0": 2, "D1": 5},
        )

        run(orchestrator, _items("D", 2))

        unchanged = {e.code: e.unchanged for e in events}
        assert unchanged == {"D0": True, "D1": False}


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────


class TestCancellation:
    def test_cancel_before_start(self):
        async def scenario():
            event = asyncio.Event()
            event.set()
            orchestrator = CrawlOrchestrator(_fetch_failing(set()), concurrency=2, batch_delay=0, cancel_event=event)
            return await orchestrator.run(_items("D", 3), term=TERM)

        result = asyncio.run(scenario())

        assert result.cancelled is True
        assert result.counts == {}
        assert len(result.unprocessed) == 3

    def test_cancel_mid_batch(self):
        async def scenario():
            event = asyncio.Event()

            async def fetch(item: WorkItem) -> Extraction:
                if item.code == "D1":
                    event.set()
                    return _extraction(item)
                await asyncio.sleep(5)
                return _extraction(item)

            orchestrator = CrawlOrchestrator(fetch, concurrency=2, batch_delay=0, cancel_event=event)
            return await orchestrator.run(_items("D", 6), term=TERM)

        result = asyncio.run(scenario())

        assert result.cancelled is True
        assert result.counts == {"D1": 1}
        assert f"{TERM}:D0" in result.unprocessed
        assert f"{TERM}:D5" in result.unprocessed
        assert f"{TERM}:D1" not in result.unprocessed
        assert result.batch_sizes == [2]
