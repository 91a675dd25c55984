"""Regression guard for crawl results.

The portal sometimes answers a department query with another department's
rows, or with a truncated table, and still returns HTTP 200. These checks
catch that before records reach storage:

    1. per-department sanity: minimum volume, required subject prefixes,
       and a "data bleeding" heuristic (warning only)
    2. comparison with the previous run's snapshot for the same term

Nothing here aborts a crawl. GuardReport.raise_for_regressions() lets the
caller turn a bad report into RegressionDetected.
"""

from __future__ import annotations

import json
import re
from collections import Counter
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from src.ingest.errors import RegressionDetected
from src.ingest.logging import get_logger
from src.ingest.models import CrawlBatchResult
from src.ingest.normalize import course_prefix

log = get_logger(__name__)


class Baseline(BaseModel):
    """Declared expectation for one department. Never mutated by a crawl."""

    min_count: int
    required_prefixes: list[str] = Field(default_factory=list)
    description: str = ""


DEPARTMENT_BASELINES: dict[str, Baseline] = {
    "MA": Baseline(
        min_count=150,
        required_prefixes=["MATH"],
        description="Mathematics - must have MATH prefixed courses",
    ),
    "PE": Baseline(
        min_count=50,
        required_prefixes=["PEPC", "PHYED", "NSTP"],
        description="Physical Education - must have PEPC, PHYED, or NSTP courses",
    ),
    "DISCS": Baseline(
        min_count=200,
        required_prefixes=["CSCI", "CS", "IT", "ITMGT"],
        description="Computer Science - must have CS/CSCI prefixed courses",
    ),
    "NSTP (ADAST)": Baseline(
        min_count=10,
        required_prefixes=["NSTP"],
        description="NSTP ADAST - must have NSTP courses",
    ),
    "NSTP (OSCI)": Baseline(
        min_count=10,
        required_prefixes=["NSTP"],
        description="NSTP OSCI - must have NSTP courses",
    ),
}


def load_baselines(path: str | None) -> dict[str, Baseline]:
    """Declared baselines, with entries from a JSON file taking precedence.

    The file maps department codes to Baseline fields:
        {"MA": {"min_count": 120, "required_prefixes": ["MATH"]}}
    """
    baselines = dict(DEPARTMENT_BASELINES)
    if not path:
        return baselines
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    for department, fields in data.items():
        baselines[department] = Baseline.model_validate(fields)
    log.info("baselines_loaded", path=path, departments=len(data))
    return baselines


# ---------------------------------------------------------------------------
# Per-department sanity
# ---------------------------------------------------------------------------
class SanityCheckResult(BaseModel):
    department: str
    passed: bool = True
    count: int = 0
    expected_min: int = 0
    prefix_counts: dict[str, int] = Field(default_factory=dict)
    missing_prefixes: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    raw_html_path: str | None = None


def _safe_name(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]+", "_", value).strip("_") or "unknown"


def save_raw_html(directory: str, label: str, department: str, html: str) -> Path:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    path = Path(directory) / f"{label}-{_safe_name(department)}-{stamp}.html"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(html, encoding="utf-8")
    return path


def _looks_bled(department: str, prefix: str) -> bool:
    dept_stem = department.split(" ")[0][:2].upper()
    prefix_stem = prefix[:2].upper()
    return dept_stem not in prefix.upper() and prefix_stem not in department.upper()


def check_department_sanity(
    department: str,
    records: Sequence[Any],
    baselines: dict[str, Baseline] | None = None,
    *,
    raw_html: str | None = None,
    raw_html_dir: str | None = None,
) -> SanityCheckResult:
    """Check one department's records against its declared baseline.

    Fails when the count is below the minimum or when *all* required
    prefixes are missing. Partial prefix coverage and suspected bleeding
    are warnings only.
    """
    baselines = DEPARTMENT_BASELINES if baselines is None else baselines
    baseline = baselines.get(department)

    prefixes: Counter[str] = Counter(course_prefix(getattr(r, "course_code", "")) for r in records)
    result = SanityCheckResult(
        department=department,
        count=len(records),
        expected_min=baseline.min_count if baseline else 0,
        prefix_counts=dict(prefixes),
    )

    if baseline is not None:
        if len(records) < baseline.min_count:
            result.passed = False
            result.warnings.append(f"Only {len(records)} records, expected at least {baseline.min_count}")

        if baseline.required_prefixes:
            result.missing_prefixes = [p for p in baseline.required_prefixes if p not in prefixes]
            if len(result.missing_prefixes) == len(baseline.required_prefixes):
                result.passed = False
                result.warnings.append(f"Missing all required prefixes: {', '.join(baseline.required_prefixes)}")
            elif result.missing_prefixes:
                result.warnings.append(f"Missing some required prefixes: {', '.join(result.missing_prefixes)}")

    if prefixes:
        top_prefix, top_count = prefixes.most_common(1)[0]
        declared = baseline.required_prefixes if baseline else []
        if top_prefix not in declared and _looks_bled(department, top_prefix):
            result.warnings.append(
                f"Possible data bleeding: dept={department} but most courses are {top_prefix} ({top_count})"
            )

    if not result.passed:
        log.error("sanity_check_failed", department=department, warnings=result.warnings)
        if raw_html and raw_html_dir:
            result.raw_html_path = str(save_raw_html(raw_html_dir, "sanity-failed", department, raw_html))
    elif result.warnings:
        log.warning("sanity_check_warning", department=department, warnings=result.warnings)
    else:
        log.debug("sanity_check_passed", department=department, count=len(records))

    return result


# ---------------------------------------------------------------------------
# Previous-run comparison
# ---------------------------------------------------------------------------
class DepartmentSnapshot(BaseModel):
    count: int
    prefix_counts: dict[str, int] = Field(default_factory=dict)


class BaselineSnapshot(BaseModel):
    term: str
    timestamp: str
    total: int
    departments: dict[str, DepartmentSnapshot] = Field(default_factory=dict)


class Regression(BaseModel):
    department: str
    baseline: int
    current: int
    drop_percent: int


class Improvement(BaseModel):
    department: str
    baseline: int
    current: int


class BaselineComparisonResult(BaseModel):
    has_baseline: bool = False
    regressions: list[Regression] = Field(default_factory=list)
    improvements: list[Improvement] = Field(default_factory=list)


class BaselineTracker:
    """Per-term snapshots of record counts, stored as JSON files.

    Layout: {baseline_dir}/baseline-{term}.json
    """

    IMPROVEMENT_RATIO = 1.1

    def __init__(self, baseline_dir: str, drop_threshold: float = 0.5) -> None:
        self.baseline_dir = Path(baseline_dir)
        self.drop_threshold = drop_threshold
        self._loaded: dict[str, BaselineSnapshot] = {}

    def _path(self, term: str) -> Path:
        return self.baseline_dir / f"baseline-{_safe_name(term)}.json"

    def load_baseline(self, term: str) -> BaselineSnapshot | None:
        if term in self._loaded:
            return self._loaded[term]
        path = self._path(term)
        if not path.exists():
            return None
        try:
            snapshot = BaselineSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            log.warning("baseline_load_failed", term=term, path=str(path), error=str(e))
            return None
        self._loaded[term] = snapshot
        log.info("baseline_loaded", term=term, total=snapshot.total)
        return snapshot

    def baseline_counts(self, term: str) -> dict[str, int]:
        snapshot = self.load_baseline(term)
        if snapshot is None:
            return {}
        return {code: dept.count for code, dept in snapshot.departments.items()}

    def save_baseline(self, term: str, result: CrawlBatchResult) -> BaselineSnapshot:
        snapshot = BaselineSnapshot(
            term=term,
            timestamp=datetime.now(timezone.utc).isoformat(),
            total=result.total,
            departments={
                code: DepartmentSnapshot(count=count, prefix_counts=result.prefix_histograms.get(code, {}))
                for code, count in result.counts.items()
            },
        )
        self.baseline_dir.mkdir(parents=True, exist_ok=True)
        self._path(term).write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
        self._loaded[term] = snapshot
        log.info("baseline_saved", term=term, total=snapshot.total)
        return snapshot

    def compare_to_baseline(self, term: str, current: dict[str, int]) -> BaselineComparisonResult:
        """Compare per-department counts against the stored snapshot.

        No snapshot means nothing can be flagged. A department whose
        baseline count is zero can only improve.
        """
        snapshot = self.load_baseline(term)
        if snapshot is None:
            log.info("baseline_missing", term=term)
            return BaselineComparisonResult(has_baseline=False)

        comparison = BaselineComparisonResult(has_baseline=True)
        for code, count in current.items():
            previous = snapshot.departments.get(code)
            if previous is None or previous.count <= 0:
                continue
            drop = 1 - count / previous.count
            if drop >= self.drop_threshold:
                comparison.regressions.append(
                    Regression(department=code, baseline=previous.count, current=count, drop_percent=round(drop * 100))
                )
                log.error(
                    "baseline_regression",
                    department=code,
                    baseline=previous.count,
                    current=count,
                    drop_percent=round(drop * 100),
                )
            elif count > previous.count * self.IMPROVEMENT_RATIO:
                comparison.improvements.append(Improvement(department=code, baseline=previous.count, current=count))
        return comparison


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------
class GuardReport(BaseModel):
    term: str
    kind: str = "department"
    checks: list[SanityCheckResult] = Field(default_factory=list)
    comparison: BaselineComparisonResult = Field(default_factory=BaselineComparisonResult)

    @property
    def failed_checks(self) -> list[SanityCheckResult]:
        return [c for c in self.checks if not c.passed]

    @property
    def ok(self) -> bool:
        return not self.failed_checks and not self.comparison.regressions

    def raise_for_regressions(self) -> None:
        if not self.ok:
            raise RegressionDetected(self)


def run_guard(
    result: CrawlBatchResult,
    tracker: BaselineTracker,
    baselines: dict[str, Baseline] | None = None,
    raw_html_dir: str | None = None,
) -> GuardReport:
    """Run sanity checks (department crawls only) and the baseline comparison."""
    report = GuardReport(term=result.term, kind=result.kind)
    if result.kind == "department":
        for code in result.counts:
            extraction = result.extractions.get(code)
            report.checks.append(
                check_department_sanity(
                    code,
                    result.records_for(code),
                    baselines,
                    raw_html=extraction.raw_html if extraction else None,
                    raw_html_dir=raw_html_dir,
                )
            )
    report.comparison = tracker.compare_to_baseline(result.term, result.counts)
    log.info(
        "guard_finished",
        term=result.term,
        failed_checks=len(report.failed_checks),
        regressions=len(report.comparison.regressions),
        improvements=len(report.comparison.improvements),
    )
    return report
