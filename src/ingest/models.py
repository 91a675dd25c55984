"""Pydantic models for ingested portal data.

All data structures use Pydantic v2 for validation, serialization, and type safety.
Record models carry a ``kind`` literal so a batch of mixed records can be
handled exhaustively at the persistence boundary (see ``Record``).
"""

from __future__ import annotations

import hashlib
from enum import Enum
from typing import Annotated, Any, Generic, Literal, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field

from src.ingest.errors import ExtractionEmpty


# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------
class WorkItem(BaseModel):
    """One crawlable unit: a (term, department-or-degree-code) pair."""

    model_config = ConfigDict(frozen=True)

    term: str = ""
    code: str
    kind: Literal["department", "degree", "term"] = "department"

    @property
    def key(self) -> str:
        return f"{self.term}:{self.code}" if self.term else self.code


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------
class ScheduleSlot(BaseModel):
    """One weekday meeting of a section. No identity outside its section."""

    day: str  # "Monday"
    start_time: str  # "08:00"
    end_time: str  # "09:30"
    room: str | None = None  # "SEC-A 301", None when the portal shows none
    modality: str = "ONSITE"  # "ONSITE", "ONLINE", "HYBRID"


class ScheduleSection(BaseModel):
    """A row of the class schedule result table."""

    kind: Literal["schedule_section"] = "schedule_section"
    course_code: str  # "CSCI 21"
    section: str  # "A"
    title: str = ""
    units: float = 0
    instructor: str | None = None  # "SANTOS, Juan"
    capacity: int = 0
    free_slots: int = 0
    slots: list[ScheduleSlot] = Field(default_factory=list)
    language: str = ""  # "ENG", "FIL"
    level: str = ""  # "U", "G"
    remarks: str = ""
    has_prerequisites: bool = False
    term: str  # "2025-2"
    department: str  # "DISCS"

    @property
    def section_id(self) -> str:
        return f"{self.term}-{self.course_code}-{self.section}"


class Department(BaseModel):
    """An option of the schedule form's department selector."""

    code: str
    name: str


class TermOption(BaseModel):
    """An option of the schedule form's term selector."""

    code: str  # "2025-2"
    label: str  # "2025-2026-Second Semester"


# ---------------------------------------------------------------------------
# Curriculum
# ---------------------------------------------------------------------------
class CurriculumCourse(BaseModel):
    """One course of a degree curriculum, placed in a year and semester."""

    kind: Literal["curriculum_course"] = "curriculum_course"
    degree_code: str  # "BS CS_2024_1"
    course_code: str
    title: str = ""
    units: float = 0
    prerequisites: str = ""  # raw text
    corequisites: str = ""  # raw text
    prerequisite_codes: list[str] = Field(default_factory=list)
    year: int = 0  # 1-5, 0 = unspecified
    semester: int = 0  # 0 = intersession/summer, 1, 2
    category: str = ""


class DegreeProgram(BaseModel):
    """An option of the curriculum form's degree selector."""

    code: str  # "BS CS_2024_1"
    name: str
    program: str = ""  # "BS CS"
    is_honors: bool = False
    track: str | None = None
    specialization: str | None = None
    version_year: int | None = None
    version_semester: int | None = None


# ---------------------------------------------------------------------------
# Personal records
# ---------------------------------------------------------------------------
IPSStatus = Literal["passed", "credited", "not_taken", "in_progress", "failed"]


class GradeEntry(BaseModel):
    kind: Literal["grade"] = "grade"
    school_year: str
    semester: str
    course: str = ""
    course_code: str
    title: str = ""
    units: float = 0
    final_grade: str


class IPSCourse(BaseModel):
    """One course of the individual plan of study."""

    kind: Literal["ips_course"] = "ips_course"
    course_code: str
    title: str = ""
    units: float = 0
    status: IPSStatus = "not_taken"
    status_code: str = ""
    year: int = 0
    semester: int = 0
    required: bool = False


class IPSSummary(BaseModel):
    total_units: float = 0
    units_taken: float = 0
    remaining_units: float = 0

    @property
    def progress_percentage(self) -> int:
        if self.total_units <= 0:
            return 0
        return round(self.units_taken / self.total_units * 100)


class HoldOrder(BaseModel):
    kind: Literal["hold_order"] = "hold_order"
    type: str
    reason: str = ""
    office: str = ""
    date_placed: str | None = None
    status: str = "Active"


class EnrolledClass(BaseModel):
    kind: Literal["enrolled_class"] = "enrolled_class"
    course_code: str  # normalized "LLAW 113"
    course_code_raw: str  # as shown "LLAW 11312018"
    section: str
    delivery_mode: str = ""
    title: str = ""
    instructor: str = ""  # normalized "AGUILA, Eirene Jhone"
    instructor_raw: str = ""
    term: str | None = None  # extracted from the raw code, "2018-1"
    syllabus_url: str | None = None
    syllabus_available: bool = True


class PersonalScheduleSlot(BaseModel):
    """A consolidated block of the personal weekly schedule grid."""

    kind: Literal["personal_schedule_slot"] = "personal_schedule_slot"
    day: str  # "Mon"
    time: str  # "1400-1530"
    course_code: str
    section: str = ""
    room: str = ""
    modality: str = "FULLY ONSITE"


Record = Annotated[
    Union[
        ScheduleSection,
        CurriculumCourse,
        GradeEntry,
        IPSCourse,
        HoldOrder,
        EnrolledClass,
        PersonalScheduleSlot,
    ],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Extraction result
# ---------------------------------------------------------------------------
class ExtractionStatus(str, Enum):
    FOUND = "found"  # matching table located (may hold zero rows)
    NOT_FOUND = "not_found"  # no matching table at all
    EXPLICIT_EMPTY = "explicit_empty"  # portal's prose "no data" page


RecordT = TypeVar("RecordT")


class Extraction(BaseModel, Generic[RecordT]):
    """Result of running one extractor over one raw response."""

    status: ExtractionStatus
    records: list[RecordT] = Field(default_factory=list)
    source: str = ""  # work item key or page name
    digest: str = ""  # sha256 of the raw response
    raw_html: str | None = Field(default=None, exclude=True, repr=False)

    @classmethod
    def from_html(
        cls,
        html: str,
        status: ExtractionStatus,
        records: list[RecordT] | None = None,
        source: str = "",
    ) -> "Extraction[RecordT]":
        return cls(
            status=status,
            records=records or [],
            source=source,
            digest=hashlib.sha256(html.encode("utf-8", "replace")).hexdigest(),
            raw_html=html,
        )

    @property
    def count(self) -> int:
        return len(self.records)

    def require_table(self, extractor: str) -> "Extraction[RecordT]":
        """Raise ExtractionEmpty when no matching table was found."""
        if self.status is ExtractionStatus.NOT_FOUND:
            raise ExtractionEmpty(self.source, extractor)
        return self


# ---------------------------------------------------------------------------
# Crawl result
# ---------------------------------------------------------------------------
class CrawlBatchResult(BaseModel):
    """Aggregate of one crawl over a list of work items.

    Failed items are listed in ``failed`` and contribute nothing to
    ``counts`` or ``prefix_histograms``.
    """

    term: str = ""
    kind: str = "department"
    counts: dict[str, int] = Field(default_factory=dict)  # item code -> record count
    prefix_histograms: dict[str, dict[str, int]] = Field(default_factory=dict)
    failed: dict[str, str] = Field(default_factory=dict)  # item key -> error
    unprocessed: list[str] = Field(default_factory=list)  # keys left when cancelled
    duration_seconds: float = 0
    cancelled: bool = False
    batch_sizes: list[int] = Field(default_factory=list)
    # item code -> extraction, kept for the regression guard
    extractions: dict[str, Extraction] = Field(default_factory=dict, exclude=True, repr=False)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def records_for(self, code: str) -> list[Any]:
        extraction = self.extractions.get(code)
        return list(extraction.records) if extraction else []
