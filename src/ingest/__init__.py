"""Portal ingestion pipeline.

Turns the academic portal's server-rendered HTML (class schedules,
curricula, personal records) into validated records: session handling,
adaptive crawling, extraction, normalization and a regression guard.
"""

from src.ingest.crawl import CrawlOrchestrator, ProgressEvent
from src.ingest.discovery import TermDiscovery, generate_term_codes
from src.ingest.models import CrawlBatchResult, Extraction, ExtractionStatus, WorkItem
from src.ingest.normalize import extract_term_from_code, normalize_course_code, normalize_instructor_name
from src.ingest.pipeline import IngestPipeline, PersonalRecords
from src.ingest.sanity import BaselineTracker, GuardReport, check_department_sanity
from src.ingest.session import SessionManager

__all__ = [
    "IngestPipeline",
    "PersonalRecords",
    "SessionManager",
    "CrawlOrchestrator",
    "ProgressEvent",
    "CrawlBatchResult",
    "Extraction",
    "ExtractionStatus",
    "WorkItem",
    "TermDiscovery",
    "generate_term_codes",
    "BaselineTracker",
    "GuardReport",
    "check_department_sanity",
    "normalize_course_code",
    "normalize_instructor_name",
    "extract_term_from_code",
]
