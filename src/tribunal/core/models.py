"""Data models for documents, page content, jobs and search results."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional
import uuid

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OcrStatus(str, Enum):
    """Document processing state.

    PENDING -> PROCESSING -> {COMPLETED, FAILED, MANUAL_REVIEW}
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    MANUAL_REVIEW = "manual_review"


class ExtractionMethod(str, Enum):
    EMBEDDED = "embedded"
    OCR = "ocr"


class Document(BaseModel):
    """One source PDF belonging to a case."""
    id: str
    case_id: str
    file_name: str
    file_path: str
    file_size: int = 0
    mime_type: str = "application/pdf"
    content_hash: Optional[str] = None
    page_count: Optional[int] = None
    ocr_status: OcrStatus = OcrStatus.PENDING
    ocr_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None


class PageContent(BaseModel):
    """Extracted text of one page, keyed by (document_id, page_number)."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    document_id: str
    case_id: str
    page_number: int
    raw_text: str
    cleaned_text: str
    word_count: int
    language: str = "en"
    ocr_engine: str
    ocr_confidence: Optional[float] = None
    embedding: Optional[List[float]] = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime = Field(default_factory=utcnow)


@dataclass
class ExtractedPage:
    """Per-page extraction output."""
    page_number: int
    raw_text: str
    cleaned_text: str
    word_count: int
    source: str  # "embedded" or the OCR engine name
    ocr_confidence: Optional[float] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class ExtractedDocument:
    method: ExtractionMethod
    pages: List[ExtractedPage]

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def failed_pages(self) -> List[ExtractedPage]:
        return [p for p in self.pages if p.failed]


class IngestionResult(BaseModel):
    """Summary of one processing run, mirrored into the job result."""
    document_id: str
    status: OcrStatus
    method: Optional[ExtractionMethod] = None
    total_pages: int = 0
    processed_pages: int = 0
    failed_pages: int = 0
    avg_confidence: Optional[float] = None
    error: Optional[str] = None


class DocumentStatus(BaseModel):
    status: OcrStatus
    page_count: Optional[int] = None
    processed_pages: int = 0
    error: Optional[str] = None


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class JobKind(str, Enum):
    PROCESS = "process"
    REPROCESS = "reprocess"


@dataclass
class Job:
    """In-memory unit of scheduled work. Never persisted."""
    id: str
    document_id: str
    case_id: str
    file_name: str
    kind: JobKind = JobKind.PROCESS
    status: JobStatus = JobStatus.WAITING
    progress: int = 0
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[IngestionResult] = None
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0
    active_document_id: Optional[str] = None


class CaseMetadata(BaseModel):
    """Case-level fields joined onto search results. Owned by the case store."""
    case_number: Optional[str] = None
    case_type: Optional[str] = None
    appellant: Optional[str] = None
    respondent: Optional[str] = None
    filing_date: Optional[date] = None
    hearing_date: Optional[date] = None
    decision_date: Optional[date] = None
    outcome: Optional[str] = None
    tax_amount_disputed: Optional[float] = None
    chairperson: Optional[str] = None
    board_members: List[str] = []


class SearchMode(str, Enum):
    FULL_TEXT = "full-text"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


class SearchResult(BaseModel):
    document_id: str
    document_name: Optional[str] = None
    case_id: str
    page_number: int
    content: str
    score: float
    match_type: SearchMode
    lexical_score: Optional[float] = None
    semantic_score: Optional[float] = None
    case_metadata: Optional[CaseMetadata] = None


class SearchResponse(BaseModel):
    query: str
    results: List[SearchResult]
    total_results: int
    search_type: SearchMode
    execution_time_ms: float
