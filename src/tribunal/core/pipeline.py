"""Per-document ingestion: extract -> embed -> persist -> index, with status tracking."""

import hashlib
import mimetypes
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .embed import EmbeddingGenerator, MIN_EMBEDDING_CHARS
from .errors import EmbeddingError, ExtractionError, NotFoundError
from .extract import TextExtractor
from .logging_config import get_audit_logger, log_ingestion_event
from .models import (
    Document,
    DocumentStatus,
    ExtractedPage,
    IngestionResult,
    OcrStatus,
    PageContent,
    utcnow,
)
from .store import ContentStore

logger = get_audit_logger("ingestion")


def calculate_sha256(file_path: Path) -> str:
    """Calculate SHA256 hash of a file."""
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(4096), b""):
            sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


def terminal_state(total_pages: int, failed_pages: int) -> Tuple[OcrStatus, Optional[str]]:
    """Final status for a run given page totals."""
    if total_pages == 0:
        return OcrStatus.FAILED, "Document has no pages"
    if failed_pages == 0:
        return OcrStatus.COMPLETED, None
    if failed_pages >= total_pages:
        return OcrStatus.FAILED, f"All {total_pages} pages failed to process"
    return OcrStatus.MANUAL_REVIEW, f"{failed_pages} of {total_pages} pages failed to process"


class IngestionPipeline:
    """Drives one document through extraction, embedding and persistence.

    Status transitions: PENDING -> PROCESSING -> COMPLETED | FAILED | MANUAL_REVIEW.
    Pages whose extraction failed are not persisted, so for a MANUAL_REVIEW
    document ``page_count - failed_pages`` rows exist.
    """

    def __init__(
        self,
        store: ContentStore,
        extractor: TextExtractor,
        embedder: EmbeddingGenerator,
        embedding_min_chars: int = MIN_EMBEDDING_CHARS,
    ):
        self.store = store
        self.extractor = extractor
        self.embedder = embedder
        self.embedding_min_chars = embedding_min_chars
        # document_id -> (lock, number of callers holding or waiting on it)
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _document_lock(self, document_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock, users = self._locks.get(document_id, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[document_id] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                lock, users = self._locks[document_id]
                if users <= 1:
                    del self._locks[document_id]
                else:
                    self._locks[document_id] = (lock, users - 1)

    def get_document(self, document_id: str) -> Document:
        document = self.store.get_document(document_id)
        if document is None:
            raise NotFoundError(f"Document not found: {document_id}")
        return document

    def register_document(
        self,
        case_id: str,
        file_path: Union[str, Path],
        document_id: Optional[str] = None,
    ) -> Document:
        """Create a PENDING document record for a file on disk."""
        path = Path(file_path)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {path}")

        mime_type, _ = mimetypes.guess_type(path.name)
        document = Document(
            id=document_id or str(uuid.uuid4()),
            case_id=case_id,
            file_name=path.name,
            file_path=str(path.resolve()),
            file_size=path.stat().st_size,
            mime_type=mime_type or "application/pdf",
            content_hash=calculate_sha256(path),
        )
        self.store.add_document(document)
        logger.info("document_registered", document_id=document.id, case_id=case_id,
                    file_name=document.file_name, content_hash=document.content_hash)
        return document

    def process_document(self, document_id: str) -> IngestionResult:
        """
        Run the pipeline for one document.

        Extraction failures end up in the document's status and ``ocr_error``;
        only an unknown id raises.

        Raises:
            NotFoundError: unknown document id
        """
        document = self.get_document(document_id)
        with self._document_lock(document_id):
            return self._run(document)

    def reprocess(self, document_id: str) -> IngestionResult:
        """Delete all page rows, reset the document to PENDING and process it again."""
        document = self.get_document(document_id)
        with self._document_lock(document_id):
            deleted = self.store.delete_pages(document_id)
            document = self.store.update_document(
                document_id,
                ocr_status=OcrStatus.PENDING,
                ocr_error=None,
                page_count=None,
                processed_at=None,
            )
            logger.info("document_reset", document_id=document_id, deleted_pages=deleted)
            return self._run(document)

    def _run(self, document: Document) -> IngestionResult:
        start_time = time.time()
        self.store.update_document(document.id, ocr_status=OcrStatus.PROCESSING, ocr_error=None)
        logger.info("document_processing_started", document_id=document.id, file_name=document.file_name)

        try:
            try:
                extracted = self.extractor.extract(document.file_path)
            except ExtractionError as e:
                result = IngestionResult(
                    document_id=document.id,
                    status=OcrStatus.FAILED,
                    error=str(e),
                )
                self.store.update_document(document.id, ocr_status=OcrStatus.FAILED, ocr_error=str(e))
                self._log_result(result, start_time)
                return result

            self.store.update_document(document.id, page_count=extracted.page_count)

            processed = 0
            failed = 0
            confidences: List[float] = []
            for page in extracted.pages:
                if page.failed:
                    failed += 1
                    continue
                try:
                    self._process_page(document, page)
                except Exception as e:
                    logger.warning("page_processing_failed", document_id=document.id,
                                   page_number=page.page_number, error=str(e))
                    failed += 1
                    continue
                processed += 1
                if page.ocr_confidence is not None:
                    confidences.append(page.ocr_confidence)

            status, error = terminal_state(extracted.page_count, failed)
            fields = {"ocr_status": status, "ocr_error": error}
            if status == OcrStatus.COMPLETED:
                fields["processed_at"] = utcnow()
            self.store.update_document(document.id, **fields)

        except Exception as e:
            logger.error("document_processing_error", document_id=document.id, error=str(e))
            self.store.update_document(document.id, ocr_status=OcrStatus.FAILED, ocr_error=str(e))
            raise

        result = IngestionResult(
            document_id=document.id,
            status=status,
            method=extracted.method,
            total_pages=extracted.page_count,
            processed_pages=processed,
            failed_pages=failed,
            avg_confidence=sum(confidences) / len(confidences) if confidences else None,
            error=error,
        )
        self._log_result(result, start_time)
        return result

    def _process_page(self, document: Document, page: ExtractedPage) -> bool:
        """Persist one extracted page. Returns False if the row already existed."""
        if self.store.page_exists(document.id, page.page_number):
            logger.debug("page_exists_skipped", document_id=document.id, page_number=page.page_number)
            return False

        embedding = None
        if len(page.cleaned_text) > self.embedding_min_chars:
            try:
                embedding = self.embedder.embed(page.cleaned_text)
            except EmbeddingError as e:
                logger.warning("page_embedding_failed", document_id=document.id,
                               page_number=page.page_number, error=str(e))

        row = PageContent(
            document_id=document.id,
            case_id=document.case_id,
            page_number=page.page_number,
            raw_text=page.raw_text,
            cleaned_text=page.cleaned_text,
            word_count=page.word_count,
            ocr_engine=page.source,
            ocr_confidence=page.ocr_confidence,
            embedding=embedding,
        )
        if not self.store.save_page(row):
            return False
        self.store.update_lexical_index(row.id)
        return True

    def _log_result(self, result: IngestionResult, start_time: float) -> None:
        log_ingestion_event(
            logger,
            document_id=result.document_id,
            status=result.status.value,
            method=result.method.value if result.method else None,
            total_pages=result.total_pages,
            processed_pages=result.processed_pages,
            failed_pages=result.failed_pages,
            processing_time_ms=(time.time() - start_time) * 1000,
            error=result.error,
        )

    def get_document_status(self, document_id: str) -> DocumentStatus:
        document = self.get_document(document_id)
        return DocumentStatus(
            status=document.ocr_status,
            page_count=document.page_count,
            processed_pages=self.store.count_pages(document_id),
            error=document.ocr_error,
        )

    def list_pending_documents(self, limit: Optional[int] = None) -> List[Document]:
        return self.store.list_pending_documents(limit)

    def get_processing_stats(self) -> Dict[str, int]:
        """Document counts per status, plus the total."""
        counts = self.store.count_documents_by_status()
        stats = {status.value: counts.get(status, 0) for status in OcrStatus}
        stats["total"] = sum(stats.values())
        return stats
