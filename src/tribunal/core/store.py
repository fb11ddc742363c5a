"""Persistence for documents and page content, plus case metadata lookup.

Two interchangeable stores are provided: ``PostgresContentStore`` (psycopg 3,
pgvector and a ``tsvector`` column) and ``InMemoryContentStore`` (BM25 and
numpy cosine), used for tests and local runs.
"""

import json
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import numpy as np
import psycopg
from psycopg import sql
from rank_bm25 import BM25Plus
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import NotFoundError
from .models import CaseMetadata, Document, OcrStatus, PageContent


@dataclass
class ScoredPage:
    page: PageContent
    score: float


def tokenize(text: str) -> List[str]:
    """Lowercase word tokens longer than two characters."""
    tokens = re.sub(r'[^\w\s-]', ' ', text.lower()).split()
    return [t for t in tokens if len(t) > 2]


def vector_literal(vector: Sequence[float]) -> str:
    """Render a vector in pgvector's text format."""
    return "[" + ",".join(f"{float(x):.8f}" for x in vector) + "]"


class ContentStore(ABC):
    """Documents relation plus the page_content relation and its indexes."""

    # documents

    @abstractmethod
    def get_document(self, document_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    def list_pending_documents(self, limit: Optional[int] = None) -> List[Document]:
        """PENDING documents, oldest first."""

    @abstractmethod
    def add_document(self, document: Document) -> Document:
        ...

    @abstractmethod
    def update_document(self, document_id: str, **fields: Any) -> Document:
        ...

    @abstractmethod
    def count_documents_by_status(self) -> Dict[OcrStatus, int]:
        ...

    # page content

    @abstractmethod
    def page_exists(self, document_id: str, page_number: int) -> bool:
        ...

    @abstractmethod
    def save_page(self, page: PageContent) -> bool:
        """Insert a page row. Returns False if (document_id, page_number) already exists."""

    @abstractmethod
    def update_lexical_index(self, page_id: str) -> None:
        """Rebuild the lexical index entry of one row from its cleaned text."""

    @abstractmethod
    def delete_pages(self, document_id: str) -> int:
        ...

    @abstractmethod
    def count_pages(self, document_id: str) -> int:
        ...

    @abstractmethod
    def list_pages(self, document_id: str) -> List[PageContent]:
        ...

    @abstractmethod
    def lexical_search(self, query: str, limit: int) -> List[ScoredPage]:
        """Rows with non-zero full-text relevance, best first."""

    @abstractmethod
    def lexical_scores(self, query: str, page_ids: Sequence[str]) -> Dict[str, float]:
        """Full-text relevance of the given rows. Rows without a match are absent."""

    @abstractmethod
    def semantic_search(self, vector: Sequence[float], limit: int) -> List[ScoredPage]:
        """Rows with an embedding, ranked by 1 - cosine distance."""

    @abstractmethod
    def semantic_scores(self, vector: Sequence[float], page_ids: Sequence[str]) -> Dict[str, float]:
        """Cosine similarity of the given rows. Rows without an embedding are absent."""


class InMemoryContentStore(ContentStore):
    """Thread-safe dict-backed store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._documents: Dict[str, Document] = {}
        self._pages: Dict[str, PageContent] = {}
        self._page_keys: Dict[tuple, str] = {}
        self._lexical_index: Dict[str, List[str]] = {}

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._lock:
            doc = self._documents.get(document_id)
            return doc.model_copy() if doc else None

    def list_pending_documents(self, limit: Optional[int] = None) -> List[Document]:
        with self._lock:
            pending = [d for d in self._documents.values() if d.ocr_status == OcrStatus.PENDING]
        pending.sort(key=lambda d: d.created_at)
        if limit is not None:
            pending = pending[:limit]
        return [d.model_copy() for d in pending]

    def add_document(self, document: Document) -> Document:
        with self._lock:
            self._documents[document.id] = document.model_copy()
        return document

    def update_document(self, document_id: str, **fields: Any) -> Document:
        with self._lock:
            doc = self._documents.get(document_id)
            if doc is None:
                raise NotFoundError(f"Document not found: {document_id}")
            updated = doc.model_copy(update=fields)
            self._documents[document_id] = updated
            return updated.model_copy()

    def count_documents_by_status(self) -> Dict[OcrStatus, int]:
        counts = {status: 0 for status in OcrStatus}
        with self._lock:
            for doc in self._documents.values():
                counts[doc.ocr_status] += 1
        return counts

    def page_exists(self, document_id: str, page_number: int) -> bool:
        with self._lock:
            return (document_id, page_number) in self._page_keys

    def save_page(self, page: PageContent) -> bool:
        key = (page.document_id, page.page_number)
        with self._lock:
            if key in self._page_keys:
                return False
            self._pages[page.id] = page.model_copy()
            self._page_keys[key] = page.id
            return True

    def update_lexical_index(self, page_id: str) -> None:
        with self._lock:
            page = self._pages.get(page_id)
            if page is None:
                raise NotFoundError(f"Page not found: {page_id}")
            self._lexical_index[page_id] = tokenize(page.cleaned_text)

    def delete_pages(self, document_id: str) -> int:
        with self._lock:
            ids = [pid for pid, p in self._pages.items() if p.document_id == document_id]
            for pid in ids:
                page = self._pages.pop(pid)
                self._page_keys.pop((page.document_id, page.page_number), None)
                self._lexical_index.pop(pid, None)
            return len(ids)

    def count_pages(self, document_id: str) -> int:
        with self._lock:
            return sum(1 for p in self._pages.values() if p.document_id == document_id)

    def list_pages(self, document_id: str) -> List[PageContent]:
        with self._lock:
            pages = [p.model_copy() for p in self._pages.values() if p.document_id == document_id]
        return sorted(pages, key=lambda p: p.page_number)

    def _lexical_hits(self, query: str) -> List[ScoredPage]:
        query_tokens = tokenize(query)
        if not query_tokens:
            return []

        with self._lock:
            indexed = [(pid, tokens) for pid, tokens in self._lexical_index.items() if tokens]
            pages = {pid: self._pages[pid] for pid, _ in indexed}
        if not indexed:
            return []

        # BM25Plus keeps idf positive, but its lower bound also credits rows
        # with no matching term, so those are filtered out explicitly.
        bm25 = BM25Plus([tokens for _, tokens in indexed])
        scores = bm25.get_scores(query_tokens)
        wanted = set(query_tokens)

        hits = [
            ScoredPage(page=pages[pid].model_copy(), score=float(score))
            for (pid, tokens), score in zip(indexed, scores)
            if wanted.intersection(tokens) and score > 0
        ]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits

    def lexical_search(self, query: str, limit: int) -> List[ScoredPage]:
        return self._lexical_hits(query)[:limit]

    def lexical_scores(self, query: str, page_ids: Sequence[str]) -> Dict[str, float]:
        wanted = set(page_ids)
        return {h.page.id: h.score for h in self._lexical_hits(query) if h.page.id in wanted}

    def _semantic_hits(self, vector: Sequence[float]) -> List[ScoredPage]:
        query = np.asarray(vector, dtype=np.float64)
        query_norm = np.linalg.norm(query)
        with self._lock:
            candidates = [p.model_copy() for p in self._pages.values() if p.embedding is not None]

        hits = []
        for page in candidates:
            emb = np.asarray(page.embedding, dtype=np.float64)
            denom = np.linalg.norm(emb) * query_norm
            similarity = float(np.dot(emb, query) / denom) if denom else 0.0
            hits.append(ScoredPage(page=page, score=similarity))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits

    def semantic_search(self, vector: Sequence[float], limit: int) -> List[ScoredPage]:
        return self._semantic_hits(vector)[:limit]

    def semantic_scores(self, vector: Sequence[float], page_ids: Sequence[str]) -> Dict[str, float]:
        wanted = set(page_ids)
        return {h.page.id: h.score for h in self._semantic_hits(vector) if h.page.id in wanted}


DOCUMENT_COLUMNS = (
    "id, case_id, file_name, file_path, file_size, mime_type, content_hash, "
    "page_count, ocr_status, ocr_error, created_at, processed_at"
)

PAGE_COLUMNS = (
    "id, document_id, case_id, page_number, raw_text, cleaned_text, word_count, "
    "language, ocr_engine, ocr_confidence, embedding::text, created_at, processed_at"
)

UPDATABLE_DOCUMENT_FIELDS = {
    "file_name", "file_path", "file_size", "mime_type", "content_hash",
    "page_count", "ocr_status", "ocr_error", "processed_at",
}


def _row_to_document(row: tuple) -> Document:
    return Document(
        id=row[0],
        case_id=row[1],
        file_name=row[2],
        file_path=row[3],
        file_size=row[4] or 0,
        mime_type=row[5],
        content_hash=row[6],
        page_count=row[7],
        ocr_status=OcrStatus(row[8]),
        ocr_error=row[9],
        created_at=row[10],
        processed_at=row[11],
    )


def _row_to_page(row: tuple) -> PageContent:
    embedding = json.loads(row[10]) if row[10] else None
    return PageContent(
        id=row[0],
        document_id=row[1],
        case_id=row[2],
        page_number=row[3],
        raw_text=row[4],
        cleaned_text=row[5],
        word_count=row[6],
        language=row[7],
        ocr_engine=row[8],
        ocr_confidence=row[9],
        embedding=embedding,
        created_at=row[11],
        processed_at=row[12],
    )


def _db_value(value: Any) -> Any:
    return value.value if isinstance(value, OcrStatus) else value


class PostgresContentStore(ContentStore):
    """Store backed by PostgreSQL with the pgvector extension.

    Tables are created by the alembic migration in ``migrations/``.
    """

    def __init__(self, db_url: str):
        self.db_url = db_url

    @retry(
        retry=retry_if_exception_type(psycopg.OperationalError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self.db_url)

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {DOCUMENT_COLUMNS} FROM documents WHERE id = %s", (document_id,))
                row = cur.fetchone()
        return _row_to_document(row) if row else None

    def list_pending_documents(self, limit: Optional[int] = None) -> List[Document]:
        query = f"""
            SELECT {DOCUMENT_COLUMNS} FROM documents
            WHERE ocr_status = %s
            ORDER BY created_at ASC
        """
        params: List[Any] = [OcrStatus.PENDING.value]
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)

        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        return [_row_to_document(row) for row in rows]

    def add_document(self, document: Document) -> Document:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    INSERT INTO documents ({DOCUMENT_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """, (
                    document.id, document.case_id, document.file_name, document.file_path,
                    document.file_size, document.mime_type, document.content_hash,
                    document.page_count, document.ocr_status.value, document.ocr_error,
                    document.created_at, document.processed_at,
                ))
        return document

    def update_document(self, document_id: str, **fields: Any) -> Document:
        unknown = set(fields) - UPDATABLE_DOCUMENT_FIELDS
        if unknown:
            raise ValueError(f"Cannot update document fields: {sorted(unknown)}")

        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in fields
        )
        query = sql.SQL("UPDATE documents SET {} WHERE id = %s RETURNING {}").format(
            assignments, sql.SQL(DOCUMENT_COLUMNS)
        )
        params = [_db_value(v) for v in fields.values()] + [document_id]

        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
        if not row:
            raise NotFoundError(f"Document not found: {document_id}")
        return _row_to_document(row)

    def count_documents_by_status(self) -> Dict[OcrStatus, int]:
        counts = {status: 0 for status in OcrStatus}
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT ocr_status, COUNT(*) FROM documents GROUP BY ocr_status")
                for status, count in cur.fetchall():
                    counts[OcrStatus(status)] = count
        return counts

    def page_exists(self, document_id: str, page_number: int) -> bool:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT 1 FROM page_content WHERE document_id = %s AND page_number = %s
                """, (document_id, page_number))
                return cur.fetchone() is not None

    def save_page(self, page: PageContent) -> bool:
        embedding = vector_literal(page.embedding) if page.embedding is not None else None
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO page_content (
                        id, document_id, case_id, page_number, raw_text, cleaned_text,
                        word_count, language, ocr_engine, ocr_confidence, embedding,
                        created_at, processed_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::vector, %s, %s)
                    ON CONFLICT (document_id, page_number) DO NOTHING
                """, (
                    page.id, page.document_id, page.case_id, page.page_number,
                    page.raw_text, page.cleaned_text, page.word_count, page.language,
                    page.ocr_engine, page.ocr_confidence, embedding,
                    page.created_at, page.processed_at,
                ))
                return cur.rowcount == 1

    def update_lexical_index(self, page_id: str) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE page_content
                    SET lexical_index = to_tsvector('english', cleaned_text)
                    WHERE id = %s
                """, (page_id,))
                if cur.rowcount == 0:
                    raise NotFoundError(f"Page not found: {page_id}")

    def delete_pages(self, document_id: str) -> int:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM page_content WHERE document_id = %s", (document_id,))
                return cur.rowcount

    def count_pages(self, document_id: str) -> int:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM page_content WHERE document_id = %s", (document_id,))
                return cur.fetchone()[0]

    def list_pages(self, document_id: str) -> List[PageContent]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    SELECT {PAGE_COLUMNS} FROM page_content
                    WHERE document_id = %s ORDER BY page_number
                """, (document_id,))
                rows = cur.fetchall()
        return [_row_to_page(row) for row in rows]

    def lexical_search(self, query: str, limit: int) -> List[ScoredPage]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    SELECT {PAGE_COLUMNS},
                           ts_rank(lexical_index, plainto_tsquery('english', %s)) AS rank
                    FROM page_content
                    WHERE lexical_index @@ plainto_tsquery('english', %s)
                    ORDER BY rank DESC, document_id, page_number
                    LIMIT %s
                """, (query, query, limit))
                rows = cur.fetchall()
        return [ScoredPage(page=_row_to_page(row), score=float(row[-1])) for row in rows if row[-1] > 0]

    def lexical_scores(self, query: str, page_ids: Sequence[str]) -> Dict[str, float]:
        if not page_ids:
            return {}
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT id, ts_rank(lexical_index, plainto_tsquery('english', %s))
                    FROM page_content
                    WHERE id = ANY(%s) AND lexical_index @@ plainto_tsquery('english', %s)
                """, (query, list(page_ids), query))
                rows = cur.fetchall()
        return {row[0]: float(row[1]) for row in rows if row[1] > 0}

    def semantic_scores(self, vector: Sequence[float], page_ids: Sequence[str]) -> Dict[str, float]:
        if not page_ids:
            return {}
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT id, 1 - (embedding <=> %s::vector)
                    FROM page_content
                    WHERE id = ANY(%s) AND embedding IS NOT NULL
                """, (vector_literal(vector), list(page_ids)))
                rows = cur.fetchall()
        return {row[0]: float(row[1]) for row in rows}

    def semantic_search(self, vector: Sequence[float], limit: int) -> List[ScoredPage]:
        literal = vector_literal(vector)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    SELECT {PAGE_COLUMNS},
                           1 - (embedding <=> %s::vector) AS similarity
                    FROM page_content
                    WHERE embedding IS NOT NULL
                    ORDER BY embedding <=> %s::vector, document_id, page_number
                    LIMIT %s
                """, (literal, literal, limit))
                rows = cur.fetchall()
        return [ScoredPage(page=_row_to_page(row), score=float(row[-1])) for row in rows]


class CaseMetadataSource(Protocol):
    """Read-only view of the external case store."""

    def get_case_metadata(self, case_id: str) -> Optional[CaseMetadata]:
        ...


class StaticCaseMetadataSource:
    """Case metadata from a plain dict, keyed by case id."""

    def __init__(self, cases: Optional[Dict[str, CaseMetadata]] = None):
        self.cases = dict(cases or {})

    def get_case_metadata(self, case_id: str) -> Optional[CaseMetadata]:
        return self.cases.get(case_id)


class PostgresCaseMetadataSource:
    """Reads the ``cases`` table maintained by the case-management side."""

    def __init__(self, db_url: str):
        self.db_url = db_url

    def get_case_metadata(self, case_id: str) -> Optional[CaseMetadata]:
        with psycopg.connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT case_number, case_type, appellant, respondent,
                           filing_date, hearing_date, decision_date, outcome,
                           tax_amount_disputed, chairperson, board_members
                    FROM cases WHERE id = %s
                """, (case_id,))
                row = cur.fetchone()

        if not row:
            return None
        return CaseMetadata(
            case_number=row[0],
            case_type=row[1],
            appellant=row[2],
            respondent=row[3],
            filing_date=row[4],
            hearing_date=row[5],
            decision_date=row[6],
            outcome=row[7],
            tax_amount_disputed=float(row[8]) if row[8] is not None else None,
            chairperson=row[9],
            board_members=list(row[10] or []),
        )
