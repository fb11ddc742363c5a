"""Lexical, semantic and hybrid search over page content."""

import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .embed import EmbeddingGenerator
from .errors import EmbeddingError, QueryEmbeddingError
from .logging_config import get_audit_logger, log_search_event
from .models import CaseMetadata, PageContent, SearchMode, SearchResponse, SearchResult
from .store import CaseMetadataSource, ContentStore

logger = get_audit_logger("search")


@dataclass
class _Candidate:
    page: PageContent
    score: float
    lexical_score: Optional[float] = None
    semantic_score: Optional[float] = None


def extract_snippet(text: str, query: str, max_length: int = 300, context: int = 100) -> str:
    """
    Cut a window of ``text`` around the earliest query term.

    The window starts ``context`` characters before the first occurrence of any
    whitespace-separated query term (case-insensitive) and is at most
    ``max_length`` characters long, not counting the ``...`` markers added
    when text was cut at either end. Without a match the window starts at 0.
    """
    if not text:
        return ""

    lowered = text.lower()
    first_pos = None
    first_len = 0
    for term in query.lower().split():
        pos = lowered.find(term)
        if pos >= 0 and (first_pos is None or pos < first_pos):
            first_pos, first_len = pos, len(term)

    start = 0
    if first_pos is not None:
        start = max(0, first_pos - context)
        # keep the whole term inside the window
        if first_pos + first_len > start + max_length:
            start = max(0, first_pos + first_len - max_length)
    end = min(len(text), start + max_length)

    snippet = text[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet


class SearchEngine:
    """Ranks persisted pages for a free-text query.

    Hybrid scores are ``lexical_weight * lexical + semantic_weight * semantic``
    over the outer join of both candidate sets, with a missing score counted
    as 0. Candidates are merged lexical-first, and the final sort is stable,
    so ties keep that order.
    """

    def __init__(
        self,
        store: ContentStore,
        embedder: EmbeddingGenerator,
        metadata_source: Optional[CaseMetadataSource] = None,
        snippet_max_length: int = 300,
        snippet_context: int = 100,
        default_weights: Tuple[float, float] = (0.5, 0.5),
        candidate_pool: int = 200,
    ):
        self.store = store
        self.embedder = embedder
        self.metadata_source = metadata_source
        self.snippet_max_length = snippet_max_length
        self.snippet_context = snippet_context
        self.default_weights = default_weights
        self.candidate_pool = candidate_pool

    def search(
        self,
        query: str,
        limit: int = 10,
        mode: Union[SearchMode, str] = SearchMode.HYBRID,
        weights: Optional[Tuple[float, float]] = None,
    ) -> SearchResponse:
        """
        Run a query in the given mode.

        Args:
            query: Free-text query
            limit: Maximum number of results
            mode: "full-text", "semantic" or "hybrid"
            weights: (lexical, semantic) weights for hybrid mode

        Returns:
            SearchResponse with snippeted, metadata-enriched results

        Raises:
            ValueError: empty query, limit < 1 or negative weights
            QueryEmbeddingError: the query could not be embedded
        """
        if not query or not query.strip():
            raise ValueError("Query cannot be empty")
        if limit < 1:
            raise ValueError("Limit must be at least 1")
        mode = SearchMode(mode)

        start_time = time.time()
        if mode == SearchMode.FULL_TEXT:
            results = self.lexical_search(query, limit)
        elif mode == SearchMode.SEMANTIC:
            results = self.semantic_search(query, limit)
        else:
            lexical_weight, semantic_weight = weights or self.default_weights
            results = self.hybrid_search(query, limit, lexical_weight, semantic_weight)
        execution_time_ms = (time.time() - start_time) * 1000

        log_search_event(
            logger,
            query=query,
            mode=mode.value,
            result_count=len(results),
            execution_time_ms=execution_time_ms,
            weights={"lexical": weights[0], "semantic": weights[1]} if weights else None,
        )
        return SearchResponse(
            query=query,
            results=results,
            total_results=len(results),
            search_type=mode,
            execution_time_ms=execution_time_ms,
        )

    def lexical_search(self, query: str, limit: int) -> List[SearchResult]:
        hits = self.store.lexical_search(query, limit)
        candidates = [_Candidate(h.page, h.score, lexical_score=h.score) for h in hits]
        return self._build_results(candidates, query, SearchMode.FULL_TEXT)

    def semantic_search(self, query: str, limit: int) -> List[SearchResult]:
        vector = self._embed_query(query)
        hits = self.store.semantic_search(vector, limit)
        candidates = [_Candidate(h.page, h.score, semantic_score=h.score) for h in hits]
        return self._build_results(candidates, query, SearchMode.SEMANTIC)

    def hybrid_search(
        self,
        query: str,
        limit: int,
        lexical_weight: float = 0.5,
        semantic_weight: float = 0.5,
    ) -> List[SearchResult]:
        """Outer-join lexical and semantic candidates and rank by weighted sum.

        A retrieval method with weight 0 is not run, so weights (1, 0) and
        (0, 1) give exactly the lexical and semantic orderings.
        """
        if lexical_weight < 0 or semantic_weight < 0:
            raise ValueError("Hybrid weights must be non-negative")
        if lexical_weight == 0 and semantic_weight == 0:
            raise ValueError("At least one hybrid weight must be positive")

        pool = max(limit, self.candidate_pool)
        merged: Dict[str, _Candidate] = {}
        vector = self._embed_query(query) if semantic_weight > 0 else None

        if lexical_weight > 0:
            for hit in self.store.lexical_search(query, pool):
                merged[hit.page.id] = _Candidate(hit.page, 0.0, lexical_score=hit.score)

        if vector is not None:
            for hit in self.store.semantic_search(vector, pool):
                candidate = merged.get(hit.page.id)
                if candidate is None:
                    candidate = merged[hit.page.id] = _Candidate(hit.page, 0.0)
                candidate.semantic_score = hit.score

        # The pooled lists only choose candidates; a candidate ranked outside
        # one method's pool still gets that method's exact score.
        if lexical_weight > 0:
            missing = [pid for pid, c in merged.items() if c.lexical_score is None]
            for pid, score in self.store.lexical_scores(query, missing).items():
                merged[pid].lexical_score = score
        if vector is not None:
            missing = [pid for pid, c in merged.items() if c.semantic_score is None]
            for pid, score in self.store.semantic_scores(vector, missing).items():
                merged[pid].semantic_score = score

        candidates = list(merged.values())
        for c in candidates:
            c.score = (lexical_weight * (c.lexical_score or 0.0)
                       + semantic_weight * (c.semantic_score or 0.0))
        candidates.sort(key=lambda c: c.score, reverse=True)
        return self._build_results(candidates[:limit], query, SearchMode.HYBRID)

    def _embed_query(self, query: str) -> List[float]:
        try:
            return self.embedder.embed(query)
        except EmbeddingError as e:
            raise QueryEmbeddingError(f"Failed to embed query: {e}") from e

    def _build_results(
        self,
        candidates: Sequence[_Candidate],
        query: str,
        match_type: SearchMode,
    ) -> List[SearchResult]:
        names: Dict[str, Optional[str]] = {}
        metadata: Dict[str, Optional[CaseMetadata]] = {}

        results = []
        for c in candidates:
            page = c.page
            if page.document_id not in names:
                document = self.store.get_document(page.document_id)
                names[page.document_id] = document.file_name if document else None
            if page.case_id not in metadata:
                metadata[page.case_id] = (
                    self.metadata_source.get_case_metadata(page.case_id)
                    if self.metadata_source else None
                )

            results.append(SearchResult(
                document_id=page.document_id,
                document_name=names[page.document_id],
                case_id=page.case_id,
                page_number=page.page_number,
                content=extract_snippet(page.cleaned_text, query,
                                        self.snippet_max_length, self.snippet_context),
                score=c.score,
                match_type=match_type,
                lexical_score=c.lexical_score,
                semantic_score=c.semantic_score,
                case_metadata=metadata[page.case_id],
            ))
        return results
