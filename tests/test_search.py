"""Tests for lexical, semantic and hybrid search."""

import pytest

from tribunal.core.embed import EmbeddingGenerator
from tribunal.core.errors import QueryEmbeddingError
from tribunal.core.models import CaseMetadata, Document, PageContent, SearchMode
from tribunal.core.search import SearchEngine, extract_snippet
from tribunal.core.store import InMemoryContentStore, StaticCaseMetadataSource

from conftest import FakeEmbeddingBackend

QUERY = "customs excise"

PAGES = [
    # (document, page, text, embedding)
    ("doc-1", 1, "customs excise duty assessment appeal", [0.6, 0.8, 0.0]),
    ("doc-1", 2, "the tribunal considered the valuation of imported goods", [0.9, 0.4359, 0.0]),
    ("doc-2", 1, "customs officers testified", [0.0, 0.0, 1.0]),
]


@pytest.fixture
def search_store():
    store = InMemoryContentStore()
    store.add_document(Document(id="doc-1", case_id="case-1", file_name="ruling.pdf", file_path="/x/ruling.pdf"))
    store.add_document(Document(id="doc-2", case_id="case-2", file_name="hearing.pdf", file_path="/x/hearing.pdf"))
    for document_id, page_number, text, embedding in PAGES:
        page = PageContent(
            id=f"{document_id}-p{page_number}",
            document_id=document_id,
            case_id="case-1" if document_id == "doc-1" else "case-2",
            page_number=page_number,
            raw_text=text,
            cleaned_text=text,
            word_count=len(text.split()),
            ocr_engine="embedded",
            embedding=embedding,
        )
        store.save_page(page)
        store.update_lexical_index(page.id)
    return store


@pytest.fixture
def search_embedder():
    generator = EmbeddingGenerator(FakeEmbeddingBackend(dimension=3, overrides={QUERY: [1.0, 0.0, 0.0]}),
                                   dimension=3)
    generator.load()
    return generator


@pytest.fixture
def metadata():
    return StaticCaseMetadataSource({
        "case-1": CaseMetadata(case_number="TRAB 12/2021", appellant="Acme Ltd",
                               respondent="Commissioner General", outcome="allowed",
                               board_members=["A. Member", "B. Member"]),
    })


@pytest.fixture
def engine(search_store, search_embedder, metadata):
    return SearchEngine(search_store, search_embedder, metadata_source=metadata, candidate_pool=50)


def _keys(results):
    return [(r.document_id, r.page_number) for r in results]


class TestLexicalSearch:

    def test_matching_page_scores_above_zero(self, engine):
        results = engine.lexical_search(QUERY, 10)

        assert _keys(results)[0] == ("doc-1", 1)
        assert all(r.score > 0 for r in results)
        assert ("doc-1", 2) not in _keys(results)
        top = results[0]
        assert "customs" in top.content or "excise" in top.content
        assert top.match_type == SearchMode.FULL_TEXT
        assert top.lexical_score == top.score

    def test_no_match(self, engine):
        assert engine.lexical_search("zebra", 10) == []

    def test_limit(self, engine):
        assert len(engine.lexical_search(QUERY, 1)) == 1

    def test_scores_for_selected_rows(self, search_store):
        ranked = {h.page.id: h.score for h in search_store.lexical_search(QUERY, 10)}

        scores = search_store.lexical_scores(QUERY, ["doc-2-p1", "doc-1-p2"])

        assert scores == {"doc-2-p1": pytest.approx(ranked["doc-2-p1"])}
        assert search_store.lexical_scores(QUERY, []) == {}


class TestSemanticSearch:

    def test_ranked_by_cosine(self, engine):
        results = engine.semantic_search(QUERY, 10)

        assert _keys(results) == [("doc-1", 2), ("doc-1", 1), ("doc-2", 1)]
        assert results[0].score == pytest.approx(0.9, abs=1e-3)
        assert results[0].semantic_score == results[0].score

    def test_pages_without_embedding_skipped(self, engine, search_store):
        search_store.save_page(PageContent(
            document_id="doc-2", case_id="case-2", page_number=2, raw_text="short",
            cleaned_text="short", word_count=1, ocr_engine="embedded",
        ))
        assert len(engine.semantic_search(QUERY, 10)) == 3

    def test_scores_for_selected_rows(self, search_store):
        scores = search_store.semantic_scores([1.0, 0.0, 0.0], ["doc-1-p1", "doc-2-p1", "missing"])

        assert scores == {"doc-1-p1": pytest.approx(0.6), "doc-2-p1": pytest.approx(0.0)}

    def test_query_embedding_failure(self, search_store, metadata):
        generator = EmbeddingGenerator(FakeEmbeddingBackend(dimension=3, fail_on=["customs"]), dimension=3)
        generator.load()
        engine = SearchEngine(search_store, generator, metadata_source=metadata)

        with pytest.raises(QueryEmbeddingError):
            engine.search(QUERY, mode=SearchMode.SEMANTIC)
        with pytest.raises(QueryEmbeddingError):
            engine.search(QUERY, mode=SearchMode.HYBRID)
        assert engine.search(QUERY, mode=SearchMode.FULL_TEXT).total_results == 2


class TestHybridSearch:

    def test_outer_join_keeps_single_signal_rows(self, engine):
        results = engine.hybrid_search(QUERY, 10)

        keys = _keys(results)
        assert set(keys) == {("doc-1", 1), ("doc-1", 2), ("doc-2", 1)}
        semantic_only = results[keys.index(("doc-1", 2))]
        assert semantic_only.lexical_score is None
        assert semantic_only.score == pytest.approx(0.5 * semantic_only.semantic_score)
        lexical_only = results[keys.index(("doc-2", 1))]
        assert lexical_only.semantic_score == pytest.approx(0.0)

    def test_scores_are_weighted_sum(self, engine):
        for r in engine.hybrid_search(QUERY, 10, lexical_weight=0.3, semantic_weight=2.0):
            expected = 0.3 * (r.lexical_score or 0.0) + 2.0 * (r.semantic_score or 0.0)
            assert r.score == pytest.approx(expected)

    def test_candidates_outside_a_pool_keep_exact_scores(self, engine, search_store, search_embedder):
        # a pool of one: lexical picks doc-1 p1, semantic picks doc-1 p2
        narrow = SearchEngine(search_store, search_embedder, candidate_pool=1)
        full = {(r.document_id, r.page_number): r for r in engine.hybrid_search(QUERY, 10)}

        results = narrow.hybrid_search(QUERY, 1)

        assert _keys(results) == [("doc-1", 1)]
        assert results[0].semantic_score == pytest.approx(0.6)
        for r in results:
            expected = full[(r.document_id, r.page_number)]
            assert r.score == pytest.approx(expected.score)
            assert r.lexical_score == pytest.approx(expected.lexical_score)
            assert r.semantic_score == pytest.approx(expected.semantic_score)

    def test_lexical_weight_only_reproduces_lexical_order(self, engine):
        assert _keys(engine.hybrid_search(QUERY, 10, 1.0, 0.0)) == _keys(engine.lexical_search(QUERY, 10))

    def test_semantic_weight_only_reproduces_semantic_order(self, engine):
        assert _keys(engine.hybrid_search(QUERY, 10, 0.0, 1.0)) == _keys(engine.semantic_search(QUERY, 10))

    def test_invalid_weights(self, engine):
        with pytest.raises(ValueError):
            engine.hybrid_search(QUERY, 10, -1.0, 1.0)
        with pytest.raises(ValueError):
            engine.hybrid_search(QUERY, 10, 0.0, 0.0)


class TestSearch:

    def test_response_shape(self, engine):
        response = engine.search(QUERY, limit=2)

        assert response.query == QUERY
        assert response.search_type == SearchMode.HYBRID
        assert response.total_results == len(response.results) == 2
        assert response.execution_time_ms >= 0
        assert all(r.match_type == SearchMode.HYBRID for r in response.results)

    def test_mode_from_string(self, engine):
        assert engine.search(QUERY, mode="full-text").search_type == SearchMode.FULL_TEXT

    def test_enriched_with_metadata(self, engine):
        results = engine.search(QUERY, mode=SearchMode.FULL_TEXT).results
        by_doc = {r.document_id: r for r in results}

        assert by_doc["doc-1"].document_name == "ruling.pdf"
        assert by_doc["doc-1"].case_metadata.case_number == "TRAB 12/2021"
        assert by_doc["doc-1"].case_metadata.board_members == ["A. Member", "B. Member"]
        assert by_doc["doc-2"].document_name == "hearing.pdf"
        assert by_doc["doc-2"].case_metadata is None

    @pytest.mark.parametrize("query,limit", [("", 10), ("   ", 10), (QUERY, 0)])
    def test_invalid_arguments(self, engine, query, limit):
        with pytest.raises(ValueError):
            engine.search(query, limit=limit)


class TestExtractSnippet:

    def test_window_around_first_match(self):
        text = "a" * 500 + " customs " + "b" * 500
        snippet = extract_snippet(text, "customs", max_length=300, context=100)

        assert snippet.startswith("...") and snippet.endswith("...")
        body = snippet[3:-3]
        assert len(body) == 300
        assert "customs" in body
        assert body.index("customs") == 100

    def test_earliest_term_wins(self):
        text = "x" * 200 + " excise " + "y" * 200 + " customs"
        snippet = extract_snippet(text, "customs excise", max_length=50, context=10)
        assert "excise" in snippet
        assert "customs" not in snippet

    def test_case_insensitive(self):
        assert "CUSTOMS" in extract_snippet("The CUSTOMS office", "customs")

    def test_no_match_starts_at_beginning(self):
        text = "z" * 400
        snippet = extract_snippet(text, "customs", max_length=300)
        assert snippet == "z" * 300 + "..."

    def test_short_text_unchanged(self):
        assert extract_snippet("customs duty", "customs") == "customs duty"

    def test_match_near_start_has_no_leading_ellipsis(self):
        text = "customs " + "w" * 600
        snippet = extract_snippet(text, "customs")
        assert not snippet.startswith("...")
        assert snippet.endswith("...")

    def test_term_longer_than_context_stays_in_window(self):
        text = "q" * 100 + "customs" + "r" * 100
        snippet = extract_snippet(text, "customs", max_length=10, context=5)
        assert "customs" in snippet
        assert len(snippet.strip(".")) <= 10

    @pytest.mark.parametrize("max_length", [20, 50, 300])
    def test_never_exceeds_max_length(self, max_length):
        text = "the tribunal considered customs excise " * 40
        snippet = extract_snippet(text, "excise", max_length=max_length)
        body = snippet[3:] if snippet.startswith("...") else snippet
        body = body[:-3] if body.endswith("...") else body
        assert len(body) <= max_length
        assert "excise" in body
