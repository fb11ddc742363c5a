"""Tests for the embedding generator and vector utilities."""

import numpy as np
import pytest

from tribunal.core.embed import EmbeddingGenerator, build_backend, chunk_text, cosine_similarity
from tribunal.core.embed import OpenAIEmbeddingBackend, SentenceTransformerBackend
from tribunal.core.errors import EmbeddingError

from conftest import DIMENSION, FakeEmbeddingBackend


class TestEmbeddingGenerator:

    def test_requires_load(self, backend):
        generator = EmbeddingGenerator(backend, dimension=DIMENSION)
        assert not generator.is_ready
        with pytest.raises(EmbeddingError, match="not initialized"):
            generator.embed("customs duty")

    def test_load_is_idempotent(self, backend):
        generator = EmbeddingGenerator(backend, dimension=DIMENSION)
        generator.load()
        generator.load()
        assert generator.is_ready
        assert backend.load_calls == 1

    def test_empty_text_rejected(self, embedder):
        with pytest.raises(EmbeddingError, match="empty"):
            embedder.embed("   ")

    def test_vectors_are_normalized(self, embedder):
        vector = embedder.embed("the tribunal allowed the appeal")
        assert len(vector) == DIMENSION
        assert np.linalg.norm(vector) == pytest.approx(1.0)

    def test_self_similarity(self, embedder):
        for text in ["customs excise", "valuation of imported goods", "x"]:
            assert cosine_similarity(embedder.embed(text), embedder.embed(text)) == pytest.approx(1.0)

    def test_batch_matches_single(self, embedder):
        texts = ["first page text", "second page", "third one here", "fourth", "fifth and last"]
        batch = embedder.embed_batch(texts)
        assert len(batch) == len(texts)
        for text, vector in zip(texts, batch):
            assert vector == pytest.approx(embedder.embed(text))

    def test_batch_respects_batch_size(self, embedder, backend):
        embedder.embed_batch(["a b", "c d", "e f", "g h", "i j"])
        assert [len(call) for call in backend.calls] == [4, 1]

    def test_empty_batch(self, embedder):
        assert embedder.embed_batch([]) == []

    def test_long_text_truncated(self, backend):
        generator = EmbeddingGenerator(backend, dimension=DIMENSION, max_chars=100)
        generator.load()
        generator.embed("word " * 500)
        assert len(backend.calls[-1][0]) == 100

    def test_dimension_mismatch(self):
        generator = EmbeddingGenerator(FakeEmbeddingBackend(dimension=8), dimension=DIMENSION)
        generator.load()
        with pytest.raises(EmbeddingError, match="dimension"):
            generator.embed("some text")

    def test_backend_failure_wrapped(self):
        generator = EmbeddingGenerator(FakeEmbeddingBackend(fail_on=["boom"]), dimension=DIMENSION)
        generator.load()
        with pytest.raises(EmbeddingError):
            generator.embed("this goes boom")


class TestCosineSimilarity:

    def test_orthogonal(self):
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)

    def test_opposite(self):
        assert cosine_similarity([1, 0], [-2, 0]) == pytest.approx(-1.0)

    def test_zero_vector(self):
        assert cosine_similarity([0, 0], [1, 1]) == 0.0

    def test_dimension_mismatch_raises(self):
        with pytest.raises(ValueError):
            cosine_similarity([1, 0, 0], [1, 0])


class TestChunkText:

    def test_short_text_single_chunk(self):
        assert chunk_text("short", max_chunk_size=100, overlap=10) == ["short"]

    def test_overlap(self):
        text = "".join(chr(ord("a") + i % 26) for i in range(3500))
        chunks = chunk_text(text, max_chunk_size=1500, overlap=200)
        assert len(chunks) == 3
        assert all(len(c) <= 1500 for c in chunks)
        assert chunks[0][-200:] == chunks[1][:200]
        assert chunks[-1].endswith(text[-10:])

    def test_returns_list(self):
        assert isinstance(chunk_text("abc" * 1000), list)

    def test_empty(self):
        assert chunk_text("") == []

    @pytest.mark.parametrize("size,overlap", [(100, 100), (100, 150), (100, -1), (0, 0)])
    def test_invalid_overlap(self, size, overlap):
        with pytest.raises(ValueError):
            chunk_text("text", max_chunk_size=size, overlap=overlap)


class TestBuildBackend:

    def test_local_default(self):
        backend = build_backend("local", "all-MiniLM-L6-v2", 384)
        assert isinstance(backend, SentenceTransformerBackend)
        assert backend.model is None

    def test_openai_requires_key(self):
        with pytest.raises(EmbeddingError):
            build_backend("openai", "text-embedding-3-small", 384)

    def test_openai(self):
        backend = build_backend("openai", "all-MiniLM-L6-v2", 384, api_key="sk-test")
        assert isinstance(backend, OpenAIEmbeddingBackend)
        assert backend.model == "text-embedding-3-small"
        assert backend.dimensions == 384
