"""Embedding generation: sentence-transformers locally, OpenAI as an option."""

import logging
import threading
from typing import List, Optional, Protocol, Sequence

import numpy as np
from tenacity import retry, stop_after_attempt, wait_exponential

from .errors import EmbeddingError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "all-MiniLM-L6-v2"
DEFAULT_DIMENSION = 384
# ~512 model tokens
DEFAULT_MAX_CHARS = 2000
MIN_EMBEDDING_CHARS = 50


class EmbeddingBackend(Protocol):
    """A text encoder returning one row per input text."""
    name: str

    def load(self) -> None:
        ...

    def encode(self, texts: List[str]) -> np.ndarray:
        ...


class SentenceTransformerBackend:
    """Local sentence-transformers model (mean pooled, normalized)."""

    def __init__(self, model_name: str = DEFAULT_MODEL, device: str = "cpu"):
        self.model_name = model_name
        self.device = device
        self.name = model_name
        self.model = None

    def load(self) -> None:
        if self.model is not None:
            return
        import torch
        from sentence_transformers import SentenceTransformer

        if self.device == "auto":
            self.device = "cuda" if torch.cuda.is_available() else "cpu"
        logger.info(f"Loading local embedding model: {self.model_name} on {self.device}")
        self.model = SentenceTransformer(self.model_name, device=self.device)
        logger.info(f"Loaded model with dimension: {self.model.get_sentence_embedding_dimension()}")

    def encode(self, texts: List[str]) -> np.ndarray:
        return self.model.encode(
            texts,
            convert_to_tensor=False,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )


class OpenAIEmbeddingBackend:
    """OpenAI embeddings API, reduced to ``dimensions`` server-side."""

    def __init__(self, api_key: str, model: str = "text-embedding-3-small", dimensions: int = DEFAULT_DIMENSION):
        self.api_key = api_key
        self.model = model
        self.dimensions = dimensions
        self.name = model
        self.client = None

    def load(self) -> None:
        if self.client is None:
            import openai

            self.client = openai.OpenAI(api_key=self.api_key)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10)
    )
    def encode(self, texts: List[str]) -> np.ndarray:
        response = self.client.embeddings.create(
            model=self.model,
            input=texts,
            dimensions=self.dimensions
        )
        logger.info(f"Generated {len(response.data)} embeddings using {self.model}")
        return np.array([item.embedding for item in response.data], dtype=np.float32)


class EmbeddingGenerator:
    """Turns text into L2-normalized vectors of a fixed dimension.

    ``embed`` and ``embed_batch`` share one code path, so a text gets the same
    vector whether it is embedded alone or as part of a batch.
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        dimension: int = DEFAULT_DIMENSION,
        max_chars: int = DEFAULT_MAX_CHARS,
        batch_size: int = 32,
    ):
        self.backend = backend
        self.dimension = dimension
        self.max_chars = max_chars
        self.batch_size = batch_size
        self._ready = False
        self._load_lock = threading.Lock()

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def model_name(self) -> str:
        return self.backend.name

    def load(self) -> None:
        """Load the underlying model once; later calls are no-ops."""
        with self._load_lock:
            if self._ready:
                return
            try:
                self.backend.load()
            except Exception as e:
                raise EmbeddingError(f"Failed to load embedding model {self.backend.name}: {e}") from e
            self._ready = True

    def embed(self, text: str) -> List[float]:
        """
        Embed one text.

        Raises:
            EmbeddingError: empty text, model not loaded, or backend failure
        """
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed several texts; results match ``embed`` item by item."""
        if not self._ready:
            raise EmbeddingError("Embedding model not initialized")
        if not texts:
            return []

        prepared = [self._prepare(text) for text in texts]
        vectors: List[List[float]] = []
        for start in range(0, len(prepared), self.batch_size):
            batch = prepared[start:start + self.batch_size]
            try:
                encoded = np.asarray(self.backend.encode(batch), dtype=np.float32)
            except Exception as e:
                raise EmbeddingError(f"Failed to generate embeddings: {e}") from e
            vectors.extend(self._normalize(row) for row in encoded.reshape(len(batch), -1))
        return vectors

    def _prepare(self, text: str) -> str:
        if text is None or not text.strip():
            raise EmbeddingError("Text cannot be empty")
        if len(text) > self.max_chars:
            logger.debug(f"Truncated text from {len(text)} to {self.max_chars} characters")
            return text[:self.max_chars]
        return text

    def _normalize(self, row: np.ndarray) -> List[float]:
        if row.shape[0] != self.dimension:
            raise EmbeddingError(
                f"Invalid embedding dimension: expected {self.dimension}, got {row.shape[0]}"
            )
        norm = np.linalg.norm(row)
        if norm > 0:
            row = row / norm
        return row.astype(float).tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors (0.0 if either is zero)."""
    if len(a) != len(b):
        raise ValueError(f"Vector dimensions must match: {len(a)} != {len(b)}")
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def chunk_text(text: str, max_chunk_size: int = 1500, overlap: int = 200) -> List[str]:
    """
    Split text into overlapping character windows.

    Args:
        text: Input text
        max_chunk_size: Maximum characters per chunk
        overlap: Characters shared between consecutive chunks

    Returns:
        List of chunks covering the whole text
    """
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")
    if overlap < 0 or overlap >= max_chunk_size:
        raise ValueError("overlap must be >= 0 and smaller than max_chunk_size")
    if not text:
        return []

    chunks = []
    step = max_chunk_size - overlap
    start = 0
    while start < len(text):
        chunks.append(text[start:start + max_chunk_size])
        if start + max_chunk_size >= len(text):
            break
        start += step
    return chunks


def build_backend(provider: str, model: str, dimension: int, device: str = "cpu",
                  api_key: Optional[str] = None) -> EmbeddingBackend:
    """Build the configured embedding backend ("local" or "openai")."""
    if provider == "openai":
        if not api_key:
            raise EmbeddingError("OPENAI_API_KEY is required for the openai provider")
        openai_model = model if model.startswith("text-embedding") else "text-embedding-3-small"
        return OpenAIEmbeddingBackend(api_key=api_key, model=openai_model, dimensions=dimension)
    return SentenceTransformerBackend(model_name=model, device=device)
