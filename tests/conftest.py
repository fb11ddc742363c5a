"""Pytest fixtures and test doubles for Tribunal tests"""

import io
import zlib
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import fitz
import numpy as np
import pytest
from PIL import Image

from tribunal.core.embed import EmbeddingGenerator
from tribunal.core.extract import TextExtractor
from tribunal.core.pipeline import IngestionPipeline
from tribunal.core.store import InMemoryContentStore

DIMENSION = 16


class FakeEmbeddingBackend:
    """Deterministic bag-of-words hashing encoder.

    ``overrides`` maps exact texts to fixed vectors; texts containing any of
    ``fail_on`` raise.
    """

    name = "fake-hash"

    def __init__(self, dimension: int = DIMENSION, overrides: Optional[Dict[str, Sequence[float]]] = None,
                 fail_on: Iterable[str] = ()):
        self.dimension = dimension
        self.overrides = dict(overrides or {})
        self.fail_on = list(fail_on)
        self.load_calls = 0
        self.calls: List[List[str]] = []

    def load(self) -> None:
        self.load_calls += 1

    def encode(self, texts: List[str]) -> np.ndarray:
        self.calls.append(list(texts))
        rows = []
        for text in texts:
            if any(marker in text for marker in self.fail_on):
                raise RuntimeError("encoder exploded")
            if text in self.overrides:
                rows.append(np.asarray(self.overrides[text], dtype=np.float32))
                continue
            vec = np.zeros(self.dimension, dtype=np.float32)
            for token in text.lower().split():
                vec[zlib.crc32(token.encode("utf-8")) % self.dimension] += 1.0
            rows.append(vec)
        return np.stack(rows)


class FakeOcrEngine:
    """Returns scripted text per OCR call; calls listed in ``fail_calls`` raise."""

    name = "fake-ocr"

    def __init__(self, texts: Sequence[str] = ("recognized text",), fail_calls: Iterable[int] = ()):
        self.texts = list(texts)
        self.fail_calls = set(fail_calls)
        self.image_sizes: List[Tuple[int, int]] = []

    def recognize(self, image: Image.Image) -> str:
        self.image_sizes.append(image.size)
        call = len(self.image_sizes)
        if call in self.fail_calls:
            raise RuntimeError("tesseract crashed")
        return self.texts[(call - 1) % len(self.texts)]


class ConfidentOcrEngine(FakeOcrEngine):
    name = "fake-ocr-confident"

    def recognize_with_confidence(self, image: Image.Image):
        return self.recognize(image), 87.5


def png_bytes(width: int, height: int, color: Tuple[int, int, int]) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def make_text_pdf(path, pages: Sequence[str]):
    """Born-digital PDF with one text box per page."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_textbox(fitz.Rect(50, 50, 545, 790), text, fontsize=10)
    doc.save(str(path))
    doc.close()
    return path


def make_scanned_pdf(path, pages: Sequence[Sequence[Tuple[int, int]]]):
    """Image-only PDF; each page gets images of the given pixel sizes."""
    doc = fitz.open()
    shade = 10
    for sizes in pages:
        page = doc.new_page()
        for i, (width, height) in enumerate(sizes):
            # distinct colours keep PyMuPDF from sharing one image xref
            shade += 23
            rect = fitz.Rect(20, 20 + i * 250, 220, 220 + i * 250)
            page.insert_image(rect, stream=png_bytes(width, height, (shade % 256, 100, 200)))
    doc.save(str(path))
    doc.close()
    return path


LONG_PARAGRAPH = (
    "The appellant challenged the customs excise duty assessment issued by the "
    "Commissioner General. The tribunal heard evidence on the valuation of imported "
    "goods and the classification of the consignment under the tariff schedule. "
)


@pytest.fixture
def store():
    return InMemoryContentStore()


@pytest.fixture
def backend():
    return FakeEmbeddingBackend()


@pytest.fixture
def embedder(backend):
    generator = EmbeddingGenerator(backend, dimension=DIMENSION, max_chars=2000, batch_size=4)
    generator.load()
    return generator


@pytest.fixture
def ocr_engine():
    return FakeOcrEngine(texts=[LONG_PARAGRAPH])


@pytest.fixture
def extractor(ocr_engine):
    return TextExtractor(ocr_engine, embedded_text_threshold=500)


@pytest.fixture
def pipeline(store, extractor, embedder):
    return IngestionPipeline(store, extractor, embedder, embedding_min_chars=50)


@pytest.fixture
def text_pdf(tmp_path):
    pages = [
        LONG_PARAGRAPH * 2,
        "Page two. " + LONG_PARAGRAPH,
        "Decision: the appeal is allowed with costs. " + LONG_PARAGRAPH,
    ]
    return make_text_pdf(tmp_path / "decision.pdf", pages)


@pytest.fixture
def scanned_pdf(tmp_path):
    return make_scanned_pdf(tmp_path / "scan.pdf", [[(300, 400)], [(300, 400)], [(300, 400)]])
