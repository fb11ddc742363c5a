"""PDF text extraction: embedded text for born-digital files, OCR for scans."""

import io
import logging
import re
from pathlib import Path
from typing import List, Optional, Protocol, Tuple, Union

import fitz  # PyMuPDF
import pytesseract
from PIL import Image

from .errors import FileOpenError, PageExtractionError
from .models import ExtractedDocument, ExtractedPage, ExtractionMethod

logger = logging.getLogger(__name__)

# Page separators such as "-- 3 of 12 --" emitted by some PDF producers
PAGE_MARKER_RE = re.compile(r"--\s*\d+\s*of\s*\d+\s*--", re.IGNORECASE)

EMBEDDED_SOURCE = "embedded"


class OcrEngine(Protocol):
    """Anything that turns a page image into text."""
    name: str

    def recognize(self, image: Image.Image) -> str:
        ...


class TesseractOcrEngine:
    """OCR engine backed by the tesseract binary via pytesseract."""

    name = "tesseract"

    def __init__(self, language: str = "eng", config: str = ""):
        self.language = language
        self.config = config

    def recognize(self, image: Image.Image) -> str:
        return pytesseract.image_to_string(image, lang=self.language, config=self.config)

    def recognize_with_confidence(self, image: Image.Image) -> Tuple[str, Optional[float]]:
        """Recognize text and return the mean word confidence (0-100)."""
        data = pytesseract.image_to_data(
            image,
            lang=self.language,
            config=self.config,
            output_type=pytesseract.Output.DICT,
        )

        lines = {}
        confidences = []
        for i, word in enumerate(data["text"]):
            if not word or not word.strip():
                continue
            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            lines.setdefault(key, []).append(word)
            conf = float(data["conf"][i])
            if conf >= 0:
                confidences.append(conf)

        text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
        confidence = sum(confidences) / len(confidences) if confidences else None
        return text, confidence


def strip_page_markers(text: str) -> str:
    return PAGE_MARKER_RE.sub("", text).replace("\f", "")


def clean_text(text: str) -> str:
    """Normalize extracted text.

    Steps, in order: collapse whitespace runs, drop non-printable characters,
    collapse runs of 3+ periods to an ellipsis, collapse 3+ newlines, trim.
    """
    if not text:
        return ""
    text = re.sub(r"\s+", " ", text)
    text = "".join(ch for ch in text if ch.isprintable())
    text = re.sub(r"\.{3,}", "...", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def count_words(text: str) -> int:
    return len([w for w in text.split() if w])


class TextExtractor:
    """Extract ordered per-page text from a PDF.

    The embedded-vs-OCR decision is made once per document: if the embedded
    text of the whole file, with page markers removed, is longer than
    ``embedded_text_threshold`` characters the file is treated as born-digital.
    Otherwise every page is OCR'd from its largest image.
    """

    def __init__(
        self,
        ocr_engine: OcrEngine,
        embedded_text_threshold: int = 500,
        ocr_zoom: float = 2.0,
    ):
        self.ocr_engine = ocr_engine
        self.embedded_text_threshold = embedded_text_threshold
        self.ocr_zoom = ocr_zoom

    def extract(self, file_path: Union[str, Path]) -> ExtractedDocument:
        """
        Extract text from every page of a PDF.

        Args:
            file_path: Path to the PDF

        Returns:
            ExtractedDocument with one ExtractedPage per PDF page, in order.
            Pages whose OCR failed carry ``error`` and empty text.

        Raises:
            FileOpenError: the file is missing, unreadable or not a PDF
        """
        path = Path(file_path)
        try:
            doc = fitz.open(path)
        except Exception as e:
            raise FileOpenError(f"Cannot open {path}: {e}") from e

        with doc:
            if doc.needs_pass:
                raise FileOpenError(f"Cannot open {path}: document is encrypted")
            if doc.page_count == 0:
                raise FileOpenError(f"Cannot open {path}: document has no pages")

            try:
                embedded_texts = [page.get_text() for page in doc]
            except RuntimeError as e:
                raise FileOpenError(f"Cannot parse {path}: {e}") from e

            if self.has_embedded_text(embedded_texts):
                logger.info(f"{path.name}: using embedded text for {len(embedded_texts)} pages")
                pages = [
                    self._embedded_page(number, text)
                    for number, text in enumerate(embedded_texts, start=1)
                ]
                return ExtractedDocument(method=ExtractionMethod.EMBEDDED, pages=pages)

            logger.info(f"{path.name}: no usable embedded text, running OCR on {doc.page_count} pages")
            pages = [self._ocr_page(doc, page) for page in doc]
            failed = sum(1 for p in pages if p.failed)
            if failed:
                logger.warning(f"{path.name}: OCR failed on {failed} of {len(pages)} pages")
            return ExtractedDocument(method=ExtractionMethod.OCR, pages=pages)

    def has_embedded_text(self, page_texts: List[str]) -> bool:
        combined = strip_page_markers("\n".join(page_texts)).strip()
        return len(combined) > self.embedded_text_threshold

    def _embedded_page(self, page_number: int, text: str) -> ExtractedPage:
        raw = strip_page_markers(text)
        cleaned = clean_text(raw)
        return ExtractedPage(
            page_number=page_number,
            raw_text=raw,
            cleaned_text=cleaned,
            word_count=count_words(cleaned),
            source=EMBEDDED_SOURCE,
        )

    def _ocr_page(self, doc: fitz.Document, page: fitz.Page) -> ExtractedPage:
        page_number = page.number + 1
        try:
            image = self.page_image(doc, page)
            raw, confidence = self._recognize(image)
        except Exception as e:
            error = PageExtractionError(page_number, str(e))
            logger.warning(f"OCR extraction failed: {error}")
            return ExtractedPage(
                page_number=page_number,
                raw_text="",
                cleaned_text="",
                word_count=0,
                source=self.ocr_engine.name,
                error=str(error),
            )

        cleaned = clean_text(raw)
        return ExtractedPage(
            page_number=page_number,
            raw_text=raw,
            cleaned_text=cleaned,
            word_count=count_words(cleaned),
            source=self.ocr_engine.name,
            ocr_confidence=confidence,
        )

    def page_image(self, doc: fitz.Document, page: fitz.Page) -> Image.Image:
        """Return the largest embedded image on the page, or a render of the page."""
        best = None
        best_area = 0
        for img in page.get_images(full=True):
            info = doc.extract_image(img[0])
            if not info:
                continue
            area = info["width"] * info["height"]
            if area > best_area:
                best, best_area = info, area

        if best is not None:
            return Image.open(io.BytesIO(best["image"]))

        # No embedded scan on this page; rasterize instead
        mat = fitz.Matrix(self.ocr_zoom, self.ocr_zoom)
        pix = page.get_pixmap(matrix=mat)
        return Image.open(io.BytesIO(pix.tobytes("png")))

    def _recognize(self, image: Image.Image) -> Tuple[str, Optional[float]]:
        with_confidence = getattr(self.ocr_engine, "recognize_with_confidence", None)
        if with_confidence is not None:
            return with_confidence(image)
        return self.ocr_engine.recognize(image), None
