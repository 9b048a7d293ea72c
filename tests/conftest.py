"""Pytest configuration and fixtures."""

import threading
from typing import Optional

import fitz
import numpy as np
import pytest

from medrecon.models import BoundingBox, PageOCR, PositionSource, WordPosition


def make_word(
    text: str,
    x: float,
    y: float,
    page: int = 1,
    width: Optional[float] = None,
    height: float = 20.0,
    confidence: float = 90.0,
    index: Optional[str] = None,
) -> WordPosition:
    """Build a word position for reconciliation tests."""
    return WordPosition(
        text=text,
        page=page,
        bbox=BoundingBox(
            x=x,
            y=y,
            width=width if width is not None else 12.0 * len(text),
            height=height,
        ),
        confidence=confidence,
        source=PositionSource.OCR,
        index=index or f"p{page}-{x:g}-{y:g}",
    )


def make_line(text: str, x: float, y: float, page: int = 1, **kwargs) -> list[WordPosition]:
    """Lay out the words of `text` left to right on one line."""
    words = []
    for token in text.split():
        word = make_word(token, x, y, page=page, **kwargs)
        words.append(word)
        x = word.bbox.x2 + 10.0
    return words


class FakeEngine:
    """OCR engine returning canned text per page, optionally slow or failing."""

    def __init__(self, delays=None, failures=None):
        self.delays = delays or {}
        self.failures = failures or set()
        self.pages_seen = []
        self.closed = False
        self._lock = threading.Lock()

    def recognize(self, image: np.ndarray, page_number: int) -> PageOCR:
        with self._lock:
            self.pages_seen.append(page_number)
        delay = self.delays.get(page_number)
        if delay:
            delay.wait(timeout=5)
        if page_number in self.failures:
            raise RuntimeError(f"engine exploded on page {page_number}")
        return PageOCR(
            page=page_number,
            text=f"Text of page {page_number}",
            words=[make_word(f"word{page_number}", 10.0, 10.0, page=page_number)],
            confidence=80.0,
        )

    def close(self) -> None:
        self.closed = True


class FakeLLMClient:
    """Model client returning queued responses or raising queued errors."""

    def __init__(self, responses=None, embedding=None):
        self.responses = list(responses or [])
        self.embedding = embedding
        self.prompts = []
        self.calls = []

    def complete(self, prompt, system=None, temperature=None, stop=None, max_tokens=None):
        self.prompts.append(prompt)
        self.calls.append({"system": system, "temperature": temperature, "stop": stop})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def embed(self, text):
        return self.embedding


def full_response(**overrides) -> str:
    """A well-formed model response for all 15 fields."""
    from medrecon.models import FIELD_DEFINITIONS

    lines = []
    for definition in FIELD_DEFINITIONS:
        value = overrides.get(definition.key, "NOT FOUND")
        if value is None:
            continue
        lines.append(f"{definition.number}|{value}")
    return "\n".join(lines)


def write_text_pdf(path, pages: list[str]) -> None:
    """Write a PDF with an embedded text layer, one string per page."""
    pdf = fitz.open()
    for text in pages:
        page = pdf.new_page()
        y = 72
        for line in text.split("\n"):
            page.insert_text((72, y), line, fontsize=11)
            y += 16
    pdf.save(str(path))
    pdf.close()


def write_blank_pdf(path, page_count: int) -> None:
    """Write a PDF whose pages carry no text layer."""
    pdf = fitz.open()
    for _ in range(page_count):
        pdf.new_page()
    pdf.save(str(path))
    pdf.close()


@pytest.fixture
def sample_pdf_path(tmp_path):
    """Create a temporary directory for sample PDFs."""
    pdf_dir = tmp_path / "pdfs"
    pdf_dir.mkdir()
    return pdf_dir


@pytest.fixture
def text_pdf(sample_pdf_path):
    """A two-page PDF with a searchable text layer."""
    path = sample_pdf_path / "discharge.pdf"
    write_text_pdf(
        path,
        [
            "Patient Name: Jane Doe\nDOB: 01/02/1950\nInsurance: Medicare Part A\n"
            "Facility: General Hospital\nDiagnosis: Congestive heart failure",
            "Medications: Lisinopril 10mg daily\nFurosemide 40mg twice daily\n"
            "Discharge to home with home health services",
        ],
    )
    return path


@pytest.fixture
def scanned_pdf(sample_pdf_path):
    """A three-page PDF with no text layer."""
    path = sample_pdf_path / "scanned.pdf"
    write_blank_pdf(path, 3)
    return path
