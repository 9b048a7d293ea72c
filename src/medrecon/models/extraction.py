"""Text extraction IR models: word positions and document-level results."""

from typing import Optional

from pydantic import BaseModel, Field

from .base import BoundingBox, ConfidenceLevel, PositionSource


PAGE_MARKER = "--- Page {page_number} ---"


def page_marker(page_number: int) -> str:
    """Marker inserted before each page's text in the document text."""
    return PAGE_MARKER.format(page_number=page_number)


class WordPosition(BaseModel):
    """Individual recognized token with its location on the page."""

    text: str
    page: int = Field(..., ge=1, description="1-indexed page number")
    bbox: BoundingBox
    confidence: float = Field(..., ge=0.0, le=100.0)
    source: PositionSource
    index: str = Field(..., description="Stable per-page index, e.g. b0-p1-l2-w3")

    class Config:
        frozen = True

    @property
    def x(self) -> float:
        return self.bbox.x

    @property
    def y(self) -> float:
        return self.bbox.y


class PageOCR(BaseModel):
    """Recognition output for one page."""

    page: int = Field(..., ge=1)
    text: str = ""
    words: list[WordPosition] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=100.0)


class PageError(BaseModel):
    """A page that could not be rasterized or recognized."""

    page: int = Field(..., ge=1)
    message: str

    @property
    def marker(self) -> str:
        """Text inserted in place of the page's content."""
        return f"[Error processing page {self.page}: {self.message}]"


class ExtractionResult(BaseModel):
    """
    Document-level text extraction output.

    Produced once per document by the extraction orchestrator and only read
    afterwards (by the field extractor and the source reconciler).
    """

    text: str = Field(..., description="Full text with page markers")
    is_ocr: bool
    source: PositionSource
    confidence_level: ConfidenceLevel
    mean_confidence: float = Field(default=0.0, ge=0.0, le=100.0)
    page_count: int = Field(..., ge=0)
    positions: list[WordPosition] = Field(default_factory=list)
    page_errors: list[PageError] = Field(default_factory=list)

    class Config:
        frozen = True

    @property
    def is_partial(self) -> bool:
        """True if at least one page failed."""
        return bool(self.page_errors)

    @property
    def error(self) -> Optional[str]:
        """Summary of failed pages, if any."""
        if not self.page_errors:
            return None
        pages = ", ".join(str(e.page) for e in self.page_errors)
        return f"{len(self.page_errors)} of {self.page_count} pages failed ({pages})"

    def positions_for_page(self, page: int) -> list[WordPosition]:
        return [p for p in self.positions if p.page == page]
