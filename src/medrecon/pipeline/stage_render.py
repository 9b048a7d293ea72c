"""PDF Rendering Stage - Rasterize pages and read the embedded text layer.

Uses PyMuPDF (fitz) for rendering. Pages are rendered one at a time into
numpy pixel buffers so memory stays bounded by the OCR batch size.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

import fitz  # PyMuPDF
import numpy as np

from medrecon.config import settings
from medrecon.errors import PageProcessingError
from medrecon.models import BoundingBox, PositionSource, WordPosition

logger = logging.getLogger(__name__)


class PDFPages:
    """An open PDF document that can be rasterized page by page.

    Not thread-safe: render pages from the thread that opened the document.
    """

    def __init__(self, pdf_doc: fitz.Document, scale: float):
        self._pdf_doc = pdf_doc
        self.scale = scale

    @property
    def page_count(self) -> int:
        return len(self._pdf_doc)

    def render(self, page_number: int) -> np.ndarray:
        """Render one page to an RGB pixel buffer.

        Args:
            page_number: 1-indexed page number.

        Returns:
            Array of shape (height, width, 3), dtype uint8.

        Raises:
            PageProcessingError: If the page cannot be rendered.
        """
        try:
            page = self._pdf_doc[page_number - 1]
            matrix = fitz.Matrix(self.scale, self.scale)
            pixmap = page.get_pixmap(matrix=matrix, alpha=False)
            buffer = np.frombuffer(pixmap.samples, dtype=np.uint8)
            return buffer.reshape(pixmap.height, pixmap.width, pixmap.n)[:, :, :3].copy()
        except Exception as e:
            raise PageProcessingError(
                f"Rasterization failed: {e}", page_number=page_number
            ) from e

    def text_layer(self) -> tuple[list[str], list[WordPosition]]:
        """Read the embedded text layer with glyph-word positions.

        Coordinates are scaled by the render scale so they share the pixel
        space of OCR output.

        Returns:
            Tuple of (per-page texts, word positions).
        """
        page_texts = []
        positions = []

        for page_index in range(self.page_count):
            page = self._pdf_doc[page_index]
            page_number = page_index + 1
            page_texts.append(page.get_text("text").strip())

            for x0, y0, x1, y1, word, block_no, line_no, word_no in page.get_text("words"):
                word = word.strip()
                if not word:
                    continue
                positions.append(
                    WordPosition(
                        text=word,
                        page=page_number,
                        bbox=BoundingBox(
                            x=x0 * self.scale,
                            y=y0 * self.scale,
                            width=max(0.0, (x1 - x0) * self.scale),
                            height=max(0.0, (y1 - y0) * self.scale),
                        ),
                        confidence=100.0,
                        source=PositionSource.EMBEDDED_TEXT,
                        index=f"b{block_no}-l{line_no}-w{word_no}",
                    )
                )

        return page_texts, positions

    def close(self) -> None:
        self._pdf_doc.close()


class PDFRasterizer:
    """Opens PDFs for page rasterization at a fixed scale.

    The default 2.0x scale balances OCR accuracy against memory.
    """

    def __init__(self, scale: Optional[float] = None):
        """Initialize rasterizer.

        Args:
            scale: Zoom factor relative to 72 DPI (default from settings).
        """
        self.scale = scale or settings.render_scale

    @contextmanager
    def open(self, pdf_path: Path) -> Generator[PDFPages, None, None]:
        """Open a PDF for rendering, closing it on exit.

        Raises:
            FileNotFoundError: If the PDF does not exist.
            PageProcessingError: If the file is not a readable PDF.
        """
        pdf_path = Path(pdf_path)
        if not pdf_path.exists():
            raise FileNotFoundError(f"PDF not found: {pdf_path}")

        # FileDataError and friends are RuntimeError subclasses
        try:
            pdf_doc = fitz.open(str(pdf_path))
        except RuntimeError as e:
            raise PageProcessingError(f"Cannot open {pdf_path.name}: {e}") from e
        logger.debug("Opened %s (%d pages)", pdf_path.name, len(pdf_doc))
        pages = PDFPages(pdf_doc, self.scale)
        try:
            yield pages
        finally:
            pages.close()
