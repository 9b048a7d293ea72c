"""Extraction Stage - Document text and word positions, embedded or OCR.

Prefers the PDF's embedded text layer when it carries enough text; otherwise
rasterizes every page and runs OCR in fan-out/fan-in batches no larger than
the OCR pool, so no more than pool-size recognitions are ever in flight.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Optional

from medrecon.config import settings
from medrecon.errors import ExtractionCancelled, PageProcessingError
from medrecon.models import (
    ConfidenceLevel,
    ExtractionResult,
    PageError,
    PageOCR,
    PositionSource,
    ProgressStatus,
    ProgressUpdate,
    page_marker,
)
from medrecon.pipeline.stage_ocr import OCRWorkerPool, confidence_to_level
from medrecon.pipeline.stage_render import PDFPages, PDFRasterizer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]


class CancellationToken:
    """Cooperative cancellation flag, checked at batch boundaries."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def join_pages(page_texts: list[str]) -> str:
    """Concatenate page texts in order with a marker before each page."""
    return "\n\n".join(
        f"{page_marker(number)}\n\n{text}" for number, text in enumerate(page_texts, start=1)
    )


def report(
    callback: Optional[ProgressCallback],
    status: ProgressStatus,
    progress: float,
    step: str,
    message: str = "",
) -> None:
    """Send a progress update if a callback is registered."""
    if callback is None:
        return
    callback(
        ProgressUpdate(
            status=status,
            progress=max(0.0, min(1.0, progress)),
            step=step,
            message=message,
        )
    )


class ParallelExtraction:
    """Extracts document text and word positions.

    Tries the embedded text layer first and falls back to batched OCR.
    """

    def __init__(
        self,
        rasterizer: Optional[PDFRasterizer] = None,
        pool: Optional[OCRWorkerPool] = None,
        min_text_chars: Optional[int] = None,
    ):
        """Initialize extraction.

        Args:
            rasterizer: Page rasterizer (default PDFRasterizer at settings scale).
            pool: OCR worker pool (default Tesseract pool at settings size).
            min_text_chars: Embedded text length above which OCR is skipped.
        """
        self.rasterizer = rasterizer or PDFRasterizer()
        self.pool = pool or OCRWorkerPool()
        self.min_text_chars = (
            min_text_chars if min_text_chars is not None else settings.text_layer_min_chars
        )

    def extract(
        self,
        pdf_path: Path,
        progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExtractionResult:
        """Extract text and word positions from a PDF.

        Args:
            pdf_path: Path to the PDF.
            progress: Optional progress callback.
            cancel_token: Optional cancellation token.

        Returns:
            ExtractionResult, possibly with failed pages noted.

        Raises:
            EngineInitError: If no OCR engine could be initialized.
            PageProcessingError: If every page failed.
            ExtractionCancelled: If cancelled between batches.
        """
        cancel_token = cancel_token or CancellationToken()
        report(progress, ProgressStatus.PROCESSING, 0.05, "Starting", "Loading PDF document")

        with self.rasterizer.open(pdf_path) as pages:
            total_pages = pages.page_count
            if total_pages == 0:
                raise PageProcessingError(f"{Path(pdf_path).name} has no pages")

            report(
                progress,
                ProgressStatus.PROCESSING,
                0.15,
                "PDF Loaded",
                f"Processing {total_pages} pages",
            )

            result = self._extract_text_layer(pages)
            if result is not None:
                report(
                    progress,
                    ProgressStatus.PROCESSING,
                    0.9,
                    "Text Extraction Complete",
                    f"Extracted {len(result.text)} characters from the embedded text layer",
                )
                return result

            report(
                progress,
                ProgressStatus.PROCESSING,
                0.3,
                "OCR Processing",
                "PDF text not searchable, using OCR with position tracking",
            )
            return self._extract_with_ocr(pages, progress, cancel_token)

    def _extract_text_layer(self, pages: PDFPages) -> Optional[ExtractionResult]:
        """Return a result from the embedded text layer, or None if not viable."""
        try:
            page_texts, positions = pages.text_layer()
        except (RuntimeError, ValueError) as e:
            logger.warning("Embedded text extraction failed, falling back to OCR: %s", e)
            return None

        char_count = sum(len(t) for t in page_texts)
        if char_count <= self.min_text_chars:
            logger.info(
                "Embedded text layer has %d characters (need > %d), using OCR",
                char_count,
                self.min_text_chars,
            )
            return None

        logger.info(
            "Embedded text layer accepted: %d characters, %d positions",
            char_count,
            len(positions),
        )
        return ExtractionResult(
            text=join_pages(page_texts),
            is_ocr=False,
            source=PositionSource.EMBEDDED_TEXT,
            confidence_level=ConfidenceLevel.HIGH,
            mean_confidence=100.0,
            page_count=pages.page_count,
            positions=positions,
        )

    def _extract_with_ocr(
        self,
        pages: PDFPages,
        progress: Optional[ProgressCallback],
        cancel_token: CancellationToken,
    ) -> ExtractionResult:
        """OCR every page in batches sized to the acquired handle count."""
        total_pages = pages.page_count
        page_results: dict[int, PageOCR] = {}
        page_errors: dict[int, PageError] = {}

        with self.pool.session(total_pages) as handles:
            batch_size = len(handles)
            logger.info("OCR of %d pages in batches of %d", total_pages, batch_size)

            with ThreadPoolExecutor(max_workers=batch_size, thread_name_prefix="ocr") as executor:
                for batch_start in range(1, total_pages + 1, batch_size):
                    if cancel_token.cancelled:
                        logger.info("Extraction cancelled before page %d", batch_start)
                        raise ExtractionCancelled("Processing canceled")

                    batch_end = min(batch_start + batch_size - 1, total_pages)
                    futures = {}

                    for page_number in range(batch_start, batch_end + 1):
                        handle = handles[(page_number - 1) % batch_size]
                        try:
                            image = pages.render(page_number)
                        except PageProcessingError as e:
                            logger.warning("Page %d failed to render: %s", page_number, e)
                            page_errors[page_number] = PageError(page=page_number, message=str(e))
                            continue
                        futures[executor.submit(handle.recognize, image, page_number)] = page_number

                    wait(futures)

                    for future, page_number in futures.items():
                        try:
                            page_results[page_number] = future.result()
                        except Exception as e:
                            logger.warning("Page %d failed OCR: %s", page_number, e)
                            page_errors[page_number] = PageError(page=page_number, message=str(e))

                    report(
                        progress,
                        ProgressStatus.PROCESSING,
                        0.4 + 0.5 * (batch_end / total_pages),
                        "OCR Processing",
                        f"Completed {batch_end}/{total_pages} pages",
                    )

        if not page_results:
            raise PageProcessingError(f"All {total_pages} pages failed OCR")

        page_texts = []
        positions = []
        for page_number in range(1, total_pages + 1):
            if page_number in page_results:
                page_texts.append(page_results[page_number].text)
                positions.extend(page_results[page_number].words)
            else:
                page_texts.append(page_errors[page_number].marker)

        mean_confidence = sum(r.confidence for r in page_results.values()) / len(page_results)
        logger.info(
            "OCR complete: %d/%d pages, %d positions, mean confidence %.1f",
            len(page_results),
            total_pages,
            len(positions),
            mean_confidence,
        )

        return ExtractionResult(
            text=join_pages(page_texts),
            is_ocr=True,
            source=PositionSource.OCR,
            confidence_level=confidence_to_level(mean_confidence),
            mean_confidence=mean_confidence,
            page_count=total_pages,
            positions=positions,
            page_errors=[page_errors[n] for n in sorted(page_errors)],
        )
