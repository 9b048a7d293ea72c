"""OCR Stage - Recognize rasterized pages with a bounded pool of engines.

Uses Tesseract OCR via pytesseract. Produces word-level bounding boxes and
confidence scores by walking Tesseract's block → paragraph → line → word
table.
"""

import logging
import threading
from collections import OrderedDict
from contextlib import contextmanager
from functools import partial
from typing import Callable, Generator, Optional, Protocol

import cv2
import numpy as np
import pytesseract
from PIL import Image

from medrecon.config import settings
from medrecon.errors import EngineInitError, OCRDecodeError, PageProcessingError
from medrecon.models import (
    BoundingBox,
    ConfidenceLevel,
    PageOCR,
    PositionSource,
    WordPosition,
)

logger = logging.getLogger(__name__)

# Columns of pytesseract.image_to_data(output_type=Output.DICT)
WORD_TABLE_COLUMNS = (
    "level",
    "block_num",
    "par_num",
    "line_num",
    "word_num",
    "left",
    "top",
    "width",
    "height",
    "conf",
    "text",
)
WORD_LEVEL = 5


def confidence_to_level(confidence: float) -> ConfidenceLevel:
    """Convert numeric confidence to confidence level.

    Args:
        confidence: Confidence score on the 0-100 scale.

    Returns:
        ConfidenceLevel enum value.
    """
    confidence = confidence / 100.0

    if confidence >= 0.9:
        return ConfidenceLevel.HIGH
    elif confidence >= 0.7:
        return ConfidenceLevel.MEDIUM
    elif confidence >= 0.5:
        return ConfidenceLevel.LOW
    else:
        return ConfidenceLevel.VERY_LOW


def decode_word_table(
    data: dict,
    page_number: int,
    min_confidence: float,
) -> PageOCR:
    """Normalize a Tesseract word table into page text and word positions.

    Page text keeps every recognized word; word positions keep only words
    whose confidence is above `min_confidence`, so stamps, faint scans and
    handwriting fragments do not pollute matching.

    Args:
        data: Output of ``pytesseract.image_to_data`` as a dict of columns.
        page_number: 1-indexed page number.
        min_confidence: Confidence floor (0-100) for word positions.

    Returns:
        PageOCR for the page.

    Raises:
        OCRDecodeError: If the table is not in the expected shape.
    """
    if not isinstance(data, dict):
        raise OCRDecodeError(
            f"Expected a word table dict, got {type(data).__name__}",
            page_number=page_number,
        )
    missing = [c for c in WORD_TABLE_COLUMNS if c not in data]
    if missing:
        raise OCRDecodeError(
            f"Word table is missing columns: {', '.join(missing)}",
            page_number=page_number,
        )
    row_count = len(data["text"])
    if any(len(data[c]) != row_count for c in WORD_TABLE_COLUMNS):
        raise OCRDecodeError("Word table columns differ in length", page_number=page_number)

    # (block, paragraph, line) -> words, in Tesseract's reading order
    lines: "OrderedDict[tuple[int, int, int], list[str]]" = OrderedDict()
    words = []
    confidences = []

    for i in range(row_count):
        if int(data["level"][i]) != WORD_LEVEL:
            continue

        text = str(data["text"][i]).strip()
        conf = float(data["conf"][i])
        if not text or conf < 0:
            continue
        conf = min(conf, 100.0)

        block, par, line = int(data["block_num"][i]), int(data["par_num"][i]), int(data["line_num"][i])
        lines.setdefault((block, par, line), []).append(text)
        confidences.append(conf)

        if conf <= min_confidence:
            continue

        words.append(
            WordPosition(
                text=text,
                page=page_number,
                bbox=BoundingBox(
                    x=float(data["left"][i]),
                    y=float(data["top"][i]),
                    width=float(data["width"][i]),
                    height=float(data["height"][i]),
                ),
                confidence=conf,
                source=PositionSource.OCR,
                index=f"b{block}-p{par}-l{line}-w{int(data['word_num'][i])}",
            )
        )

    # Lines joined by newlines, paragraphs separated by a blank line
    text_parts = []
    previous_paragraph = None
    for (block, par, _line), line_words in lines.items():
        if previous_paragraph is not None and (block, par) != previous_paragraph:
            text_parts.append("")
        text_parts.append(" ".join(line_words))
        previous_paragraph = (block, par)

    avg_confidence = sum(confidences) / len(confidences) if confidences else 0.0

    return PageOCR(
        page=page_number,
        text="\n".join(text_parts),
        words=words,
        confidence=avg_confidence,
    )


def preprocess_for_ocr(image: np.ndarray) -> np.ndarray:
    """Binarize a grayscale page with Otsu's method.

    Args:
        image: Grayscale image.

    Returns:
        Binary image.
    """
    _, binary = cv2.threshold(
        image,
        0,
        255,
        cv2.THRESH_BINARY + cv2.THRESH_OTSU,
    )
    return binary


class OCREngine(Protocol):
    """Anything that can recognize one page buffer."""

    def recognize(self, image: np.ndarray, page_number: int) -> PageOCR: ...

    def close(self) -> None: ...


class TesseractOCR:
    """OCR engine using Tesseract.

    Extracts text with word-level bounding boxes and confidence scores.
    """

    def __init__(
        self,
        language: Optional[str] = None,
        psm: Optional[int] = None,
        oem: int = 3,
        min_confidence: Optional[float] = None,
        binarize: Optional[bool] = None,
        config: Optional[str] = None,
    ):
        """Initialize Tesseract OCR.

        Args:
            language: Tesseract language code(s), e.g., 'eng', 'eng+spa'.
            psm: Page segmentation mode (6 = assume uniform block of text).
            oem: OCR Engine mode (3 = default, based on what's available).
            min_confidence: Confidence floor (0-100) for word positions.
            binarize: Apply Otsu binarization before recognition.
            config: Additional Tesseract config string.

        Raises:
            EngineInitError: If the Tesseract binary is unavailable.
        """
        self.language = language or settings.ocr_language
        self.psm = psm if psm is not None else settings.ocr_psm
        self.oem = oem
        self.min_confidence = (
            min_confidence if min_confidence is not None else settings.ocr_min_confidence
        )
        self.binarize = binarize if binarize is not None else settings.ocr_binarize
        self.config = config or ""

        try:
            self.version = str(pytesseract.get_tesseract_version())
        except (pytesseract.TesseractNotFoundError, OSError) as e:
            raise EngineInitError(f"Tesseract is not available: {e}") from e

    def _build_config(self) -> str:
        """Build Tesseract configuration string."""
        config_parts = [
            f"--psm {self.psm}",
            f"--oem {self.oem}",
            "-c preserve_interword_spaces=1",
        ]
        if self.config:
            config_parts.append(self.config)
        return " ".join(config_parts)

    def recognize(self, image: np.ndarray, page_number: int) -> PageOCR:
        """Recognize one page.

        Args:
            image: Page pixel buffer (RGB or grayscale).
            page_number: 1-indexed page number.

        Returns:
            PageOCR with text, words and mean confidence.

        Raises:
            PageProcessingError: If recognition fails.
        """
        if len(image.shape) == 3:
            gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
        else:
            gray = image
        if self.binarize:
            gray = preprocess_for_ocr(gray)

        try:
            data = pytesseract.image_to_data(
                Image.fromarray(gray),
                lang=self.language,
                config=self._build_config(),
                output_type=pytesseract.Output.DICT,
            )
        except (pytesseract.TesseractError, RuntimeError, OSError) as e:
            raise PageProcessingError(
                f"Recognition failed: {e}", page_number=page_number
            ) from e

        return decode_word_table(data, page_number, self.min_confidence)

    def close(self) -> None:
        """Tesseract runs as a subprocess per call; nothing to release."""


class EngineHandle:
    """One OCR engine owned by the pool, used by one recognition at a time."""

    def __init__(self, engine: OCREngine, slot: int):
        self.engine = engine
        self.slot = slot
        self._in_flight = threading.Lock()

    def recognize(self, image: np.ndarray, page_number: int) -> PageOCR:
        if not self._in_flight.acquire(blocking=False):
            raise RuntimeError(f"OCR handle {self.slot} already has a recognition in flight")
        try:
            return self.engine.recognize(image, page_number)
        finally:
            self._in_flight.release()

    def close(self) -> None:
        self.engine.close()


class OCRWorkerPool:
    """Fixed-size set of OCR engine handles.

    Handles are created per extraction and always released, even when
    recognition fails.
    """

    def __init__(
        self,
        engine_factory: Optional[Callable[[], OCREngine]] = None,
        max_size: Optional[int] = None,
    ):
        """Initialize pool.

        Args:
            engine_factory: Callable creating one engine (default TesseractOCR).
            max_size: Upper bound on handles (default from settings).
        """
        self.engine_factory = engine_factory or partial(TesseractOCR)
        self.max_size = max_size or settings.effective_pool_size

    def acquire(self, n: int) -> list[EngineHandle]:
        """Create up to `n` engine handles, clamped to the pool size.

        Engines that fail to initialize are skipped.

        Raises:
            EngineInitError: If no engine could be initialized.
        """
        size = max(1, min(n, self.max_size))
        handles = []

        for slot in range(size):
            try:
                engine = self.engine_factory()
            except Exception as e:
                logger.warning("OCR engine %d/%d failed to initialize: %s", slot + 1, size, e)
                continue
            handles.append(EngineHandle(engine, slot=len(handles)))

        if not handles:
            raise EngineInitError(f"Failed to initialize any of {size} OCR engines")

        logger.info("Initialized %d/%d OCR engines", len(handles), size)
        return handles

    def release(self, handles: list[EngineHandle]) -> None:
        """Release every handle, continuing past individual failures."""
        for handle in handles:
            try:
                handle.close()
            except Exception as e:
                logger.warning("Error releasing OCR engine %d: %s", handle.slot, e)

    @contextmanager
    def session(self, n: int) -> Generator[list[EngineHandle], None, None]:
        """Acquire handles for the duration of a block."""
        handles = self.acquire(n)
        try:
            yield handles
        finally:
            self.release(handles)
