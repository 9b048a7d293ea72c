"""Tests for OCR stage and the engine pool."""

from unittest.mock import MagicMock, patch

import numpy as np
import pytesseract
import pytest

from conftest import FakeEngine
from medrecon.errors import EngineInitError, OCRDecodeError, PageProcessingError
from medrecon.models import ConfidenceLevel, PositionSource
from medrecon.pipeline.stage_ocr import (
    OCRWorkerPool,
    TesseractOCR,
    confidence_to_level,
    decode_word_table,
)


def word_table(rows):
    """Build a Tesseract DICT-style table from (level, block, par, line, word, conf, text)."""
    table = {
        c: []
        for c in (
            "level", "block_num", "par_num", "line_num", "word_num",
            "left", "top", "width", "height", "conf", "text",
        )
    }
    for i, (level, block, par, line, word, conf, text) in enumerate(rows):
        table["level"].append(level)
        table["block_num"].append(block)
        table["par_num"].append(par)
        table["line_num"].append(line)
        table["word_num"].append(word)
        table["left"].append(10 * i)
        table["top"].append(20 * line)
        table["width"].append(8 * len(text))
        table["height"].append(18)
        table["conf"].append(conf)
        table["text"].append(text)
    return table


class TestConfidenceToLevel:
    def test_levels(self):
        assert confidence_to_level(95) == ConfidenceLevel.HIGH
        assert confidence_to_level(75) == ConfidenceLevel.MEDIUM
        assert confidence_to_level(55) == ConfidenceLevel.LOW
        assert confidence_to_level(10) == ConfidenceLevel.VERY_LOW

    def test_low_scores_are_percentages(self):
        assert confidence_to_level(1.0) == ConfidenceLevel.VERY_LOW
        assert confidence_to_level(0.5) == ConfidenceLevel.VERY_LOW


class TestDecodeWordTable:
    """Tests for normalizing Tesseract output."""

    def test_lines_and_paragraphs(self):
        table = word_table(
            [
                (1, 1, 0, 0, 0, -1, ""),
                (5, 1, 1, 1, 1, 96, "Patient:"),
                (5, 1, 1, 1, 2, 91, "Jane"),
                (5, 1, 1, 2, 1, 88, "Doe"),
                (5, 1, 2, 1, 1, 90, "Medicare"),
            ]
        )

        page = decode_word_table(table, page_number=2, min_confidence=30)

        assert page.text == "Patient: Jane\nDoe\n\nMedicare"
        assert [w.text for w in page.words] == ["Patient:", "Jane", "Doe", "Medicare"]
        assert all(w.page == 2 and w.source == PositionSource.OCR for w in page.words)
        assert page.confidence == pytest.approx((96 + 91 + 88 + 90) / 4)

    def test_confidence_floor_filters_positions_only(self):
        table = word_table(
            [
                (5, 1, 1, 1, 1, 95, "Lisinopril"),
                (5, 1, 1, 1, 2, 12, "~~"),
            ]
        )

        page = decode_word_table(table, page_number=1, min_confidence=30)

        assert page.text == "Lisinopril ~~"
        assert [w.text for w in page.words] == ["Lisinopril"]

    def test_skips_empty_and_negative(self):
        table = word_table(
            [
                (5, 1, 1, 1, 1, 95, "   "),
                (5, 1, 1, 1, 2, -1, "ghost"),
                (5, 1, 1, 1, 3, 80, "real"),
            ]
        )

        page = decode_word_table(table, page_number=1, min_confidence=30)

        assert page.text == "real"
        assert len(page.words) == 1

    def test_unique_indexes(self):
        table = word_table([(5, 1, 1, 1, n, 90, f"w{n}") for n in range(1, 5)])
        page = decode_word_table(table, page_number=1, min_confidence=30)
        assert len({w.index for w in page.words}) == 4

    def test_empty_page(self):
        page = decode_word_table(word_table([]), page_number=1, min_confidence=30)
        assert page.text == ""
        assert page.words == []
        assert page.confidence == 0.0

    def test_rejects_unknown_shape(self):
        with pytest.raises(OCRDecodeError):
            decode_word_table([("word", 90)], page_number=1, min_confidence=30)

    def test_rejects_missing_columns(self):
        table = word_table([(5, 1, 1, 1, 1, 90, "x")])
        del table["conf"]
        with pytest.raises(OCRDecodeError) as exc_info:
            decode_word_table(table, page_number=4, min_confidence=30)
        assert exc_info.value.page_number == 4

    def test_rejects_ragged_columns(self):
        table = word_table([(5, 1, 1, 1, 1, 90, "x")])
        table["text"].append("extra")
        with pytest.raises(OCRDecodeError):
            decode_word_table(table, page_number=1, min_confidence=30)


class TestTesseractOCR:
    """Tests for Tesseract engine wrapper."""

    @patch("medrecon.pipeline.stage_ocr.pytesseract.get_tesseract_version")
    def test_missing_binary(self, mock_version):
        mock_version.side_effect = pytesseract.TesseractNotFoundError()
        with pytest.raises(EngineInitError):
            TesseractOCR()

    @patch("medrecon.pipeline.stage_ocr.pytesseract.image_to_data")
    @patch("medrecon.pipeline.stage_ocr.pytesseract.get_tesseract_version")
    def test_recognize(self, mock_version, mock_image_to_data):
        mock_version.return_value = "5.3.0"
        mock_image_to_data.return_value = word_table([(5, 1, 1, 1, 1, 93, "Furosemide")])

        engine = TesseractOCR(language="eng", psm=6)
        page = engine.recognize(np.full((40, 80, 3), 255, dtype=np.uint8), page_number=3)

        assert page.page == 3
        assert page.text == "Furosemide"
        config = mock_image_to_data.call_args.kwargs["config"]
        assert "--psm 6" in config

    @patch("medrecon.pipeline.stage_ocr.pytesseract.image_to_data")
    @patch("medrecon.pipeline.stage_ocr.pytesseract.get_tesseract_version")
    def test_recognize_failure(self, mock_version, mock_image_to_data):
        mock_version.return_value = "5.3.0"
        mock_image_to_data.side_effect = pytesseract.TesseractError(1, "bad image")

        engine = TesseractOCR()
        with pytest.raises(PageProcessingError) as exc_info:
            engine.recognize(np.zeros((10, 10), dtype=np.uint8), page_number=2)
        assert exc_info.value.page_number == 2


class TestOCRWorkerPool:
    """Tests for the bounded engine pool."""

    def test_clamped_to_page_count(self):
        pool = OCRWorkerPool(engine_factory=FakeEngine, max_size=4)
        assert len(pool.acquire(2)) == 2

    def test_clamped_to_max_size(self):
        pool = OCRWorkerPool(engine_factory=FakeEngine, max_size=2)
        assert len(pool.acquire(10)) == 2

    def test_at_least_one(self):
        pool = OCRWorkerPool(engine_factory=FakeEngine, max_size=2)
        assert len(pool.acquire(0)) == 1

    def test_partial_init_failure(self):
        factory = MagicMock(side_effect=[EngineInitError("no lang data"), FakeEngine(), FakeEngine()])
        pool = OCRWorkerPool(engine_factory=factory, max_size=3)

        handles = pool.acquire(3)

        assert len(handles) == 2
        assert [h.slot for h in handles] == [0, 1]

    def test_zero_handles(self):
        factory = MagicMock(side_effect=EngineInitError("no tesseract"))
        pool = OCRWorkerPool(engine_factory=factory, max_size=2)

        with pytest.raises(EngineInitError):
            pool.acquire(2)

    def test_release_continues_past_failures(self):
        pool = OCRWorkerPool(engine_factory=FakeEngine, max_size=3)
        handles = pool.acquire(3)
        handles[0].engine.close = MagicMock(side_effect=RuntimeError("stuck"))

        pool.release(handles)

        assert handles[1].engine.closed
        assert handles[2].engine.closed

    def test_session_releases_on_error(self):
        pool = OCRWorkerPool(engine_factory=FakeEngine, max_size=2)

        with pytest.raises(ValueError):
            with pool.session(2) as handles:
                raise ValueError("caller failed")

        assert all(h.engine.closed for h in handles)

    def test_handle_rejects_concurrent_use(self):
        pool = OCRWorkerPool(engine_factory=FakeEngine, max_size=1)
        handle = pool.acquire(1)[0]
        handle._in_flight.acquire()

        try:
            with pytest.raises(RuntimeError):
                handle.recognize(np.zeros((2, 2), dtype=np.uint8), page_number=1)
        finally:
            handle._in_flight.release()
