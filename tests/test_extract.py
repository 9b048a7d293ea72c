"""Tests for the extraction orchestrator."""

import threading
from unittest.mock import MagicMock

import pytest

from conftest import FakeEngine, make_word, write_text_pdf
from medrecon.errors import EngineInitError, ExtractionCancelled, PageProcessingError
from medrecon.models import PageOCR, PositionSource, ProgressStatus
from medrecon.pipeline.stage_extract import CancellationToken, ParallelExtraction, join_pages
from medrecon.pipeline.stage_ocr import OCRWorkerPool
from medrecon.pipeline.stage_render import PDFRasterizer


class BatchProbeEngine:
    """Engine that proves pages 1 and 2 run together and page 2 finishes first."""

    def __init__(self):
        self.both_started = threading.Barrier(2, timeout=5)
        self.page_two_done = threading.Event()
        self.completed = []
        self.started_after = {}
        self._lock = threading.Lock()

    def recognize(self, image, page_number):
        with self._lock:
            self.started_after[page_number] = list(self.completed)

        if page_number in (1, 2):
            self.both_started.wait()
        if page_number == 1:
            self.page_two_done.wait(timeout=5)

        with self._lock:
            self.completed.append(page_number)
        if page_number == 2:
            self.page_two_done.set()

        return PageOCR(
            page=page_number,
            text=f"content {page_number}",
            words=[make_word(f"w{page_number}", 5, 5, page=page_number)],
            confidence=90.0,
        )

    def close(self):
        pass


def extraction_with(engine_factory, max_size):
    return ParallelExtraction(
        rasterizer=PDFRasterizer(scale=0.5),
        pool=OCRWorkerPool(engine_factory=engine_factory, max_size=max_size),
    )


class TestJoinPages:
    def test_markers_before_each_page(self):
        assert join_pages(["a", "b"]) == "--- Page 1 ---\n\na\n\n--- Page 2 ---\n\nb"


class TestEmbeddedTextPath:
    """Tests for the embedded text fast path."""

    def test_skips_ocr_pool(self, text_pdf):
        pool = MagicMock()
        extraction = ParallelExtraction(rasterizer=PDFRasterizer(), pool=pool)

        result = extraction.extract(text_pdf)

        pool.session.assert_not_called()
        pool.acquire.assert_not_called()
        assert not result.is_ocr
        assert result.source == PositionSource.EMBEDDED_TEXT
        assert result.page_count == 2
        assert result.text.index("--- Page 1 ---") < result.text.index("--- Page 2 ---")
        assert "Jane Doe" in result.text
        assert result.positions

    def test_short_text_layer_uses_ocr(self, sample_pdf_path):
        pdf_path = sample_pdf_path / "short.pdf"
        write_text_pdf(pdf_path, ["Page 1 of 1"])
        extraction = extraction_with(FakeEngine, max_size=2)

        result = extraction.extract(pdf_path)

        assert result.is_ocr
        assert result.source == PositionSource.OCR
        assert "Text of page 1" in result.text


class TestOCRPath:
    """Tests for batched parallel OCR."""

    def test_batches_of_pool_size_in_page_order(self, scanned_pdf):
        engine = BatchProbeEngine()
        extraction = extraction_with(lambda: engine, max_size=2)

        result = extraction.extract(scanned_pdf)

        # Pages 1 and 2 ran together, page 2 finished first, page 3 came after both
        assert engine.completed == [2, 1, 3]
        assert sorted(engine.started_after[3]) == [1, 2]

        markers = [result.text.index(f"--- Page {n} ---") for n in (1, 2, 3)]
        assert markers == sorted(markers)
        assert result.text.index("content 1") < result.text.index("content 2")
        assert [p.page for p in result.positions] == [1, 2, 3]

    def test_page_failure_recorded(self, scanned_pdf):
        extraction = extraction_with(lambda: FakeEngine(failures={2}), max_size=2)

        result = extraction.extract(scanned_pdf)

        assert "[Error processing page 2: engine exploded on page 2]" in result.text
        assert [e.page for e in result.page_errors] == [2]
        assert result.is_partial
        assert {p.page for p in result.positions} == {1, 3}

    def test_all_pages_fail(self, scanned_pdf):
        extraction = extraction_with(lambda: FakeEngine(failures={1, 2, 3}), max_size=2)

        with pytest.raises(PageProcessingError):
            extraction.extract(scanned_pdf)

    def test_no_engines(self, scanned_pdf):
        factory = MagicMock(side_effect=EngineInitError("no tesseract"))
        extraction = extraction_with(factory, max_size=2)

        with pytest.raises(EngineInitError):
            extraction.extract(scanned_pdf)

    def test_progress_reported_per_batch(self, scanned_pdf):
        updates = []
        extraction = extraction_with(FakeEngine, max_size=2)

        extraction.extract(scanned_pdf, progress=updates.append)

        progress = [u.progress for u in updates]
        assert progress == sorted(progress)
        assert all(u.status == ProgressStatus.PROCESSING for u in updates)
        batch_messages = [u.message for u in updates if u.step == "OCR Processing"]
        assert "Completed 2/3 pages" in batch_messages
        assert "Completed 3/3 pages" in batch_messages


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancelled_before_start(self, scanned_pdf):
        engine = FakeEngine()
        extraction = extraction_with(lambda: engine, max_size=2)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(ExtractionCancelled):
            extraction.extract(scanned_pdf, cancel_token=token)

        assert engine.pages_seen == []
        assert engine.closed

    def test_cancelled_between_batches(self, scanned_pdf):
        token = CancellationToken()

        class CancellingEngine(FakeEngine):
            def recognize(self, image, page_number):
                token.cancel()
                return super().recognize(image, page_number)

        engine = CancellingEngine()
        extraction = extraction_with(lambda: engine, max_size=1)

        with pytest.raises(ExtractionCancelled):
            extraction.extract(scanned_pdf, cancel_token=token)

        assert engine.pages_seen == [1]
