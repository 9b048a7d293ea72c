"""Pipeline stages for medical record reconciliation.

Stages:
1. stage_render - PDF rasterization at 2.0x and embedded text layer
2. stage_ocr - Word-level OCR on a bounded pool of Tesseract engines
3. stage_extract - Text-layer fast path, else batched parallel OCR
4. stage_fields - Fixed clinical field schema via the language model
5. stage_reconcile - Field values mapped back to page locations

Each stage is independent and can be run separately or
orchestrated through the DocumentProcessor.
"""

from .stage_extract import CancellationToken, ParallelExtraction
from .stage_fields import (
    StructuredFieldExtractor,
    merge_chunk_results,
    parse_delimited_response,
    split_into_chunks,
)
from .stage_ocr import OCRWorkerPool, TesseractOCR, decode_word_table
from .stage_reconcile import SourceReconciler
from .stage_render import PDFRasterizer

__all__ = [
    # Render
    "PDFRasterizer",
    # OCR
    "OCRWorkerPool",
    "TesseractOCR",
    "decode_word_table",
    # Extraction
    "CancellationToken",
    "ParallelExtraction",
    # Fields
    "StructuredFieldExtractor",
    "merge_chunk_results",
    "parse_delimited_response",
    "split_into_chunks",
    # Reconciliation
    "SourceReconciler",
]
