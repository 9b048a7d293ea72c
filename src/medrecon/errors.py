"""Error taxonomy for the extraction and reconciliation pipeline."""

from typing import Optional


class MedReconError(Exception):
    """Base class for all pipeline errors."""


class EngineInitError(MedReconError):
    """No OCR engine handle could be initialized."""


class PageProcessingError(MedReconError):
    """A page could not be rasterized or recognized."""

    def __init__(self, message: str, page_number: Optional[int] = None):
        super().__init__(message)
        self.page_number = page_number


class OCRDecodeError(PageProcessingError):
    """The OCR engine returned a word table in an unknown shape."""


class ExtractionCancelled(MedReconError):
    """Extraction was cancelled between batches."""


class ModelCallError(MedReconError):
    """The LLM endpoint was unreachable or returned a non-2xx status."""


class ModelUnavailable(ModelCallError):
    """The LLM endpoint is temporarily unavailable (retryable)."""


class ResponseDecodeError(ModelCallError):
    """The LLM endpoint answered with a payload shape we do not know."""


class FormatError(MedReconError):
    """The model output did not follow the delimiter grammar."""


class BusyError(MedReconError):
    """Another document is already being extracted or structured."""
