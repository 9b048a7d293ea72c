"""Document processor - runs documents through the pipeline and caches them.

extract → structure → reconcile-ready → cached, one document at a time.
"""

import logging
import tempfile
import threading
from pathlib import Path
from typing import Optional, Protocol, Union
from uuid import UUID

from medrecon.config import settings
from medrecon.errors import BusyError
from medrecon.models import (
    Document,
    DocumentStatus,
    ProgressStatus,
    ProgressUpdate,
    Reference,
    get_field,
)
from medrecon.pipeline.stage_extract import (
    CancellationToken,
    ParallelExtraction,
    ProgressCallback,
    report,
)
from medrecon.pipeline.stage_fields import StructuredFieldExtractor
from medrecon.pipeline.stage_reconcile import SourceReconciler

logger = logging.getLogger(__name__)

DocumentId = Union[UUID, str]

# Share of overall progress given to each stage
EXTRACTION_SPAN = (0.0, 0.6)
STRUCTURING_SPAN = (0.6, 0.9)


class Embedder(Protocol):
    def embed(self, text: str) -> Optional[list[float]]: ...


def scaled_progress(
    callback: Optional[ProgressCallback], start: float, end: float
) -> Optional[ProgressCallback]:
    """Map a stage's 0-1 progress into [start, end] of the overall run."""
    if callback is None:
        return None

    def _forward(update: ProgressUpdate) -> None:
        callback(
            update.model_copy(update={"progress": start + (end - start) * update.progress})
        )

    return _forward


class DocumentProcessor:
    """
    Runs documents through extraction, structuring and reconciliation.

    Only one document may be extracting or structuring at a time; a second
    request fails fast with BusyError. Processed documents stay in memory
    until deleted.
    """

    def __init__(
        self,
        extractor: Optional[ParallelExtraction] = None,
        field_extractor: Optional[StructuredFieldExtractor] = None,
        reconciler: Optional[SourceReconciler] = None,
        embedder: Optional[Embedder] = None,
    ):
        self.extractor = extractor or ParallelExtraction()
        self.field_extractor = field_extractor or StructuredFieldExtractor()
        self.reconciler = reconciler or SourceReconciler()
        if embedder is None and settings.enable_embeddings:
            embedder = self.field_extractor.client
        self.embedder = embedder

        self._busy = threading.Lock()
        self._cache_lock = threading.Lock()
        self._documents: dict[UUID, Document] = {}
        self._active_token: Optional[CancellationToken] = None

    @property
    def is_busy(self) -> bool:
        return self._busy.locked()

    def process(
        self,
        source: Union[Path, str],
        name: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Document:
        """Run a PDF through the full pipeline.

        Args:
            source: Path to the PDF.
            name: Display name (default: file name).
            progress: Optional progress callback.
            cancel_token: Optional cancellation token.

        Returns:
            The cached Document.

        Raises:
            BusyError: If another document is being processed.
            MedReconError: If extraction or structuring failed; the document
                stays cached with status failed.
        """
        return self._process(Path(source), name, progress, cancel_token, owns_source=False)

    def process_bytes(
        self,
        data: bytes,
        name: str,
        progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Document:
        """Run in-memory PDF bytes through the pipeline.

        The bytes are written to a temp file owned by the document and
        removed when the document is deleted.
        """
        with tempfile.NamedTemporaryFile(prefix="medrecon-", suffix=".pdf", delete=False) as tmp:
            tmp.write(data)
            path = Path(tmp.name)

        try:
            return self._process(path, name, progress, cancel_token, owns_source=True)
        except BusyError:
            path.unlink(missing_ok=True)
            raise

    def _process(
        self,
        path: Path,
        name: Optional[str],
        progress: Optional[ProgressCallback],
        cancel_token: Optional[CancellationToken],
        owns_source: bool,
    ) -> Document:
        if not self._busy.acquire(blocking=False):
            raise BusyError("Another document is already being processed")

        try:
            document = Document(
                name=name or path.name,
                source_uri=str(path),
                owns_source=owns_source,
            )
            with self._cache_lock:
                self._documents[document.id] = document

            self._active_token = cancel_token or CancellationToken()
            self._run(document, progress, self._active_token)
            return document
        finally:
            self._active_token = None
            self._busy.release()

    def _run(
        self,
        document: Document,
        progress: Optional[ProgressCallback],
        cancel_token: CancellationToken,
    ) -> None:
        logger.info("Processing %s (%s)", document.name, document.id)

        # Extraction
        document.transition(DocumentStatus.EXTRACTING)
        report(progress, ProgressStatus.PROCESSING, 0.0, "Extracting", "Extracting document text")
        try:
            extraction = self.extractor.extract(
                document.source_path,
                progress=scaled_progress(progress, *EXTRACTION_SPAN),
                cancel_token=cancel_token,
            )
        except Exception as e:
            self._fail(document, progress, EXTRACTION_SPAN[0], f"Extraction failed: {e}")
            raise

        document.extraction = extraction
        document.page_count = extraction.page_count
        if extraction.page_errors:
            report(
                progress,
                ProgressStatus.WARNING,
                EXTRACTION_SPAN[1],
                "Extraction Incomplete",
                f"{len(extraction.page_errors)} of {extraction.page_count} pages failed",
            )

        # Structuring
        document.transition(DocumentStatus.STRUCTURING)
        report(
            progress,
            ProgressStatus.PROCESSING,
            STRUCTURING_SPAN[0],
            "Structuring",
            "Extracting medical fields",
        )
        try:
            record = self.field_extractor.extract_fields(
                extraction.text,
                progress=scaled_progress(progress, *STRUCTURING_SPAN),
            )
        except Exception as e:
            self._fail(document, progress, STRUCTURING_SPAN[0], f"Structuring failed: {e}")
            raise

        document.field_record = record
        if record.is_degraded:
            report(
                progress,
                ProgressStatus.WARNING,
                STRUCTURING_SPAN[1],
                "Structuring Degraded",
                f"Field extraction {record.extraction_method.value}: {record.error}",
            )
        else:
            report(
                progress,
                ProgressStatus.PROCESSING,
                STRUCTURING_SPAN[1],
                "Structuring Complete",
                f"Extracted {len(record.filled_keys)} fields",
            )

        if self.embedder is not None and extraction.text:
            document.embedding = self.embedder.embed(extraction.text)
            document.embedding_status = "available" if document.embedding else "unavailable"

        document.transition(DocumentStatus.RECONCILING_READY)
        report(
            progress,
            ProgressStatus.PROCESSING,
            0.95,
            "Ready",
            "Source highlighting available"
            if document.has_highlighting
            else "No word positions; source highlighting unavailable",
        )

        document.transition(DocumentStatus.CACHED)
        report(progress, ProgressStatus.COMPLETE, 1.0, "Complete", "Document processed")
        logger.info(
            "Processed %s: %d pages, %s, %d fields",
            document.name,
            document.page_count,
            record.extraction_method.value,
            len(record.filled_keys),
        )

    @staticmethod
    def _fail(
        document: Document,
        progress: Optional[ProgressCallback],
        at: float,
        message: str,
    ) -> None:
        logger.error("%s: %s", document.name, message)
        document.mark_failed(message)
        report(progress, ProgressStatus.ERROR, at, "Processing Failed", message)

    def cancel(self) -> bool:
        """Cancel the document currently being extracted.

        Returns:
            True if a document was in flight.
        """
        token = self._active_token
        if token is None:
            return False
        token.cancel()
        return True

    def get(self, document_id: DocumentId) -> Optional[Document]:
        with self._cache_lock:
            return self._documents.get(_as_uuid(document_id))

    def delete(self, document_id: DocumentId) -> bool:
        """Drop a document and remove its temp file, if it owns one.

        Returns:
            True if the document existed.
        """
        with self._cache_lock:
            document = self._documents.pop(_as_uuid(document_id), None)
        if document is None:
            return False

        if document.owns_source:
            try:
                document.source_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove %s: %s", document.source_uri, e)
        logger.info("Deleted %s (%s)", document.name, document.id)
        return True

    def field_reference(self, document_id: DocumentId, field_key: str) -> Optional[Reference]:
        """Locate a field's value in the document's pages.

        Returns:
            Reference with zero or more matches, or None if the document is
            unknown or the field is empty.

        Raises:
            KeyError: If `field_key` is not a schema field.
        """
        definition = get_field(field_key)
        document = self.get(document_id)
        if document is None:
            return None

        value = document.field_record.get(field_key)
        if not value:
            return None

        positions = document.extraction.positions if document.extraction else []
        return Reference(
            field_key=field_key,
            label=definition.label,
            value=value,
            matches=self.reconciler.find_positions(positions, value),
        )

    def list(self) -> list[Document]:
        """All cached documents, oldest first."""
        with self._cache_lock:
            return sorted(self._documents.values(), key=lambda d: d.created_at)


def _as_uuid(document_id: DocumentId) -> Optional[UUID]:
    if isinstance(document_id, UUID):
        return document_id
    try:
        return UUID(str(document_id))
    except ValueError:
        return None
