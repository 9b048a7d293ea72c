"""Document-level IR models."""

from datetime import date, datetime
from pathlib import Path
from typing import Optional

from pydantic import Field

from .base import BaseIRModel, DocumentStatus
from .extraction import ExtractionResult
from .fields import FieldRecord


class Document(BaseIRModel):
    """
    Top-level document container.

    Owns exactly one extraction result and one field record. Lives in the
    processor's in-memory cache until deleted.
    """

    # Source file info
    name: str = Field(..., description="Display name")
    source_uri: str = Field(..., description="Path of the source PDF")
    ingested_on: date = Field(default_factory=date.today)
    owns_source: bool = Field(
        default=False, description="Source is a temp file created by the processor"
    )
    page_count: int = Field(default=0, ge=0)

    # Pipeline output
    extraction: Optional[ExtractionResult] = None
    field_record: FieldRecord = Field(default_factory=FieldRecord)

    # Optional embedding of the document text
    embedding: Optional[list[float]] = None
    embedding_status: str = Field(
        default="disabled", description="disabled, available or unavailable"
    )

    # Processing state
    status: DocumentStatus = Field(default=DocumentStatus.PENDING)
    error_message: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None

    @property
    def source_path(self) -> Path:
        """Return source URI as Path object."""
        return Path(self.source_uri)

    @property
    def text(self) -> str:
        return self.extraction.text if self.extraction else ""

    @property
    def is_ocr(self) -> bool:
        return bool(self.extraction and self.extraction.is_ocr)

    @property
    def has_highlighting(self) -> bool:
        return bool(self.extraction and self.extraction.positions)

    @property
    def is_complete(self) -> bool:
        return self.status == DocumentStatus.CACHED

    @property
    def is_failed(self) -> bool:
        return self.status == DocumentStatus.FAILED

    def transition(self, status: DocumentStatus) -> None:
        """Move to the next pipeline state."""
        self.status = status
        self.updated_at = datetime.utcnow()
        if status == DocumentStatus.EXTRACTING:
            self.processing_started_at = self.updated_at
        elif status == DocumentStatus.CACHED:
            self.processing_completed_at = self.updated_at

    def mark_failed(self, error: str) -> None:
        """Mark document as failed with error message."""
        self.status = DocumentStatus.FAILED
        self.error_message = error
        self.updated_at = datetime.utcnow()
