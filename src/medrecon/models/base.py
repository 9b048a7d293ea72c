"""Base models and common types for the reconciliation pipeline."""

from datetime import datetime
from enum import Enum
from typing import Iterable
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class DocumentStatus(str, Enum):
    """Lifecycle of a document inside the processor."""

    PENDING = "pending"
    EXTRACTING = "extracting"
    STRUCTURING = "structuring"
    RECONCILING_READY = "reconciling_ready"
    CACHED = "cached"
    FAILED = "failed"


class ConfidenceLevel(str, Enum):
    """Confidence classification for extracted text."""

    HIGH = "high"  # >0.9 confidence
    MEDIUM = "medium"  # 0.7-0.9 confidence
    LOW = "low"  # 0.5-0.7 confidence
    VERY_LOW = "very_low"  # <0.5 confidence


class PositionSource(str, Enum):
    """Where a word position came from."""

    EMBEDDED_TEXT = "embedded-text"
    OCR = "ocr"


class ProgressStatus(str, Enum):
    """Status reported to progress callbacks."""

    PROCESSING = "processing"
    WARNING = "warning"
    ERROR = "error"
    COMPLETE = "complete"


class BoundingBox(BaseModel):
    """Bounding box in page pixel space at the rasterization scale."""

    x: float = Field(..., description="Left edge X coordinate")
    y: float = Field(..., description="Top edge Y coordinate")
    width: float = Field(..., ge=0.0, description="Box width")
    height: float = Field(..., ge=0.0, description="Box height")

    @property
    def x2(self) -> float:
        """Right edge X coordinate."""
        return self.x + self.width

    @property
    def y2(self) -> float:
        """Bottom edge Y coordinate."""
        return self.y + self.height

    @property
    def center(self) -> tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)

    def expand(self, padding: float) -> "BoundingBox":
        """Grow the box by `padding` pixels on every side."""
        return BoundingBox(
            x=self.x - padding,
            y=self.y - padding,
            width=self.width + padding * 2,
            height=self.height + padding * 2,
        )

    @classmethod
    def envelope(cls, boxes: Iterable["BoundingBox"]) -> "BoundingBox":
        """Smallest box containing every box in `boxes`."""
        boxes = list(boxes)
        if not boxes:
            raise ValueError("Cannot build an envelope of zero boxes")
        min_x = min(b.x for b in boxes)
        min_y = min(b.y for b in boxes)
        max_x = max(b.x2 for b in boxes)
        max_y = max(b.y2 for b in boxes)
        return cls(x=min_x, y=min_y, width=max_x - min_x, height=max_y - min_y)


class ProgressUpdate(BaseModel):
    """One progress notification sent to a caller-supplied callback."""

    status: ProgressStatus
    progress: float = Field(..., ge=0.0, le=1.0)
    step: str = ""
    message: str = ""


class BaseIRModel(BaseModel):
    """Base class for all IR models with common fields."""

    id: UUID = Field(default_factory=uuid4)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        from_attributes = True
