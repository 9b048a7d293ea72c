"""IR (Intermediate Representation) models for the reconciliation pipeline.

This module defines the Pydantic models that represent data flowing through
the pipeline stages.

Key Design Principles:
1. Fixed schema: every FieldRecord carries all fields, empty or not
2. Provenance preservation: every word keeps its page and pixel box
3. Immutable extraction: word positions are produced once, read many times

Model Hierarchy:
- Document → ExtractionResult → WordPosition
- Document → FieldRecord
- Reference → MatchBlock (computed on demand)
"""

from .base import (
    BaseIRModel,
    BoundingBox,
    ConfidenceLevel,
    DocumentStatus,
    PositionSource,
    ProgressStatus,
    ProgressUpdate,
)
from .document import Document
from .extraction import (
    ExtractionResult,
    PageError,
    PageOCR,
    WordPosition,
    page_marker,
)
from .fields import (
    FIELD_COUNT,
    FIELD_DEFINITIONS,
    FIELD_KEYS,
    ExtractionMethod,
    FieldDefinition,
    FieldRecord,
    get_field,
    get_field_by_number,
)
from .reference import (
    MatchBlock,
    MatchStrategy,
    Reference,
)

__all__ = [
    # Base types
    "BaseIRModel",
    "BoundingBox",
    "ConfidenceLevel",
    "DocumentStatus",
    "PositionSource",
    "ProgressStatus",
    "ProgressUpdate",
    # Document
    "Document",
    # Extraction
    "ExtractionResult",
    "PageError",
    "PageOCR",
    "WordPosition",
    "page_marker",
    # Fields
    "FIELD_COUNT",
    "FIELD_DEFINITIONS",
    "FIELD_KEYS",
    "ExtractionMethod",
    "FieldDefinition",
    "FieldRecord",
    "get_field",
    "get_field_by_number",
    # Reference
    "MatchBlock",
    "MatchStrategy",
    "Reference",
]
