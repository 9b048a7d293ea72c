"""Language model boundary: HTTP client and prompt template."""

from .client import LLMClient, decode_completion, decode_embedding
from .prompts import (
    FIELD_DELIMITER,
    NOT_FOUND,
    STOP_SEQUENCE,
    SYSTEM_PROMPT,
    build_extraction_prompt,
)

__all__ = [
    "LLMClient",
    "decode_completion",
    "decode_embedding",
    "FIELD_DELIMITER",
    "NOT_FOUND",
    "STOP_SEQUENCE",
    "SYSTEM_PROMPT",
    "build_extraction_prompt",
]
