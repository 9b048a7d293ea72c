"""Field Extraction Stage - Structured clinical fields from document text.

Asks the language model for the fixed field schema as numbered,
pipe-delimited lines (``N|content``), parses them with one regex sweep and
merges results across chunks of long documents.
"""

import logging
import re
from typing import Optional

from medrecon.config import settings
from medrecon.errors import FormatError, ModelCallError
from medrecon.llm import (
    STOP_SEQUENCE,
    SYSTEM_PROMPT,
    LLMClient,
    build_extraction_prompt,
)
from medrecon.models import (
    FIELD_DEFINITIONS,
    ExtractionMethod,
    FieldRecord,
    ProgressStatus,
    get_field_by_number,
)
from medrecon.pipeline.stage_extract import ProgressCallback, report

logger = logging.getLogger(__name__)

# One numbered line and everything up to the next numbered line
FIELD_LINE_PATTERN = re.compile(
    r"^\s*(\d{1,2})\s*\|\s*(.*?)(?=^\s*\d{1,2}\s*\||\Z)",
    re.MULTILINE | re.DOTALL,
)

# Content the model writes when it has nothing to report
NON_INFORMATIVE_PATTERNS: tuple[re.Pattern, ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^not[ _]found\.?$",
        r"^(none|n/a|unknown|not specified|not mentioned|not available|not documented)\.?$",
        r"^(no|null|undefined|empty)$",
        r"^\[.*\]$",
        r"^extract:",
        r"^(here|content|info|information)$",
    )
)

MULTI_VALUE_SEPARATOR = "; "

_WHITESPACE = re.compile(r"\s+")
_EXTRACT_PREFIX = re.compile(r"^extract:\s*", re.IGNORECASE)
_OUTER_BRACKETS = re.compile(r"^\[|\]$")


def clean_content(content: str) -> str:
    """Normalize raw field content from the model."""
    content = content.strip()
    content = _EXTRACT_PREFIX.sub("", content)
    content = _OUTER_BRACKETS.sub("", content)
    content = _WHITESPACE.sub(" ", content)
    return content.strip(" :-")


def is_informative(content: str) -> bool:
    """True if content carries a value rather than a placeholder."""
    content = content.strip()
    if not content:
        return False
    return not any(p.search(content) for p in NON_INFORMATIVE_PATTERNS)


def parse_delimited_response(response: str) -> tuple[dict[str, str], int]:
    """Parse numbered field lines out of a model response.

    Indices outside the schema are ignored. Content that is empty or a
    placeholder leaves the field empty; the first informative occurrence of
    an index wins.

    Returns:
        Tuple of (field key -> value, number of distinct in-range indices seen).

    Raises:
        FormatError: If the response contains no in-range numbered line.
    """
    values: dict[str, str] = {}
    seen: set[int] = set()

    for match in FIELD_LINE_PATTERN.finditer(response or ""):
        number = int(match.group(1))
        definition = get_field_by_number(number)
        if definition is None:
            continue
        seen.add(number)

        if definition.key in values:
            continue
        raw = match.group(2)
        if not is_informative(raw.strip()):
            continue
        content = clean_content(raw)
        if is_informative(content):
            values[definition.key] = content

    if not seen:
        raise FormatError("Model output did not follow the numbered-line format")

    return values, len(seen)


def split_into_chunks(text: str, chunk_size: int, overlap: int) -> list[str]:
    """Split text into overlapping chunks, preferring paragraph boundaries.

    Raises:
        ValueError: If chunk_size is not positive or overlap is not below half of it.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0 or overlap >= chunk_size / 2:
        raise ValueError("chunk_overlap must be non-negative and less than half of chunk_size")

    if len(text) <= chunk_size:
        return [text]

    chunks = []
    start = 0
    while start < len(text):
        end = min(start + chunk_size, len(text))
        if end < len(text):
            boundary = text.rfind("\n\n", start + chunk_size // 2, end)
            if boundary != -1:
                end = boundary
        chunks.append(text[start:end])
        if end >= len(text):
            break
        start = end - overlap

    return chunks


def _merge_items(values: list[str]) -> str:
    """Deduplicated union of list items, dropping items contained in others."""
    items: list[str] = []
    for value in values:
        for item in value.split(MULTI_VALUE_SEPARATOR):
            item = item.strip()
            if item and item.lower() not in (i.lower() for i in items):
                items.append(item)

    kept = [
        item
        for item in items
        if not any(
            other != item and item.lower() in other.lower() for other in items
        )
    ]
    return MULTI_VALUE_SEPARATOR.join(kept)


def merge_chunk_results(results: list[dict[str, str]]) -> dict[str, str]:
    """Merge per-chunk field values into one value per field.

    Single-value fields keep the longest value seen; multi-value fields take
    the union of their items.
    """
    merged = {}
    for definition in FIELD_DEFINITIONS:
        values = [r[definition.key] for r in results if r.get(definition.key)]
        if not values:
            merged[definition.key] = ""
        elif definition.multi_value:
            merged[definition.key] = _merge_items(values)
        else:
            merged[definition.key] = max(values, key=len)
    return merged


class StructuredFieldExtractor:
    """Extracts the fixed clinical field schema with a language model."""

    def __init__(
        self,
        client: Optional[LLMClient] = None,
        chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
    ):
        """Initialize extractor.

        Args:
            client: Model client (default LLMClient from settings).
            chunk_size: Characters per chunk.
            overlap: Characters shared by consecutive chunks.
        """
        self.client = client or LLMClient()
        self.chunk_size = chunk_size if chunk_size is not None else settings.chunk_size
        self.overlap = overlap if overlap is not None else settings.chunk_overlap

        if self.chunk_size <= 0 or not 0 <= self.overlap < self.chunk_size / 2:
            raise ValueError("chunk_overlap must be non-negative and less than half of chunk_size")

    def extract_fields(
        self,
        text: str,
        progress: Optional[ProgressCallback] = None,
    ) -> FieldRecord:
        """Extract all schema fields from document text.

        Model call failures never raise: a failed first call yields a
        ``failed`` record, a failed later call a ``partial`` one.
        """
        if not text or not text.strip():
            logger.info("No text to extract fields from")
            return FieldRecord(extraction_method=ExtractionMethod.NO_TEXT)

        chunks = split_into_chunks(text, self.chunk_size, self.overlap)
        logger.info("Extracting fields from %d chunk(s)", len(chunks))

        results: list[dict[str, str]] = []
        matched = 0
        failed_chunks = 0
        errors = []

        for i, chunk in enumerate(chunks):
            report(
                progress,
                ProgressStatus.PROCESSING,
                i / len(chunks),
                "Structuring",
                f"Analyzing chunk {i + 1}/{len(chunks)}",
            )

            try:
                response = self.client.complete(
                    build_extraction_prompt(chunk),
                    system=SYSTEM_PROMPT,
                    temperature=settings.llm_temperature,
                    stop=[STOP_SEQUENCE],
                )
            except ModelCallError as e:
                if i == 0:
                    logger.error("Model call failed on first chunk: %s", e)
                    return FieldRecord(
                        extraction_method=ExtractionMethod.FAILED,
                        error=str(e),
                        chunk_count=len(chunks),
                    )
                logger.warning("Model call failed on chunk %d/%d: %s", i + 1, len(chunks), e)
                failed_chunks += 1
                errors.append(f"chunk {i + 1}: {e}")
                continue

            try:
                values, chunk_matched = parse_delimited_response(response)
            except FormatError as e:
                logger.warning("Chunk %d/%d: %s", i + 1, len(chunks), e)
                continue

            matched += chunk_matched
            results.append(values)

        if matched == 0:
            return FieldRecord(
                extraction_method=ExtractionMethod.FORMAT_ERROR,
                error="Model output did not follow the numbered-line format",
                chunk_count=len(chunks),
            )

        method = ExtractionMethod.PARTIAL if failed_chunks else ExtractionMethod.STRUCTURED
        record = FieldRecord(
            **merge_chunk_results(results),
            extraction_method=method,
            error="; ".join(errors) or None,
            chunk_count=len(chunks),
            matched_field_count=len({k for r in results for k in r}),
        )
        logger.info(
            "Field extraction %s: %d/%d fields filled",
            method.value,
            len(record.filled_keys),
            len(FIELD_DEFINITIONS),
        )
        return record
