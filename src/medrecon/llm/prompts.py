"""Instruction template for the numbered-line field contract."""

from medrecon.models import FIELD_COUNT, FIELD_DEFINITIONS

NOT_FOUND = "NOT FOUND"
FIELD_DELIMITER = "|"

# Index one past the last field; generation stops before the model invents it
STOP_SEQUENCE = f"{FIELD_COUNT + 1}{FIELD_DELIMITER}"

SYSTEM_PROMPT = (
    "You are a medical document assistant. You read clinical documents and "
    "copy facts out of them exactly as written. You never invent information."
)


def _field_lines() -> str:
    return "\n".join(
        f"{d.number}{FIELD_DELIMITER}{d.description}" for d in FIELD_DEFINITIONS
    )


def build_extraction_prompt(text: str) -> str:
    """Build the extraction instructions for one chunk of document text."""
    return f"""Extract information from this medical document.

For each numbered item below, write ONE line in the form:
NUMBER{FIELD_DELIMITER}content

Rules:
- Use the number, then the "{FIELD_DELIMITER}" character, then the content.
- Copy values from the document; do not summarize or invent them.
- If an item is not in the document, write NUMBER{FIELD_DELIMITER}{NOT_FOUND}.
- Answer all {FIELD_COUNT} items in order. Do not stop early.
- Do not add headings, explanations or any other text.

Items:
{_field_lines()}

DOCUMENT:
{text}

ANSWER:"""
