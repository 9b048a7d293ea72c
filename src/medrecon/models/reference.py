"""Reference IR models linking field values back to page locations."""

from enum import Enum

from pydantic import BaseModel, Field

from .base import BoundingBox


class MatchStrategy(str, Enum):
    """Matching strategy that produced a block, best first."""

    PHRASE = "phrase"
    SEQUENCE = "sequence"
    SIGNIFICANT_WORD = "significant-word"

    @property
    def rank(self) -> int:
        return _STRATEGY_RANK[self]


_STRATEGY_RANK = {
    MatchStrategy.PHRASE: 0,
    MatchStrategy.SEQUENCE: 1,
    MatchStrategy.SIGNIFICANT_WORD: 2,
}


class MatchBlock(BaseModel):
    """A highlighted region that most plausibly produced a field value."""

    page: int = Field(..., ge=1)
    bbox: BoundingBox
    text: str = Field(..., description="Matched text")
    context: str = Field(..., description="Text of the words inside the block")
    strategy: MatchStrategy
    confidence: float = Field(..., ge=0.0, le=100.0)
    word_count: int = Field(..., ge=1)
    highlight_start: int = Field(
        default=-1, description="Offset of the matched text in context, -1 if not contiguous"
    )

    @property
    def highlight_length(self) -> int:
        return len(self.text)


class Reference(BaseModel):
    """
    Source locations for one extracted field.

    Computed on demand from the document's word positions; never cached.
    """

    field_key: str
    label: str
    value: str
    matches: list[MatchBlock] = Field(default_factory=list)

    @property
    def has_source_highlighting(self) -> bool:
        return bool(self.matches)

    @property
    def explanation(self) -> str:
        if self.matches:
            return f'Found "{self.value}" in {len(self.matches)} location(s).'
        return "Extracted from the document text; no matching location was found."
