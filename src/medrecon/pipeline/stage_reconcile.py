"""Reconciliation Stage - Map field values back to page locations.

Searches the document's word positions for a field value with a cascade of
strategies, stopping at the first that finds anything:

1. phrase: literal containment in a sliding window of words in reading order
2. sequence: two or more significant words of the value clustered together
3. significant-word: single significant-word hits with enough context around them

Every hit becomes a MatchBlock whose box envelops the contributing words.
"""

import logging
import math
import string
from typing import Optional

from medrecon.config import settings
from medrecon.models import BoundingBox, MatchBlock, MatchStrategy, WordPosition

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    """
    the and or but in on at to for of with by a an is are was were be been
    have has had will would could should may might can must this that these
    those he she it they we you not no yes all any some most many much more
    """.split()
)

LINE_TOLERANCE = 15.0

PHRASE_WINDOW = 20
CONTEXT_RADIUS = (500.0, 100.0)

SEQUENCE_RADIUS = (800.0, 100.0)
MIN_SEQUENCE_WORDS = 2

WORD_CONTEXT_RADIUS = (200.0, 50.0)
WORD_CONTEXT_EXPANSION = 1.5
MIN_CONTEXT_WORDS = 5
PROXIMITY_THRESHOLD = 100.0

# Duplicate suppression
MIN_HORIZONTAL_OVERLAP = 0.6
MIN_VERTICAL_OVERLAP = 0.4
CLOSE_DISTANCE = 30.0


def normalize_token(text: str) -> str:
    return text.lower().strip(string.punctuation)


def significant_words(value: str) -> list[str]:
    """Distinct words of a value worth searching for, in order."""
    words = []
    for token in value.split():
        token = normalize_token(token)
        if len(token) > 2 and token not in STOP_WORDS and token not in words:
            words.append(token)
    return words


def reading_order(words: list[WordPosition]) -> list[WordPosition]:
    """Sort one page's words top-to-bottom, then left-to-right within a line."""
    lines: list[list[WordPosition]] = []
    for word in sorted(words, key=lambda w: (w.y, w.x)):
        if lines and word.y - lines[-1][0].y < LINE_TOLERANCE:
            lines[-1].append(word)
        else:
            lines.append([word])
    return [word for line in lines for word in sorted(line, key=lambda w: w.x)]


def near(word: WordPosition, anchor: WordPosition, radius: tuple[float, float]) -> bool:
    return abs(word.x - anchor.x) < radius[0] and abs(word.y - anchor.y) < radius[1]


def mean_confidence(words: list[WordPosition]) -> float:
    return sum(w.confidence for w in words) / len(words)


def _overlap(start1: float, end1: float, start2: float, end2: float) -> float:
    return max(0.0, min(end1, end2) - max(start1, start2))


def is_duplicate(block: MatchBlock, kept: MatchBlock) -> bool:
    """True if two blocks highlight substantially the same region."""
    if block.page != kept.page:
        return False

    a, b = kept.bbox, block.bbox
    horizontal = _overlap(a.x, a.x2, b.x, b.x2)
    vertical = _overlap(a.y, a.y2, b.y, b.y2)
    if (
        horizontal > min(a.width, b.width) * MIN_HORIZONTAL_OVERLAP
        and vertical > min(a.height, b.height) * MIN_VERTICAL_OVERLAP
    ):
        return True

    (ax, ay), (bx, by) = a.center, b.center
    return math.hypot(ax - bx, ay - by) < CLOSE_DISTANCE


def _unique(words: list[WordPosition]) -> list[WordPosition]:
    seen = set()
    unique = []
    for word in words:
        if word.index not in seen:
            seen.add(word.index)
            unique.append(word)
    return unique


def build_block(
    page: int,
    text: str,
    words: list[WordPosition],
    strategy: MatchStrategy,
) -> MatchBlock:
    """Build a block from its contributing words, already in reading order."""
    context = " ".join(w.text for w in words)
    return MatchBlock(
        page=page,
        bbox=BoundingBox.envelope(w.bbox for w in words),
        text=text,
        context=context,
        strategy=strategy,
        confidence=mean_confidence(words),
        word_count=len(words),
        highlight_start=context.lower().find(text.lower()),
    )


class SourceReconciler:
    """Finds where a field value appears in a document's word positions."""

    def __init__(
        self,
        max_matches: Optional[int] = None,
        padding: Optional[float] = None,
    ):
        """Initialize reconciler.

        Args:
            max_matches: Most blocks returned per field.
            padding: Pixels added around each returned box.
        """
        self.max_matches = (
            max_matches if max_matches is not None else settings.max_reference_matches
        )
        self.padding = padding if padding is not None else settings.highlight_padding

    def find_positions(
        self,
        positions: list[WordPosition],
        field_value: str,
    ) -> list[MatchBlock]:
        """Locate a field value in the document.

        Args:
            positions: All word positions of the document.
            field_value: Extracted field value.

        Returns:
            At most `max_matches` blocks, best first. Empty if the value is
            blank or nothing matched.
        """
        value = " ".join((field_value or "").split())
        if not value or not positions:
            return []

        pages: dict[int, list[WordPosition]] = {}
        for word in positions:
            pages.setdefault(word.page, []).append(word)
        pages = {page: reading_order(words) for page, words in sorted(pages.items())}

        strategies = (
            (MatchStrategy.PHRASE, self._phrase_matches),
            (MatchStrategy.SEQUENCE, self._sequence_matches),
            (MatchStrategy.SIGNIFICANT_WORD, self._significant_word_matches),
        )
        for strategy, find in strategies:
            blocks = []
            for page, words in pages.items():
                blocks.extend(find(page, words, value))
            if blocks:
                results = self._deduplicate(blocks)[: self.max_matches]
                logger.debug(
                    "%d %s match(es) for %r", len(results), strategy.value, value[:50]
                )
                return [
                    block.model_copy(update={"bbox": block.bbox.expand(self.padding)})
                    for block in results
                ]

        logger.debug("No source location for %r", value[:50])
        return []

    def _phrase_matches(
        self, page: int, words: list[WordPosition], value: str
    ) -> list[MatchBlock]:
        needle = value.lower()
        blocks = []
        hit_starts = set()

        for start in range(max(1, len(words) - PHRASE_WINDOW + 1)):
            window = words[start : start + PHRASE_WINDOW]

            # Character offset of each word in the joined window text
            offsets = []
            cursor = 0
            for word in window:
                offsets.append(cursor)
                cursor += len(word.text) + 1
            window_text = " ".join(w.text for w in window).lower()

            found = window_text.find(needle)
            while found != -1:
                end = found + len(needle)
                hit_indexes = [
                    i
                    for i, (w, offset) in enumerate(zip(window, offsets))
                    if offset < end and offset + len(w.text) > found
                ]
                first = start + hit_indexes[0]
                if first not in hit_starts:
                    hit_starts.add(first)
                    hit = [window[i] for i in hit_indexes]
                    context = _unique(
                        reading_order([w for w in words if near(w, hit[0], CONTEXT_RADIUS)] + hit)
                    )
                    blocks.append(build_block(page, value, context, MatchStrategy.PHRASE))
                found = window_text.find(needle, found + 1)

        return blocks

    def _sequence_matches(
        self, page: int, words: list[WordPosition], value: str
    ) -> list[MatchBlock]:
        wanted = significant_words(value)
        if len(wanted) < MIN_SEQUENCE_WORDS:
            return []

        blocks = []
        for anchor in words:
            if normalize_token(anchor.text) not in wanted:
                continue

            cluster = [
                w
                for w in words
                if normalize_token(w.text) in wanted and near(w, anchor, SEQUENCE_RADIUS)
            ]
            if len({normalize_token(w.text) for w in cluster}) < MIN_SEQUENCE_WORDS:
                continue

            context = _unique(
                reading_order([w for w in words if near(w, anchor, CONTEXT_RADIUS)] + cluster)
            )
            matched_text = " ".join(w.text for w in cluster)
            blocks.append(build_block(page, matched_text, context, MatchStrategy.SEQUENCE))

        return blocks

    def _significant_word_matches(
        self, page: int, words: list[WordPosition], value: str
    ) -> list[MatchBlock]:
        wanted = significant_words(value)
        if not wanted:
            return []

        # (word, exact) for every word containing a significant word
        hits = []
        for word in words:
            token = normalize_token(word.text)
            if any(token == w for w in wanted):
                hits.append((word, True))
            elif any(w in token for w in wanted):
                hits.append((word, False))

        blocks = []
        for group in self._group_by_proximity(hits):
            anchor = next((w for w, exact in group if exact), group[0][0])

            context = [w for w in words if near(w, anchor, WORD_CONTEXT_RADIUS)]
            if len(context) < MIN_CONTEXT_WORDS:
                expanded = (
                    WORD_CONTEXT_RADIUS[0] * WORD_CONTEXT_EXPANSION,
                    WORD_CONTEXT_RADIUS[1] * WORD_CONTEXT_EXPANSION,
                )
                context = [w for w in words if near(w, anchor, expanded)]
            if len(context) < MIN_CONTEXT_WORDS:
                continue

            context = _unique(reading_order(context))
            blocks.append(
                build_block(page, anchor.text, context, MatchStrategy.SIGNIFICANT_WORD)
            )

        return blocks

    @staticmethod
    def _group_by_proximity(
        hits: list[tuple[WordPosition, bool]],
    ) -> list[list[tuple[WordPosition, bool]]]:
        groups = []
        grouped = set()
        for i, (word, _) in enumerate(hits):
            if i in grouped:
                continue
            grouped.add(i)
            group = [hits[i]]
            for j, (other, _) in enumerate(hits):
                if j in grouped:
                    continue
                if math.hypot(word.x - other.x, word.y - other.y) <= PROXIMITY_THRESHOLD:
                    group.append(hits[j])
                    grouped.add(j)
            groups.append(group)
        return groups

    @staticmethod
    def _deduplicate(blocks: list[MatchBlock]) -> list[MatchBlock]:
        """Order best-first and drop blocks covering an already kept region."""
        ordered = sorted(
            blocks, key=lambda b: (b.strategy.rank, b.page, b.bbox.y, b.bbox.x)
        )
        kept: list[MatchBlock] = []
        for block in ordered:
            if not any(is_duplicate(block, existing) for existing in kept):
                kept.append(block)
        return kept
