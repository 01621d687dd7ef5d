"""
Passage splitting and budget measurement.

Normalized document text is split into paragraph-packed passages that the
context assembler ranks and selects as excerpts. Budgets are measured in
characters by default, or in tokens (tiktoken cl100k_base) when a model's
context limit is expressed that way.
"""
from dataclasses import dataclass
from typing import List
import re
import logging

logger = logging.getLogger(__name__)

_SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s+")


@dataclass(frozen=True)
class Passage:
    index: int
    char_start: int
    text: str


class BudgetMeter:
    """Measures and clips text in the configured budget unit."""

    def __init__(self, unit: str = "chars", encoding_name: str = "cl100k_base"):
        if unit not in ("chars", "tokens"):
            raise ValueError(f"Unknown budget unit: {unit}")
        self.unit = unit
        self.encoding_name = encoding_name
        self._encoder = None

    @property
    def encoder(self):
        # tiktoken loads its BPE files on first use, so only pay for it in token mode
        if self._encoder is None:
            import tiktoken
            self._encoder = tiktoken.get_encoding(self.encoding_name)
        return self._encoder

    def measure(self, text: str) -> int:
        if not text:
            return 0
        if self.unit == "chars":
            return len(text)
        return len(self.encoder.encode(text))

    def clip(self, text: str, limit: int) -> str:
        """Longest prefix of `text` whose measure is <= limit."""
        if limit <= 0:
            return ""
        if self.unit == "chars":
            return text[:limit]
        tokens = self.encoder.encode(text)
        if len(tokens) <= limit:
            return text
        clipped = self.encoder.decode(tokens[:limit])
        # Decoding a token prefix can re-tokenize longer at the boundary
        while clipped and self.measure(clipped) > limit:
            clipped = clipped[:-1]
        return clipped


def _split_long(paragraph: str, max_chars: int) -> List[str]:
    """Split an oversized paragraph on sentence boundaries, then hard-split."""
    pieces: List[str] = []
    current = ""
    for sentence in _SENTENCE_END_RE.split(paragraph):
        while len(sentence) > max_chars:
            if current:
                pieces.append(current)
                current = ""
            pieces.append(sentence[:max_chars])
            sentence = sentence[max_chars:].lstrip()
        candidate = f"{current} {sentence}".strip() if current else sentence
        if len(candidate) > max_chars:
            pieces.append(current)
            current = sentence
        else:
            current = candidate
    if current:
        pieces.append(current)
    return [p for p in pieces if p]


def split_passages(text: str, max_chars: int = 1200) -> List[Passage]:
    """
    Pack consecutive paragraphs into passages of at most max_chars.

    Args:
        text: Normalized text (paragraphs separated by blank lines)
        max_chars: Upper bound on each passage's length

    Returns:
        Passages in document order with their character offsets.
    """
    if not text or not text.strip():
        return []

    units = []  # (char_start, text)
    cursor = 0
    for paragraph in text.split("\n\n"):
        start = text.find(paragraph, cursor)
        cursor = start + len(paragraph)
        if not paragraph.strip():
            continue
        if len(paragraph) <= max_chars:
            units.append((start, paragraph))
            continue
        offset = start
        for piece in _split_long(paragraph, max_chars):
            piece_start = text.find(piece, offset)
            units.append((piece_start, piece))
            offset = piece_start + len(piece)

    passages: List[Passage] = []
    current_start, current_parts = None, []
    for start, unit in units:
        joined = "\n\n".join(current_parts + [unit])
        if current_parts and len(joined) > max_chars:
            passages.append(Passage(len(passages), current_start, "\n\n".join(current_parts)))
            current_start, current_parts = start, [unit]
        else:
            if current_start is None:
                current_start = start
            current_parts.append(unit)
    if current_parts:
        passages.append(Passage(len(passages), current_start, "\n\n".join(current_parts)))

    logger.debug(f"Split {len(text)} chars into {len(passages)} passages")
    return passages
