"""
Text normalization for PDF-extracted text.

Turns raw page text into (a) a bounded plain-text form with collapsed
whitespace and de-hyphenated line wraps, and (b) a markdown rendering that
keeps paragraph breaks, headings and list items.

Example:
    >>> normalize("1. INTRODUCTION\\nDeep learn-\\ning works.").text
    '1. INTRODUCTION\\n\\nDeep learning works.'

normalize() is pure: no I/O, no randomness, same input gives same output.
Unusable input (empty, whitespace, binary garbage) returns a NormalizedText
with unextractable=True rather than raising.
"""
from dataclasses import dataclass
from typing import List, Optional
import re
import unicodedata

from app.models import NormalizedText

DEFAULT_MAX_CHARS = 200_000
MIN_PRINTABLE_RATIO = 0.85

_HEADER_FOOTER_RE = re.compile(
    r"^(?:page \d+(?: of \d+)?|©.*|copyright.*|all rights reserved\.?|downloaded from .*)$", re.IGNORECASE
)
_DIGIT_LINE_RE = re.compile(r"^\s*\d+\s*$")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_HYPHEN_NL_RE = re.compile(r"([A-Za-z0-9])-\n[ \t]*([a-z])")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n[ \t]*\n")
_WHITESPACE_RE = re.compile(r"\s+")

_NUMBERED_HEADING_RE = re.compile(r"^(\d+(?:\.\d+)*\.?|[IVX]+\.)\s+(\S.*)$")
_LIST_ITEM_RE = re.compile(r"^(?:[•▪◦‣∙·\-\*–]|\(?\d{1,2}\)|\(?[a-z]\))\s+(\S.*)$")
_MD_INLINE_RE = re.compile(r"([\\`*_\[\]<>|])")
_MD_LEADING_RE = re.compile(r"^(?:([#>+=-])|(\d+)\.)")

SECTION_NAMES = {
    "abstract", "introduction", "background", "related work", "literature review",
    "method", "methods", "methodology", "materials and methods", "results",
    "results and discussion", "discussion", "conclusion", "conclusions",
    "limitations", "future work", "references", "bibliography",
    "acknowledgements", "acknowledgments", "appendix", "keywords",
}


@dataclass
class _Block:
    kind: str  # "heading" | "item" | "paragraph"
    text: str


def unextractable(reason: str) -> NormalizedText:
    """The explicit marker for input that holds no usable text."""
    return NormalizedText(text="", markdown="", unextractable=True, reason=reason)


def _looks_binary(raw: str) -> bool:
    if "\x00" in raw:
        return True
    sample = raw[:20000]
    printable = sum(1 for ch in sample if ch in "\n\r\t" or (ch.isprintable() and ch != "�"))
    return printable / len(sample) < MIN_PRINTABLE_RATIO


def _strip_page_artifacts(text: str) -> str:
    """Remove page numbers, running headers/footers and trailing blanks."""
    clean_lines = []
    for line in text.split("\n"):
        stripped = line.strip()
        if stripped and (_HEADER_FOOTER_RE.match(stripped) or _DIGIT_LINE_RE.match(stripped)):
            continue
        clean_lines.append(line.rstrip())
    return "\n".join(clean_lines)


def _join_hyphenated_lines(text: str) -> str:
    """Join words split across a line break, e.g. ``transfor-\\nmation``."""
    while True:
        new = _HYPHEN_NL_RE.sub(r"\1\2", text)
        if new == text:
            return new
        text = new


def _is_heading(line: str) -> bool:
    words = line.split()
    if not words or len(words) > 10 or len(line) > 90:
        return False
    bare = line.rstrip(":").strip()
    if bare.lower() in SECTION_NAMES:
        return True
    if line.endswith((".", ",", ";")):
        return False
    numbered = _NUMBERED_HEADING_RE.match(line)
    if numbered and numbered.group(2)[:1].isupper():
        return True
    letters = [ch for ch in line if ch.isalpha()]
    return len(letters) >= 3 and line.upper() == line and len(words) <= 8


def _split_blocks(paragraph: str) -> List[_Block]:
    blocks: List[_Block] = []
    buffer: List[str] = []

    def flush():
        if buffer:
            blocks.append(_Block("paragraph", _WHITESPACE_RE.sub(" ", " ".join(buffer)).strip()))
            buffer.clear()

    for raw_line in paragraph.split("\n"):
        line = _WHITESPACE_RE.sub(" ", raw_line).strip()
        if not line:
            continue
        if not buffer and _is_heading(line):
            blocks.append(_Block("heading", line.rstrip(":")))
            continue
        item = _LIST_ITEM_RE.match(line)
        if item:
            flush()
            blocks.append(_Block("item", item.group(1)))
            continue
        if blocks and blocks[-1].kind == "item" and not buffer:
            # Wrapped continuation of the previous list item
            blocks[-1].text = f"{blocks[-1].text} {line}"
            continue
        buffer.append(line)
    flush()
    return blocks


def _escape_markdown(text: str) -> str:
    escaped = _MD_INLINE_RE.sub(r"\\\1", text)
    # "1." would start an ordered list; escape its dot, or the leading marker
    return _MD_LEADING_RE.sub(lambda m: f"\\{m.group(1)}" if m.group(1) else f"{m.group(2)}\\.", escaped)


def _render_plain(blocks: List[_Block]) -> str:
    parts = []
    for block in blocks:
        parts.append(f"- {block.text}" if block.kind == "item" else block.text)
    return "\n\n".join(parts)


def _render_markdown(blocks: List[_Block]) -> str:
    out: List[str] = []
    for block in blocks:
        if block.kind == "heading":
            out.append(f"## {_escape_markdown(block.text)}")
        elif block.kind == "item":
            line = f"- {_escape_markdown(block.text)}"
            # Keep consecutive items in one list
            if out and out[-1].startswith("- "):
                out[-1] = f"{out[-1]}\n{line}"
                continue
            out.append(line)
        else:
            out.append(_escape_markdown(block.text))
    return "\n\n".join(out)


def _bound(blocks: List[_Block], max_chars: int) -> List[_Block]:
    """Keep whole blocks while the plain rendering fits in max_chars."""
    kept: List[_Block] = []
    used = 0
    for block in blocks:
        size = len(block.text) + (2 if block.kind == "item" else 0) + (2 if kept else 0)
        if used + size > max_chars:
            if not kept:
                room = max_chars - (2 if block.kind == "item" else 0)
                kept.append(_Block(block.kind, block.text[:room].rstrip()))
            break
        kept.append(block)
        used += size
    return kept


def normalize(raw: Optional[str], max_chars: int = DEFAULT_MAX_CHARS) -> NormalizedText:
    """
    Normalize raw PDF text.

    Args:
        raw: Decoded text from the upload (any length), or None
        max_chars: Ceiling for the plain-text output

    Returns:
        NormalizedText; `unextractable` is set for empty or non-text input.
    """
    if raw is None or not raw.strip():
        return unextractable("empty")
    if _looks_binary(raw):
        return unextractable("binary")

    text = unicodedata.normalize("NFKC", raw)
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\f", "\n\n")
    text = _CONTROL_RE.sub("", text)
    text = text.replace("\t", " ")
    text = _strip_page_artifacts(text)
    text = _join_hyphenated_lines(text)

    blocks: List[_Block] = []
    for paragraph in _PARAGRAPH_SPLIT_RE.split(text):
        blocks.extend(_split_blocks(paragraph))

    if not blocks:
        return unextractable("no text content")

    blocks = _bound(blocks, max_chars)
    return NormalizedText(text=_render_plain(blocks), markdown=_render_markdown(blocks))
