"""
Text Normalizer & Chunker
══════════════════════════

Two pure transformations sit between extraction and embedding:

  clean_text()   raw extractor output  →  single-spaced, control-free text
  chunk_text()   cleaned text          →  overlapping windows for embedding

Chunking strategy
─────────────────
  Fixed-size character windows with a sentence-boundary snap:

    window = text[offset : offset + max_size]

    if the window stops before the end of the text:
        boundary = last "." or "\\n" inside the window
        if boundary > max_size * 0.5:      ← only snap when it keeps > half
            window = window[: boundary + 1]

    emit window.strip()
    offset += len(window) - overlap          ← never less than offset + 1

  Every chunk is at most max_size characters, the first chunk starts at the
  beginning of the text and the last one carries its tail. Consecutive
  chunks share up to ``overlap`` characters so that a sentence cut by a
  window edge is still embedded whole in one of the two neighbours.

Helpers used for document metadata: text_stats(), extract_keywords().
OCR output additionally goes through remove_ocr_noise() before cleaning.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import asdict, dataclass

from smartdoc.core.errors import ValidationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

DEFAULT_CHUNK_SIZE    = 1000
DEFAULT_CHUNK_OVERLAP = 200
BOUNDARY_MIN_RATIO    = 0.5     # snap to a boundary only past half the window

_CONTROL_CHARS   = re.compile(r"[\x00-\x1F\x7F]")
_WHITESPACE_RUN  = re.compile(r"\s+")
_NEWLINE_RUN     = re.compile(r"\n{3,}")
_SENTENCE_SPLIT  = re.compile(r"[.!?]+")
_PARAGRAPH_SPLIT = re.compile(r"\n{2,}")

_OCR_PIPE_RUN       = re.compile(r"\|{2,}")
_OCR_UNDERSCORE_RUN = re.compile(r"_{3,}")
_OCR_DOT_LEADER     = re.compile(r"\.{4,}")

_STOP_WORDS = frozenset(
    """
    the is at which on a an and or but in with to for of as by that this it
    from are was were been be have has had do does did will would could should
    """.split()
)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def clean_text(raw: str) -> str:
    """
    Collapse whitespace runs to one space, squeeze 3+ newlines to two,
    drop control characters and trim.

    Control characters that are also whitespace (tab, CR, LF, FS…) are
    turned into spaces before collapsing; the rest are deleted first. That
    ordering keeps the function idempotent: deleting a control character
    can never leave two adjacent spaces behind.
    """
    if not raw:
        return ""
    text = _CONTROL_CHARS.sub(lambda m: " " if m.group().isspace() else "", raw)
    text = _WHITESPACE_RUN.sub(" ", text)
    text = _NEWLINE_RUN.sub("\n\n", text)
    return text.strip()


def remove_ocr_noise(text: str) -> str:
    """Strip table rules, fill-in blanks and dot leaders that OCR emits as text."""
    if not text:
        return ""
    text = _OCR_PIPE_RUN.sub("", text)
    text = _OCR_UNDERSCORE_RUN.sub("", text)
    return _OCR_DOT_LEADER.sub("...", text)


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------

def chunk_text(
    text:     str,
    max_size: int = DEFAULT_CHUNK_SIZE,
    overlap:  int = DEFAULT_CHUNK_OVERLAP,
) -> list[str]:
    """
    Split ``text`` into overlapping windows of at most ``max_size`` chars.

    Raises:
        ValidationError: max_size <= 0 or overlap < 0.

    An overlap >= max_size would stall the window; it is clamped to
    max_size // 2.

    Text no longer than ``max_size`` comes back as a single trimmed chunk,
    except when trimming leaves nothing: whitespace-only input yields
    ``[]``, never ``[""]``, so no empty chunk is ever embedded.
    """
    if max_size <= 0:
        raise ValidationError(f"max_size must be positive, got {max_size}")
    if overlap < 0:
        raise ValidationError(f"overlap must be non-negative, got {overlap}")
    if overlap >= max_size:
        logger.warning(
            "Chunk overlap clamped | max_size=%d overlap=%d -> %d",
            max_size, overlap, max_size // 2,
        )
        overlap = max_size // 2

    if not text:
        return []
    if len(text) <= max_size:
        stripped = text.strip()
        return [stripped] if stripped else []

    chunks: list[str] = []
    length = len(text)
    offset = 0

    while offset < length:
        end = min(offset + max_size, length)
        window = text[offset:end]

        if end < length:
            boundary = max(window.rfind("."), window.rfind("\n"))
            if boundary > max_size * BOUNDARY_MIN_RATIO:
                window = window[: boundary + 1]

        piece = window.strip()
        if piece:
            chunks.append(piece)

        if offset + len(window) >= length:
            break
        offset = max(offset + len(window) - overlap, offset + 1)

    logger.debug(
        "Text chunked | chars=%d chunks=%d max_size=%d overlap=%d",
        length, len(chunks), max_size, overlap,
    )
    return chunks


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

@dataclass
class TextStats:
    characters:          int
    words:               int
    sentences:           int
    paragraphs:          int
    average_word_length: float

    def to_dict(self) -> dict:
        return asdict(self)


def extract_sentences(text: str) -> list[str]:
    """Sentence-ish fragments longer than 10 characters."""
    if not text:
        return []
    fragments = (s.strip() for s in _SENTENCE_SPLIT.split(text))
    return [s for s in fragments if len(s) > 10]


def text_stats(text: str) -> TextStats:
    words = text.split()
    paragraphs = [p for p in _PARAGRAPH_SPLIT.split(text) if p.strip()]
    avg = sum(len(w) for w in words) / len(words) if words else 0.0
    return TextStats(
        characters=len(text),
        words=len(words),
        sentences=len(extract_sentences(text)),
        paragraphs=len(paragraphs),
        average_word_length=round(avg, 1),
    )


def extract_keywords(text: str, top_n: int = 10) -> list[str]:
    """Most frequent non-stop-words longer than three characters."""
    tokens = re.sub(r"[^\w\s]", " ", text.lower()).split()
    counts = Counter(t for t in tokens if len(t) > 3 and t not in _STOP_WORDS)
    return [word for word, _ in counts.most_common(top_n)]
