"""
Unit Tests — Text Normalizer / Chunker
═══════════════════════════════════════
Tests for smartdoc/processing/chunking.py

Coverage:
  ✅ clean_text collapses whitespace, drops control characters, trims
  ✅ clean_text is idempotent
  ✅ chunk_text edge cases: empty, short, whitespace-only
  ✅ invalid sizes raise ValidationError; overlap >= size is clamped
  ✅ every chunk fits max_size; boundary snapping past the half-way mark
  ✅ no duplicated tail chunk once the window reaches the end
  ✅ OCR noise removal, text statistics, keywords
"""

from __future__ import annotations

import pytest

from smartdoc.core.errors import ValidationError
from smartdoc.processing.chunking import (
    chunk_text,
    clean_text,
    extract_keywords,
    extract_sentences,
    remove_ocr_noise,
    text_stats,
)


def _has_control_chars(text: str) -> bool:
    return any(ord(ch) < 32 or ord(ch) == 127 for ch in text)


# ─────────────────────────────────────────────────────────────────────────────
# clean_text
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestCleanText:

    def test_collapses_whitespace_and_drops_controls(self):
        raw = "  Hello\t\tworld\x00!\n\n\n\nBye  "
        assert clean_text(raw) == "Hello world! Bye"

    def test_empty_input_returns_empty_string(self):
        assert clean_text("") == ""
        assert clean_text("   \n\t ") == ""

    @pytest.mark.parametrize(
        "raw",
        [
            "plain text",
            "a\x00 \x00b",
            "line one\r\nline two\n\n\n\nline three",
            "\x07bell\x1f and \x7fdelete ",
            "tabs\t\tand   spaces",
        ],
    )
    def test_idempotent(self, raw):
        once = clean_text(raw)
        assert clean_text(once) == once

    @pytest.mark.parametrize("raw", ["x\x01y\x02z", "a\tb\nc\rd\x1be", "\x00\x00"])
    def test_output_has_no_control_characters(self, raw):
        assert not _has_control_chars(clean_text(raw))

    def test_deleting_control_char_between_spaces_leaves_single_space(self):
        assert clean_text("a \x00 b") == "a b"


# ─────────────────────────────────────────────────────────────────────────────
# chunk_text
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestChunkText:

    def test_empty_text_returns_no_chunks(self):
        assert chunk_text("", 100, 10) == []

    def test_short_text_is_single_stripped_chunk(self):
        assert chunk_text("  short text  ", 100, 10) == ["short text"]

    def test_whitespace_only_short_text_returns_no_chunks(self):
        assert chunk_text("     ", 100, 10) == []

    def test_non_positive_size_raises(self):
        with pytest.raises(ValidationError):
            chunk_text("abc", 0, 0)

    def test_negative_overlap_raises(self):
        with pytest.raises(ValidationError):
            chunk_text("abc", 10, -1)

    def test_overlap_not_smaller_than_size_is_clamped(self):
        chunks = chunk_text("a" * 50, max_size=10, overlap=10)
        # clamped overlap 5 → windows start at 0, 5, …, 40
        assert len(chunks) == 9
        assert all(len(c) <= 10 for c in chunks)

    def test_every_chunk_fits_max_size(self):
        text = " ".join(f"Sentence number {i} talks about invoices." for i in range(200))
        chunks = chunk_text(text, max_size=300, overlap=50)
        assert len(chunks) > 1
        assert all(0 < len(c) <= 300 for c in chunks)

    def test_snaps_to_boundary_past_half_window(self):
        text = "A" * 60 + "." + "B" * 100
        chunks = chunk_text(text, max_size=100, overlap=10)
        assert chunks[0] == "A" * 60 + "."

    def test_does_not_snap_to_early_boundary(self):
        text = "A" * 30 + "." + "B" * 200
        chunks = chunk_text(text, max_size=100, overlap=10)
        assert len(chunks[0]) == 100

    def test_zero_overlap_reconstructs_text(self):
        text = "x" * 250
        chunks = chunk_text(text, max_size=100, overlap=0)
        assert [len(c) for c in chunks] == [100, 100, 50]
        assert "".join(chunks) == text

    def test_no_duplicate_tail_chunk(self):
        text = "a" * 150
        chunks = chunk_text(text, max_size=100, overlap=20)
        assert len(chunks) == 2
        assert chunks[-1] == "a" * 70

    def test_consecutive_chunks_overlap(self):
        text = "".join(chr(ord("a") + i % 26) for i in range(300))
        chunks = chunk_text(text, max_size=100, overlap=20)
        assert chunks[0][-20:] == chunks[1][:20]


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestTextHelpers:

    def test_remove_ocr_noise(self):
        assert remove_ocr_noise("Name ____ || Total.......5") == "Name   Total...5"

    def test_remove_ocr_noise_keeps_single_characters(self):
        assert remove_ocr_noise("a|b_c.d") == "a|b_c.d"

    def test_text_stats(self):
        stats = text_stats("One two three. Four five six seven.")
        assert stats.words == 7
        assert stats.sentences == 2
        assert stats.paragraphs == 1
        assert stats.characters == len("One two three. Four five six seven.")
        assert stats.to_dict()["words"] == 7

    def test_extract_sentences_drops_short_fragments(self):
        assert extract_sentences("Hi. This is a longer sentence.") == ["This is a longer sentence"]

    def test_extract_keywords_orders_by_frequency(self):
        text = "invoice invoice invoice payment payment the and total"
        assert extract_keywords(text, top_n=2) == ["invoice", "payment"]
