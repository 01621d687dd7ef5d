"""
Tests for text normalization of PDF-extracted text.
"""
import unittest

from app.ingestion.normalizer import normalize
from tests.fakes import SAMPLE_PAPER


class TestUnextractableInput(unittest.TestCase):
    """Unusable input yields the marker instead of raising."""

    def test_none_and_blank_input(self):
        """Test None and blank input return the unextractable marker."""
        for raw in (None, "", "   \n\t  \n"):
            result = normalize(raw)
            assert result.unextractable
            assert result.text == ""
            assert result.markdown == ""

    def test_nul_bytes_are_binary(self):
        """Test text containing NUL bytes is treated as binary."""
        result = normalize("%PDF-1.7\x00\x00stream")
        assert result.unextractable
        assert result.reason == "binary"

    def test_mostly_unprintable_is_binary(self):
        """Test mostly unprintable text is treated as binary."""
        result = normalize("�" * 60 + "abc")
        assert result.unextractable
        assert result.reason == "binary"


class TestNormalize(unittest.TestCase):
    """Cleaning, structure detection and rendering."""

    def test_heading_and_hyphenated_wrap(self):
        """Test headings are detected and hyphenated line wraps are joined."""
        result = normalize("1. INTRODUCTION\nDeep learn-\ning works.")

        assert not result.unextractable
        assert result.text == "1. INTRODUCTION\n\nDeep learning works."
        assert result.markdown == "## 1\\. INTRODUCTION\n\nDeep learning works."

    def test_numbered_paragraph_does_not_become_a_list(self):
        """Test a numbered sentence is not turned into a list item."""
        result = normalize("2019. was a good year for sleep research, we think.")
        assert result.markdown.startswith("2019\\. was")

    def test_whitespace_collapsed_within_paragraph(self):
        """Test whitespace is collapsed within a paragraph."""
        result = normalize("Some   text\nwrapped    here")
        assert result.text == "Some text wrapped here"

    def test_page_artifacts_removed(self):
        """Test page numbers and copyright lines are removed."""
        result = normalize("Intro text here.\nPage 3 of 10\n12\nmore text.")
        assert result.text == "Intro text here. more text."

    def test_control_characters_removed(self):
        """Test control characters are removed."""
        result = normalize("Clean text with a bell\x07 character inside.")
        assert result.text == "Clean text with a bell character inside."

    def test_markdown_headings_and_lists(self):
        """Test markdown renders headings and list items."""
        result = normalize("Abstract\nWe study things.\n\n- first point\n- second point")

        assert result.markdown == "## Abstract\n\nWe study things.\n\n- first point\n- second point"
        assert result.text == "Abstract\n\nWe study things.\n\n- first point\n\n- second point"

    def test_markdown_control_characters_escaped(self):
        """Test leading markdown control characters are escaped."""
        result = normalize("# not a heading really\n\nvalue a*b here")

        assert "\\# not a heading really" in result.markdown
        assert "a\\*b" in result.markdown
        # Plain text keeps the original characters
        assert "a*b" in result.text

    def test_sample_paper(self):
        """Test normalizing a realistic paper excerpt."""
        result = normalize(SAMPLE_PAPER)

        assert "improves recall" in result.text
        assert "Page 2 of 9" not in result.text
        assert "## Abstract" in result.markdown
        assert "- Effect held across age groups" in result.markdown

    def test_deterministic(self):
        """Test identical input produces identical output."""
        assert normalize(SAMPLE_PAPER) == normalize(SAMPLE_PAPER)


class TestBound(unittest.TestCase):
    """Output never exceeds max_chars."""

    def test_cut_on_paragraph_boundary(self):
        """Test bounded output is cut on a paragraph boundary."""
        raw = "\n\n".join(f"Paragraph {i} has some words." for i in range(10))

        result = normalize(raw, max_chars=60)

        assert result.text == "Paragraph 0 has some words.\n\nParagraph 1 has some words."
        assert len(result.text) <= 60

    def test_single_oversized_paragraph_is_cut(self):
        """Test a single oversized paragraph is cut to the bound."""
        raw = " ".join(["word"] * 100)

        result = normalize(raw, max_chars=50)

        assert 0 < len(result.text) <= 50
        assert result.text.startswith("word word")

    def test_oversized_list_item_stays_within_bound(self):
        """Test an oversized list item stays within the bound."""
        raw = "- " + " ".join(["item"] * 50)

        result = normalize(raw, max_chars=30)

        assert len(result.text) <= 30
        assert result.text.startswith("- item")


if __name__ == "__main__":
    unittest.main()
