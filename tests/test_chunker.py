"""
Tests for passage splitting and budget measurement.
"""
import unittest

from app.ingestion.chunker import BudgetMeter, split_passages
from tests.fakes import WordPieceEncoder


class TestSplitPassages(unittest.TestCase):

    def test_empty_text(self):
        """Test that empty text yields no passages."""
        assert split_passages("") == []
        assert split_passages("   ") == []

    def test_paragraphs_are_packed_up_to_limit(self):
        """Test paragraphs are packed into passages up to the size limit."""
        paragraphs = [f"Paragraph {i} " + "x" * 80 for i in range(10)]
        text = "\n\n".join(paragraphs)

        passages = split_passages(text, max_chars=200)

        assert all(len(p.text) <= 200 for p in passages)
        # Two ~92 char paragraphs fit per passage, three do not
        assert len(passages) == 5
        assert [p.index for p in passages] == list(range(5))

    def test_offsets_point_into_text(self):
        """Test passage offsets point back into the source text."""
        text = "First paragraph here.\n\nSecond paragraph here.\n\nThird one."

        for passage in split_passages(text, max_chars=30):
            first_unit = passage.text.split("\n\n")[0]
            assert text[passage.char_start:].startswith(first_unit)

    def test_long_paragraph_split_on_sentences(self):
        """Test an oversized paragraph is split on sentence boundaries."""
        sentence = "This sentence has exactly some words in it. "
        text = (sentence * 20).strip()

        passages = split_passages(text, max_chars=100)

        assert len(passages) > 1
        assert all(len(p.text) <= 100 for p in passages)
        assert all(p.text.endswith(".") for p in passages)

    def test_unbroken_text_is_hard_split(self):
        """Test text without sentence breaks is hard-split at the limit."""
        passages = split_passages("a" * 250, max_chars=100)
        assert [len(p.text) for p in passages] == [100, 100, 50]


class TestBudgetMeter(unittest.TestCase):

    def test_chars_measure_and_clip(self):
        """Test measuring and clipping in characters."""
        meter = BudgetMeter("chars")

        assert meter.measure("") == 0
        assert meter.measure("hello") == 5
        assert meter.clip("hello world", 5) == "hello"
        assert meter.clip("hello", 0) == ""

    def test_tokens_measure_and_clip(self):
        """Test measuring and clipping in tokens never exceeds the limit."""
        meter = BudgetMeter("tokens")
        meter._encoder = WordPieceEncoder()
        text = "Slow-wave sleep improved recall, especially for word pairs learned late."
        total = meter.measure(text)

        assert meter.measure("") == 0
        assert meter.measure("rest rest") == 3
        assert meter.measure("restful") == 2
        assert meter.clip(text, total) == text
        for limit in range(0, total + 1):
            clipped = meter.clip(text, limit)
            assert meter.measure(clipped) <= limit
            assert text.startswith(clipped)

    def test_unknown_unit(self):
        """Test that an unknown budget unit is rejected."""
        with self.assertRaises(ValueError):
            BudgetMeter("words")


if __name__ == "__main__":
    unittest.main()
