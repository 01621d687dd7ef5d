"""
Tests for the tolerant structured-response parser and the extraction engine.
"""
import json
import unittest

from pydantic import BaseModel

from app.errors import CapabilityError, InputError
from app.ingestion.extraction import (
    BibliographicFields, ExtractionEngine, NarrativeFields, StructuredParseError, parse_structured,
)
from app.models import ModelConfigSnapshot
from tests.fakes import (
    BIBLIOGRAPHIC_REPLY, NARRATIVE_REPLY, FakeCompletionClient, SAMPLE_PAPER, extraction_responder,
)

MODEL = ModelConfigSnapshot(config_id="cfg-1", name="Test", provider="ollama", model_name="fake-model")


class TestParseStructured(unittest.TestCase):
    """Responses in the shapes models actually produce."""

    def test_fenced_json(self):
        """Test parsing JSON inside a markdown code fence."""
        text = '```json\n{"title": "Deep Sleep", "year": 2020, "doi": "10.1/x", "authors": ["A. One"]}\n```'

        fields = parse_structured(text, BibliographicFields)

        assert fields.title == "Deep Sleep"
        assert fields.year == 2020
        assert fields.doi == "10.1/x"
        assert fields.authors == ["A. One"]

    def test_json_surrounded_by_prose(self):
        """Test parsing a JSON object surrounded by prose."""
        fields = parse_structured('Sure! Here it is: {"title": "X"} Hope this helps.', BibliographicFields)
        assert fields.title == "X"

    def test_wrapped_json_object(self):
        """Test parsing fields nested under a wrapper key."""
        fields = parse_structured('{"paper": {"title": "X", "year": "circa 2019"}}', BibliographicFields)

        assert fields.title == "X"
        assert fields.year == 2019

    def test_tagged_lines(self):
        """Test parsing "Field: value" lines."""
        text = "Title: X\nAuthors: A. One; B. Two\nYear: published 2019\nDOI: https://doi.org/10.1/abc"

        fields = parse_structured(text, BibliographicFields)

        assert fields.title == "X"
        assert fields.authors == ["A. One", "B. Two"]
        assert fields.year == 2019
        assert fields.doi == "10.1/abc"

    def test_tagged_lines_with_continuations(self):
        """Test tagged values continue across following lines."""
        text = "**Major Findings:**\n- Recall improved\n- Naps did not help\nSuggestions: none"

        fields = parse_structured(text, NarrativeFields)

        assert fields.major_findings == "- Recall improved\n- Naps did not help"
        assert fields.suggestions == ""

    def test_aliases_and_list_values(self):
        """Test key aliases map to fields and lists are joined."""
        fields = parse_structured(
            json.dumps({"abstract": "bg", "findings": ["a", "b"], "future_work": "more"}), NarrativeFields
        )

        assert fields.background == "bg"
        assert fields.major_findings == "- a\n- b"
        assert fields.suggestions == "more"

    def test_missing_fields_default_to_empty(self):
        """Test missing fields default to empty values."""
        fields = parse_structured('{"background": "x"}', NarrativeFields)

        assert fields.background == "x"
        assert fields.research_question == ""
        assert fields.major_findings == ""

    def test_placeholder_values_are_empty(self):
        """Test placeholders like "N/A" are treated as empty."""
        fields = parse_structured('{"title": "N/A", "year": "unknown", "authors": "none"}', BibliographicFields)

        assert fields.title == ""
        assert fields.year is None
        assert fields.authors == []

    def test_unknown_keys_ignored(self):
        """Test unknown keys are ignored."""
        fields = parse_structured('{"title": "X", "confidence": 0.9}', BibliographicFields)
        assert fields.title == "X"

    def test_no_known_field_is_unparsable(self):
        """Test a response without any known field is unparsable."""
        for text in ("I cannot help with that.", '{"foo": 1}', '{"title": "X"}'):
            schema = NarrativeFields
            with self.assertRaises(StructuredParseError):
                parse_structured(text, schema)

    def test_non_finite_year_is_dropped(self):
        """Test NaN and infinite years are dropped instead of failing validation."""
        for text in ('{"title": "X", "year": NaN}', '{"title": "X", "year": 1e999}', '{"title": "X", "year": -Infinity}'):
            fields = parse_structured(text, BibliographicFields)
            assert fields.title == "X"
            assert fields.year is None

    def test_uncoercible_values_are_unparsable(self):
        """Test values that fail validation are reported as unparsable."""
        class StrictYear(BaseModel):
            year: int

        with self.assertRaises(StructuredParseError):
            parse_structured('{"year": "sometime last decade"}', StrictYear)


class TestExtractionEngine(unittest.IsolatedAsyncioTestCase):
    """Field-group calls, retry and all-or-nothing results."""

    async def test_extracts_both_groups(self):
        """Test both field groups are extracted and merged."""
        client = FakeCompletionClient(reply=extraction_responder())
        engine = ExtractionEngine(client)

        result = await engine.extract(SAMPLE_PAPER, MODEL)

        assert result.succeeded
        assert result.title == BIBLIOGRAPHIC_REPLY["title"]
        assert result.authors == BIBLIOGRAPHIC_REPLY["authors"]
        assert result.year == 2021
        assert result.major_findings == NARRATIVE_REPLY["major_findings"]
        assert result.attempts == 2
        assert len(client.calls) == 2

    async def test_group_inputs_are_budgeted(self):
        """Test each field group receives its own slice of the text."""
        client = FakeCompletionClient(reply=extraction_responder())
        engine = ExtractionEngine(client, biblio_input_chars=50, narrative_input_chars=120)
        text = "A" * 40 + "B" * 1000

        await engine.extract(text, MODEL)

        prompts = {m[-1]["content"].split("<Paper>")[1] for m in client.calls}
        assert any("A" * 40 + "B" * 10 + "\n" in p for p in prompts)
        assert any("B" * 80 + "\n" in p and "B" * 81 not in p for p in prompts)

    async def test_unparsable_response_is_retried_strictly(self):
        """Test an unparsable response is retried with the strict prompt."""
        narrative_calls = []

        def respond(messages):
            prompt = messages[-1]["content"]
            if "Identify the bibliographic details" in prompt:
                return json.dumps(BIBLIOGRAPHIC_REPLY)
            narrative_calls.append(prompt)
            if len(narrative_calls) == 1:
                return "Sorry, I am not sure what you mean."
            return json.dumps(NARRATIVE_REPLY)

        engine = ExtractionEngine(FakeCompletionClient(reply=respond))

        result = await engine.extract(SAMPLE_PAPER, MODEL)

        assert result.succeeded
        assert result.attempts == 3
        assert "<Retry Instruction>" not in narrative_calls[0]
        assert "<Retry Instruction>" in narrative_calls[1]

    async def test_failed_retry_fails_whole_extraction(self):
        """Test a group failing its retry fails the whole extraction."""
        client = FakeCompletionClient(reply=extraction_responder(narrative="no structure here"))
        engine = ExtractionEngine(client)

        result = await engine.extract(SAMPLE_PAPER, MODEL)

        assert not result.succeeded
        assert "narrative" in result.error
        # Bibliographic fields parsed fine but are not returned on failure
        assert result.title == ""
        assert result.authors == []
        assert result.attempts == 3

    async def test_capability_error_fails_after_retry(self):
        """Test repeated model errors fail the extraction after one retry."""
        client = FakeCompletionClient(reply=CapabilityError("The AI model request failed (ConnectError)"))
        engine = ExtractionEngine(client)

        result = await engine.extract(SAMPLE_PAPER, MODEL)

        assert not result.succeeded
        assert len(client.calls) == 4
        assert "ConnectError" in result.error

    async def test_transient_error_recovers_on_retry(self):
        """Test a transient model error recovers on retry."""
        client = FakeCompletionClient(reply=extraction_responder(), fail_first=1)
        engine = ExtractionEngine(client)

        result = await engine.extract(SAMPLE_PAPER, MODEL)

        assert result.succeeded
        assert result.attempts == 3

    async def test_timeout_fails_extraction(self):
        """Test a model timeout fails the extraction."""
        client = FakeCompletionClient(reply=extraction_responder(), delay=1.0)
        engine = ExtractionEngine(client, timeout_seconds=0.05)

        result = await engine.extract(SAMPLE_PAPER, MODEL)

        assert not result.succeeded
        assert "did not respond in time" in result.error

    async def test_empty_text_is_input_error(self):
        """Test that empty text raises InputError without calling the model."""
        client = FakeCompletionClient(reply=extraction_responder())
        engine = ExtractionEngine(client)

        for text in ("", "   "):
            with self.assertRaises(InputError):
                await engine.extract(text, MODEL)
        assert client.calls == []


if __name__ == "__main__":
    unittest.main()
