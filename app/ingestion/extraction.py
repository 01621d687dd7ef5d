"""
Structured extraction of paper findings for ResearchDesk.

Two field groups are extracted with separate prompts: bibliographic fields
(title, authors, year, DOI) need only the first page or so of text, while
narrative fields (background, research question, findings, suggestions)
get a much larger slice of the paper. Responses go through a tolerant
parser (JSON or "Field: value" lines) and are validated against fixed
pydantic schemas, so missing fields default to empty instead of failing.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Type
import asyncio
import json
import math
import re
import time

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from app.errors import CapabilityError, CapabilityTimeout, InputError
from app.logging_config import get_logger
from app.models import ExtractionResult, ModelConfigSnapshot
from app.rag.generation import CompletionClient, complete_text

logger = get_logger(__name__)


# ============================================================================
# SCHEMAS
# ============================================================================

_EMPTY_MARKERS = {"", "n/a", "na", "none", "null", "not stated", "not specified", "not available", "unknown", "-"}
_YEAR_RE = re.compile(r"\b(1[5-9]\d{2}|20\d{2})\b")
_DOI_PREFIX_RE = re.compile(r"^(?:https?://(?:dx\.)?doi\.org/|doi:\s*)", re.IGNORECASE)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        items = [_as_text(v) for v in value]
        items = [i for i in items if i]
        if len(items) == 1:
            return items[0]
        return "\n".join(f"- {i}" for i in items)
    if isinstance(value, dict):
        return "; ".join(f"{k}: {_as_text(v)}" for k, v in value.items() if _as_text(v))
    text = str(value).strip()
    return "" if text.lower() in _EMPTY_MARKERS else text


class BibliographicFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str = ""
    authors: List[str] = []
    year: Optional[int] = None
    doi: str = ""

    @field_validator("title", mode="before")
    @classmethod
    def _coerce_title(cls, value):
        return " ".join(_as_text(value).split())

    @field_validator("authors", mode="before")
    @classmethod
    def _coerce_authors(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            text = _as_text(value)
            if not text:
                return []
            separator = ";" if ";" in text else ","
            parts = re.split(rf"{separator}|\band\b|&|\n", text)
        else:
            parts = []
            for item in value if isinstance(value, (list, tuple)) else [value]:
                if isinstance(item, dict):
                    item = item.get("name") or " ".join(
                        str(item.get(k, "")) for k in ("given", "family") if item.get(k)
                    )
                parts.append(_as_text(item))
        authors = []
        for part in parts:
            name = " ".join(part.strip(" -*.\t").split())
            if name and name.lower() not in _EMPTY_MARKERS and name not in authors:
                authors.append(name)
        return authors

    @field_validator("year", mode="before")
    @classmethod
    def _coerce_year(cls, value):
        if isinstance(value, bool) or value is None:
            return None
        if isinstance(value, (int, float)):
            if not math.isfinite(value):
                return None
            year = int(value)
            return year if 1500 <= year <= 2100 else None
        match = _YEAR_RE.search(_as_text(value))
        return int(match.group(1)) if match else None

    @field_validator("doi", mode="before")
    @classmethod
    def _coerce_doi(cls, value):
        return _DOI_PREFIX_RE.sub("", _as_text(value)).strip().rstrip(".")


class NarrativeFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    background: str = ""
    research_question: str = ""
    major_findings: str = ""
    suggestions: str = ""

    @field_validator("background", "research_question", "major_findings", "suggestions", mode="before")
    @classmethod
    def _coerce_text(cls, value):
        return _as_text(value)


# Label (lowercased, underscores/hyphens as spaces) -> schema field
FIELD_ALIASES = {
    "title": "title",
    "paper title": "title",
    "authors": "authors",
    "author": "authors",
    "author list": "authors",
    "year": "year",
    "publication year": "year",
    "published": "year",
    "doi": "doi",
    "background": "background",
    "abstract": "background",
    "summary": "background",
    "context": "background",
    "research question": "research_question",
    "research questions": "research_question",
    "question": "research_question",
    "objective": "research_question",
    "research objective": "research_question",
    "aim": "research_question",
    "major findings": "major_findings",
    "findings": "major_findings",
    "key findings": "major_findings",
    "main findings": "major_findings",
    "results": "major_findings",
    "suggestions": "suggestions",
    "future work": "suggestions",
    "future directions": "suggestions",
    "recommendations": "suggestions",
    "implications": "suggestions",
}

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE | re.MULTILINE)
_TAGGED_LINE_RE = re.compile(r"^\s*(?:[-*#>]+\s*)?\**\s*([A-Za-z][A-Za-z _/-]{0,40}?)\s*\**\s*:\s*\**\s*(.*)$")


class StructuredParseError(ValueError):
    """The response contains none of the expected fields, or values that do not validate."""


def _canonical_key(label: str) -> Optional[str]:
    key = re.sub(r"[_\-/]+", " ", label.strip().lower())
    return FIELD_ALIASES.get(" ".join(key.split()))


def _parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError:
        return None
    if isinstance(data, dict) and len(data) == 1 and isinstance(next(iter(data.values())), dict):
        # {"fields": {...}} / {"paper": {...}} wrappers
        inner = next(iter(data.values()))
        if any(_canonical_key(k) for k in inner):
            return inner
    return data if isinstance(data, dict) else None


def _parse_tagged_lines(text: str) -> Dict[str, str]:
    values: Dict[str, List[str]] = {}
    current = None
    for line in text.splitlines():
        match = _TAGGED_LINE_RE.match(line)
        key = _canonical_key(match.group(1)) if match else None
        if key:
            current = key
            values.setdefault(key, [])
            if match.group(2).strip():
                values[key].append(match.group(2).strip().rstrip("*").strip())
        elif current and line.strip():
            values[current].append(line.strip())
    return {key: "\n".join(lines) for key, lines in values.items()}


def parse_structured(text: str, schema: Type[BaseModel]) -> BaseModel:
    """
    Parse a model response into `schema`.

    Accepts a JSON object (bare, fenced, or surrounded by prose) or
    "Field: value" tagged lines. Unknown keys are ignored and missing keys
    take schema defaults. Raises StructuredParseError when no field of the
    schema is present at all, or when present values fail validation.
    """
    cleaned = _FENCE_RE.sub("", text or "").strip()
    raw = _parse_json_object(cleaned)
    if raw is None:
        raw = _parse_tagged_lines(cleaned)

    known = set(schema.model_fields)
    mapped: Dict[str, Any] = {}
    for label, value in raw.items():
        key = _canonical_key(str(label))
        if key in known and key not in mapped:
            mapped[key] = value

    if not mapped:
        raise StructuredParseError(f"No {schema.__name__} fields found in response")
    try:
        return schema.model_validate(mapped)
    except ValidationError as e:
        raise StructuredParseError(f"{schema.__name__} fields could not be validated: {e.error_count()} error(s)") from e


# ============================================================================
# PROMPTS
# ============================================================================

SYSTEM_PROMPT = """
<Role Context>
You are a meticulous research assistant who reads academic papers and records their key facts.
</Role Context>

<Constraints>
Use only information stated in the <Paper> text.
If a field is not stated, return an empty string for it (empty list for authors, null for year).
Respond with a single JSON object and nothing else.
</Constraints>
"""

BIBLIOGRAPHIC_PROMPT = """
<Task Description>
Identify the bibliographic details of the paper below.
Return JSON with exactly these keys:
  "title": string, the full paper title
  "authors": list of author names in the order printed
  "year": publication year as a number, or null
  "doi": the DOI without any URL prefix, or ""
</Task Description>

<Paper>
{text}
</Paper>
"""

NARRATIVE_PROMPT = """
<Task Description>
Summarize the research content of the paper below for a literature review.
Return JSON with exactly these keys:
  "background": 2-4 sentences on the context and motivation (the abstract-level background)
  "research_question": the question(s) or objective(s) the study addresses
  "major_findings": the main results, as concise sentences; include numbers where reported
  "suggestions": recommendations, implications, limitations or future work the authors propose
</Task Description>

<Paper>
{text}
</Paper>
"""

STRICT_SUFFIX = """
<Retry Instruction>
Your previous answer could not be read. Return ONLY the JSON object with the keys {keys}.
No explanations, no markdown, no code fences.
</Retry Instruction>
"""


@dataclass(frozen=True)
class FieldGroup:
    name: str
    prompt: str
    schema: Type[BaseModel]


BIBLIOGRAPHIC_GROUP = FieldGroup("bibliographic", BIBLIOGRAPHIC_PROMPT, BibliographicFields)
NARRATIVE_GROUP = FieldGroup("narrative", NARRATIVE_PROMPT, NarrativeFields)


class _GroupFailed(Exception):
    def __init__(self, group: str, reason: str, attempts: int):
        super().__init__(f"{group} extraction failed: {reason}")
        self.reason = reason
        self.attempts = attempts


def build_extraction_messages(group: FieldGroup, text: str, strict: bool = False) -> List[dict]:
    prompt = group.prompt.format(text=text)
    if strict:
        keys = ", ".join(f'"{k}"' for k in group.schema.model_fields)
        prompt += STRICT_SUFFIX.format(keys=keys)
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]


# ============================================================================
# ENGINE
# ============================================================================

class ExtractionEngine:
    """Runs both field groups against the AI capability and merges the result."""

    def __init__(
        self,
        client: CompletionClient,
        timeout_seconds: float = 120.0,
        biblio_input_chars: int = 4000,
        narrative_input_chars: int = 24000,
    ):
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.biblio_input_chars = biblio_input_chars
        self.narrative_input_chars = narrative_input_chars

    async def _call(self, messages: List[dict], model_config: ModelConfigSnapshot) -> str:
        try:
            async with asyncio.timeout(self.timeout_seconds):
                return await complete_text(self.client, messages, model_config)
        except TimeoutError as e:
            raise CapabilityTimeout("The AI model did not respond in time") from e

    async def _run_group(
        self, group: FieldGroup, text: str, model_config: ModelConfigSnapshot
    ) -> Tuple[BaseModel, int]:
        """One attempt, then one stricter retry. Returns (fields, attempts)."""
        reason = ""
        for attempt, strict in enumerate((False, True), start=1):
            messages = build_extraction_messages(group, text, strict=strict)
            try:
                response = await self._call(messages, model_config)
                fields = parse_structured(response, group.schema)
                logger.debug(f"{group.name} fields parsed on attempt {attempt}")
                return fields, attempt
            except CapabilityError as e:
                reason = e.message
                logger.warning(f"{group.name} extraction attempt {attempt} failed: {e.message}")
            except StructuredParseError as e:
                reason = "the AI response could not be parsed"
                logger.warning(f"{group.name} extraction attempt {attempt} unparsable: {e}")
        raise _GroupFailed(group.name, reason, attempts=2)

    async def extract(self, text: str, model_config: ModelConfigSnapshot) -> ExtractionResult:
        """
        Extract the structured field set from normalized text.

        Returns:
            ExtractionResult with succeeded=True and all fields, or
            succeeded=False with only `error` set (never a partial set).

        Raises:
            InputError: if text is empty.
        """
        if not text or not text.strip():
            raise InputError("Document has no extractable text")

        start = time.time()
        outcomes = await asyncio.gather(
            self._run_group(BIBLIOGRAPHIC_GROUP, text[:self.biblio_input_chars], model_config),
            self._run_group(NARRATIVE_GROUP, text[:self.narrative_input_chars], model_config),
            return_exceptions=True,
        )

        attempts = 0
        failures = []
        merged: Dict[str, Any] = {}
        for outcome in outcomes:
            if isinstance(outcome, _GroupFailed):
                attempts += outcome.attempts
                failures.append(str(outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                fields, group_attempts = outcome
                attempts += group_attempts
                merged.update(fields.model_dump())

        elapsed = (time.time() - start) * 1000
        if failures:
            logger.error(f"Extraction failed after {attempts} attempts in {elapsed:.0f}ms: {'; '.join(failures)}")
            return ExtractionResult(succeeded=False, attempts=attempts, error="; ".join(failures))

        logger.info(f"Extraction succeeded with {attempts} call(s) in {elapsed:.0f}ms")
        return ExtractionResult(succeeded=True, attempts=attempts, **merged)
