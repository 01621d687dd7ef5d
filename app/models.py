"""
Core data models for ResearchDesk.

These models are passed between the ingestion, extraction, context
assembly and conversation layers. Persistence lives in app/db/models.py.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class TargetKind(str, Enum):
    DOCUMENT = "document"
    PAPER = "paper"
    BATCH = "batch"
    QUERY = "query"


@dataclass(frozen=True)
class TargetRef:
    """
    What a conversation is about.

    DOCUMENT, PAPER and BATCH point at a stored row by id; QUERY is an
    ad-hoc conversation with no fixed document content (target_id is None).
    """
    kind: TargetKind
    target_id: Optional[str] = None

    @classmethod
    def document(cls, document_id: str) -> "TargetRef":
        return cls(TargetKind.DOCUMENT, document_id)

    @classmethod
    def paper(cls, paper_id: str) -> "TargetRef":
        return cls(TargetKind.PAPER, paper_id)

    @classmethod
    def batch(cls, batch_id: str) -> "TargetRef":
        return cls(TargetKind.BATCH, batch_id)

    @classmethod
    def query(cls) -> "TargetRef":
        return cls(TargetKind.QUERY, None)


@dataclass(frozen=True)
class NormalizedText:
    """Output of the text normalizer. `unextractable` marks unusable input."""
    text: str
    markdown: str
    unextractable: bool = False
    reason: Optional[str] = None


# Extracted field names in storage order
BIBLIOGRAPHIC_FIELDS = ("title", "authors", "year", "doi")
NARRATIVE_FIELDS = ("background", "research_question", "major_findings", "suggestions")


@dataclass
class ExtractionResult:
    """
    Outcome of one extraction run over a document's normalized text.

    On failure every field is left at its default and `error` explains why;
    callers must not apply a failed result.
    """
    succeeded: bool
    title: str = ""
    authors: List[str] = field(default_factory=list)
    year: Optional[int] = None
    doi: str = ""
    background: str = ""
    research_question: str = ""
    major_findings: str = ""
    suggestions: str = ""
    attempts: int = 0
    error: Optional[str] = None

    def fields(self) -> Dict[str, object]:
        return {
            "title": self.title,
            "authors": list(self.authors),
            "year": self.year,
            "doi": self.doi,
            "background": self.background,
            "research_question": self.research_question,
            "major_findings": self.major_findings,
            "suggestions": self.suggestions,
        }


@dataclass(frozen=True)
class ModelConfigSnapshot:
    """Immutable view of a stored model configuration."""
    config_id: str
    name: str
    provider: str
    model_name: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    context_budget: Optional[int] = None

    def __repr__(self) -> str:
        # Keep API keys out of reprs that end up in logs and tracebacks
        return (
            f"ModelConfigSnapshot(config_id={self.config_id!r}, name={self.name!r}, "
            f"provider={self.provider!r}, model_name={self.model_name!r})"
        )


@dataclass(frozen=True)
class TurnRecord:
    role: str  # "user" | "assistant"
    content: str


@dataclass
class ContextPayload:
    """
    Prompt payload for one chat exchange, in send order:
    system instruction, resolved content, recent turns, new user turn.
    """
    system: str
    content: str
    history: List[TurnRecord]
    user_message: str
    size: int = 0
    budget: int = 0
    truncated: bool = False

    def to_messages(self) -> List[dict]:
        messages = [{"role": "system", "content": self.system}]
        if self.content:
            messages.append({"role": "system", "content": self.content})
        for turn in self.history:
            messages.append({"role": turn.role, "content": turn.content})
        messages.append({"role": "user", "content": self.user_message})
        return messages


class ConversationState(str, Enum):
    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"
