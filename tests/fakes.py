"""
Test doubles shared by the test suite.

FakeCompletionClient stands in for the AI capability: it replays a scripted
reply as a chunked stream and can fail, stall or truncate on demand.
"""
import asyncio
import json
import re
from typing import Callable, List, Optional, Union

from app.config import Settings
from app.db.store import Store
from app.errors import CapabilityError
from app.rag.generation import CompletionClient

Reply = Union[str, Exception, "Truncated"]


class Truncated:
    """Stream `text`, then end without the provider's completion marker."""

    def __init__(self, text: str):
        self.text = text


class FakeCompletionClient(CompletionClient):
    provider = "ollama"

    def __init__(
        self,
        reply: Union[Reply, Callable[[List[dict]], Reply]] = "Deterministic answer.",
        chunk_size: int = 5,
        delay: float = 0.0,
        fail_first: int = 0,
        hold_after_first_chunk: bool = False,
    ):
        self.reply = reply
        self.chunk_size = chunk_size
        self.delay = delay
        self.fail_first = fail_first
        self.calls: List[List[dict]] = []
        # Streams pause after their first chunk until release is set
        self.release: Optional[asyncio.Event] = asyncio.Event() if hold_after_first_chunk else None

    async def complete(self, messages, model_config, stream=False):
        self.calls.append(messages)
        if self.fail_first > 0:
            self.fail_first -= 1
            raise CapabilityError("The AI model request failed (ConnectError)")

        reply = self.reply(messages) if callable(self.reply) else self.reply
        if isinstance(reply, Exception):
            raise reply

        truncated = isinstance(reply, Truncated)
        text = reply.text if truncated else reply
        if not stream:
            if self.delay:
                await asyncio.sleep(self.delay)
            if truncated:
                raise CapabilityError("The AI model stream ended before completion")
            yield text
            return

        for i in range(0, len(text), self.chunk_size):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield text[i:i + self.chunk_size]
            if i == 0 and self.release is not None:
                await self.release.wait()
        if truncated:
            raise CapabilityError("The AI model stream ended before completion")


class WordPieceEncoder:
    """
    Offline stand-in for a tiktoken encoding.

    Tokens are word pieces of up to four characters, single punctuation marks
    and whitespace runs, so like BPE the count of a concatenation can differ
    from the sum of its parts.
    """

    _TOKEN_RE = re.compile(r"\w{1,4}|[^\w\s]|\s+")

    def encode(self, text: str) -> List[str]:
        return self._TOKEN_RE.findall(text)

    def decode(self, tokens: List[str]) -> str:
        return "".join(tokens)


BIBLIOGRAPHIC_REPLY = {
    "title": "Sleep and Memory Consolidation",
    "authors": ["Ada Lovelace", "Alan Turing"],
    "year": 2021,
    "doi": "10.1000/sleep.2021",
}

NARRATIVE_REPLY = {
    "background": "Sleep is thought to support memory.",
    "research_question": "Does slow-wave sleep improve recall?",
    "major_findings": "Recall improved by 20% after slow-wave sleep.",
    "suggestions": "Replicate with larger cohorts.",
}


def extraction_responder(bibliographic=BIBLIOGRAPHIC_REPLY, narrative=NARRATIVE_REPLY, chat="Deterministic answer."):
    """Answer extraction prompts with fixed JSON per field group, and chat with `chat`."""

    def as_reply(value) -> Reply:
        return value if isinstance(value, (str, Exception, Truncated)) else json.dumps(value)

    def respond(messages: List[dict]) -> Reply:
        prompt = messages[-1]["content"]
        if "Identify the bibliographic details" in prompt:
            return as_reply(bibliographic)
        if "Summarize the research content" in prompt:
            return as_reply(narrative)
        return as_reply(chat)

    return respond


def make_store() -> Store:
    return Store.from_url("sqlite:///:memory:")


def make_settings(**overrides) -> Settings:
    values = dict(database_url="sqlite:///:memory:", ollama_model="", llm_timeout_seconds=5.0)
    values.update(overrides)
    return Settings(**values)


SAMPLE_PAPER = """SLEEP AND MEMORY CONSOLIDATION

Ada Lovelace, Alan Turing

Abstract
Sleep is thought to support memory. We test whether slow-wave sleep im-
proves recall in adults.

1. Introduction
Memory consolidation during sleep has been studied for decades.

2. Results
Recall improved by 20% after slow-wave sleep compared with wakefulness.
- Effect held across age groups
- No effect for REM-only naps

Page 2 of 9
"""
