"""
Tests for the provider adapters, with the SDK clients mocked out.
"""
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import openai

from app.errors import CapabilityError, CapabilityTimeout
from app.models import ModelConfigSnapshot
from app.rag.generation import (
    CompletionRouter, OllamaCompletionClient, OpenAICompletionClient, complete_text,
)
from tests.fakes import FakeCompletionClient

OLLAMA = ModelConfigSnapshot("cfg-o", "Local", "ollama", "llama3.1:8b")
OPENAI = ModelConfigSnapshot("cfg-a", "Remote", "openai", "gpt-4o-mini", api_key="sk-test-abcdef")
MESSAGES = [{"role": "user", "content": "hi"}]


async def ollama_parts(*parts):
    for content, done in parts:
        yield {"message": {"content": content}, "done": done}


async def openai_chunks(*chunks):
    for content, finish_reason in chunks:
        delta = SimpleNamespace(content=content)
        yield SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)])


async def drain(client, config, stream=True):
    return [chunk async for chunk in client.complete(MESSAGES, config, stream=stream)]


class TestOllamaCompletionClient(unittest.IsolatedAsyncioTestCase):

    def make_client(self, chat):
        client = OllamaCompletionClient(timeout=5)
        sdk = SimpleNamespace(chat=chat)
        patcher = patch.object(client, "_client", return_value=sdk)
        patcher.start()
        self.addCleanup(patcher.stop)
        return client

    async def test_streams_until_done(self):
        """Test the Ollama client streams content until the done marker."""
        client = self.make_client(AsyncMock(return_value=ollama_parts(("Hel", False), ("lo", False), ("", True))))
        assert await drain(client, OLLAMA) == ["Hel", "lo"]

    async def test_stream_without_done_is_truncated(self):
        """Test an Ollama stream without a done marker is reported as truncated."""
        client = self.make_client(AsyncMock(return_value=ollama_parts(("Hel", False))))
        with self.assertRaises(CapabilityError):
            await drain(client, OLLAMA)

    async def test_non_streaming(self):
        """Test a non-streaming Ollama reply is yielded whole."""
        client = self.make_client(AsyncMock(return_value={"message": {"content": "Hello"}, "done": True}))
        assert await drain(client, OLLAMA, stream=False) == ["Hello"]

    async def test_transport_errors_are_mapped(self):
        """Test connection and timeout errors map to capability errors."""
        client = self.make_client(AsyncMock(side_effect=httpx.ConnectError("connection refused")))
        with self.assertRaises(CapabilityError):
            await drain(client, OLLAMA)

        client = self.make_client(AsyncMock(side_effect=httpx.ReadTimeout("slow")))
        with self.assertRaises(CapabilityTimeout):
            await drain(client, OLLAMA)


class TestOpenAICompletionClient(unittest.IsolatedAsyncioTestCase):

    def make_client(self, create):
        client = OpenAICompletionClient(timeout=5)
        sdk = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
        patcher = patch.object(client, "_client", return_value=sdk)
        patcher.start()
        self.addCleanup(patcher.stop)
        return client

    async def test_streams_until_finish_reason(self):
        """Test the OpenAI client streams content until a finish reason."""
        create = AsyncMock(return_value=openai_chunks(("Hi", None), (" there", None), (None, "stop")))
        client = self.make_client(create)

        assert await drain(client, OPENAI) == ["Hi", " there"]

    async def test_stream_without_finish_reason_is_truncated(self):
        """Test an OpenAI stream without a finish reason is reported as truncated."""
        client = self.make_client(AsyncMock(return_value=openai_chunks(("Hi", None))))
        with self.assertRaises(CapabilityError):
            await drain(client, OPENAI)

    async def test_error_message_is_secret_free(self):
        """Test provider error messages never contain the API key."""
        request = httpx.Request("POST", "https://api.example.com/v1/chat/completions")
        error = openai.APIConnectionError(message="boom sk-test-abcdef", request=request)
        client = self.make_client(AsyncMock(side_effect=error))

        with self.assertRaises(CapabilityError) as ctx:
            await drain(client, OPENAI)
        assert "sk-test-abcdef" not in ctx.exception.message


class TestCompletionRouter(unittest.IsolatedAsyncioTestCase):

    async def test_routes_by_provider(self):
        """Test the router dispatches to the client for the provider."""
        fake = FakeCompletionClient(reply="routed")
        router = CompletionRouter(clients=[fake])

        assert await complete_text(router, MESSAGES, OLLAMA) == "routed"
        assert fake.calls == [MESSAGES]

    async def test_unknown_provider(self):
        """Test that a provider without a client raises CapabilityError."""
        router = CompletionRouter(clients=[FakeCompletionClient()])

        with self.assertRaises(CapabilityError):
            await complete_text(router, MESSAGES, OPENAI)


if __name__ == "__main__":
    unittest.main()
