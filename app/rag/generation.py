"""
AI capability adapters for ResearchDesk.

complete(messages, model_config, stream) yields text chunks from the
configured provider. A stream that ends without the provider's completion
marker is treated as truncated and raises CapabilityError. Cancellation is
task cancellation: the consumer cancels and the provider request is closed.
"""
from typing import AsyncIterator, Dict, List, Optional, Tuple
import time

import httpx
import ollama
import openai

from app.errors import CapabilityError, CapabilityTimeout
from app.logging_config import get_logger, register_secrets
from app.models import ModelConfigSnapshot

logger = get_logger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"


class CompletionClient:
    """Interface for a provider: async stream of text chunks."""

    provider = ""

    async def complete(
        self,
        messages: List[dict],
        model_config: ModelConfigSnapshot,
        stream: bool = False,
    ) -> AsyncIterator[str]:
        raise NotImplementedError
        yield  # pragma: no cover


class OllamaCompletionClient(CompletionClient):
    provider = "ollama"

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._clients: Dict[Tuple[str, Optional[str]], ollama.AsyncClient] = {}

    def _client(self, config: ModelConfigSnapshot) -> ollama.AsyncClient:
        host = config.base_url or DEFAULT_OLLAMA_URL
        key = (host, config.api_key)
        if key not in self._clients:
            headers = {"Authorization": f"Bearer {config.api_key}"} if config.api_key else None
            self._clients[key] = ollama.AsyncClient(host=host, headers=headers, timeout=self.timeout)
        return self._clients[key]

    async def complete(self, messages, model_config, stream=False):
        client = self._client(model_config)
        start = time.time()
        done = False
        try:
            if not stream:
                response = await client.chat(model=model_config.model_name, messages=messages)
                done = True
                yield response["message"]["content"] or ""
            else:
                async for part in await client.chat(model=model_config.model_name, messages=messages, stream=True):
                    content = part["message"]["content"]
                    if content:
                        yield content
                    if part["done"]:
                        done = True
        except httpx.TimeoutException as e:
            logger.error(f"Ollama request timed out: {e}")
            raise CapabilityTimeout("The AI model did not respond in time") from e
        except (ollama.ResponseError, httpx.HTTPError, ConnectionError) as e:
            logger.error(f"Ollama request failed: {e}", exc_info=True)
            raise CapabilityError(f"The AI model request failed ({type(e).__name__})") from e

        if not done:
            raise CapabilityError("The AI model stream ended before completion")
        logger.info(f"Ollama {model_config.model_name} completion time: {(time.time() - start) * 1000:.0f}ms")


class OpenAICompletionClient(CompletionClient):
    """OpenAI and OpenAI-compatible endpoints (base_url override)."""

    provider = "openai"

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._clients: Dict[Tuple[Optional[str], Optional[str]], openai.AsyncOpenAI] = {}

    def _client(self, config: ModelConfigSnapshot) -> openai.AsyncOpenAI:
        key = (config.base_url, config.api_key)
        if key not in self._clients:
            self._clients[key] = openai.AsyncOpenAI(
                api_key=config.api_key or "unused",
                base_url=config.base_url or None,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._clients[key]

    async def complete(self, messages, model_config, stream=False):
        client = self._client(model_config)
        start = time.time()
        finished = False
        try:
            if not stream:
                response = await client.chat.completions.create(model=model_config.model_name, messages=messages)
                if not response.choices:
                    raise CapabilityError("The AI model returned no choices")
                finished = True
                yield response.choices[0].message.content or ""
            else:
                response_stream = await client.chat.completions.create(
                    model=model_config.model_name, messages=messages, stream=True
                )
                async for chunk in response_stream:
                    if not chunk.choices:
                        continue
                    choice = chunk.choices[0]
                    if choice.delta is not None and choice.delta.content:
                        yield choice.delta.content
                    if choice.finish_reason:
                        finished = True
        except openai.APITimeoutError as e:
            logger.error(f"OpenAI request timed out: {e}")
            raise CapabilityTimeout("The AI model did not respond in time") from e
        except openai.OpenAIError as e:
            logger.error(f"OpenAI request failed: {e}", exc_info=True)
            raise CapabilityError(f"The AI model request failed ({type(e).__name__})") from e

        if not finished:
            raise CapabilityError("The AI model stream ended before completion")
        logger.info(f"OpenAI {model_config.model_name} completion time: {(time.time() - start) * 1000:.0f}ms")


class CompletionRouter(CompletionClient):
    """Dispatches to the provider named by each model config."""

    def __init__(self, clients: Optional[List[CompletionClient]] = None, timeout: Optional[float] = None):
        clients = clients or [OllamaCompletionClient(timeout), OpenAICompletionClient(timeout)]
        self._clients = {client.provider: client for client in clients}

    async def complete(self, messages, model_config, stream=False):
        client = self._clients.get(model_config.provider)
        if client is None:
            raise CapabilityError(f"Unsupported AI provider: {model_config.provider}")
        register_secrets(model_config.api_key)
        async for chunk in client.complete(messages, model_config, stream=stream):
            yield chunk


async def complete_text(
    client: CompletionClient,
    messages: List[dict],
    model_config: ModelConfigSnapshot,
) -> str:
    """Run a non-streamed completion and return the whole text."""
    parts = []
    async for chunk in client.complete(messages, model_config, stream=False):
        parts.append(chunk)
    return "".join(parts)
