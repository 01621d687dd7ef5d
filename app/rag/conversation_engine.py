"""
Conversation engine for ResearchDesk.

Drives the request/response cycle of grounded chat. Each conversation is
Idle or AwaitingResponse; only one exchange per conversation may be in
flight, while different conversations run concurrently.

History is persisted through the Store. Only completed exchanges leave an
assistant turn behind: failures, timeouts, truncated streams and
cancellations discard the partial answer and keep the user's question.
"""
from contextlib import aclosing
from typing import Dict, List, Optional, Tuple
import asyncio
import time

from app.db.models import Conversation, ConversationTurn
from app.db.store import Store
from app.errors import (
    BusyError, CapabilityError, CapabilityTimeout, InputError, NotFoundError, ResearchDeskError, ResolutionError,
)
from app.logging_config import get_logger
from app.models import ConversationState, ModelConfigSnapshot, TargetKind, TargetRef, TurnRecord
from app.rag.context_assembler import ContextAssembler
from app.rag.generation import CompletionClient
from app.rag.model_registry import ModelRegistry

logger = get_logger(__name__)

_END = object()
_CANCELLED = object()


class AnswerStream:
    """
    Live assistant answer for one exchange.

    A producer task relays provider chunks into a queue; iterate with
    `async for chunk in stream`. Iteration raises the exchange's error on
    failure and stops early after cancel().
    """

    def __init__(
        self,
        engine: "ConversationEngine",
        conversation_id: str,
        messages: List[dict],
        model_config: ModelConfigSnapshot,
    ):
        self.engine = engine
        self.conversation_id = conversation_id
        self.messages = messages
        self.model_config = model_config
        self.outcome: Optional[str] = None  # "completed" | "failed" | "cancelled"
        self.error: Optional[ResearchDeskError] = None
        self.answer: Optional[str] = None
        self._received: List[str] = []
        self._delivered: List[str] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._started_at = time.time()

    @property
    def partial_text(self) -> str:
        """Answer text delivered to the caller so far."""
        return "".join(self._delivered)

    @property
    def done(self) -> bool:
        return self.outcome is not None

    def start(self) -> None:
        self._task = asyncio.create_task(self._produce())

    async def _relay(self) -> None:
        """Stream from the provider, retrying a failed connection before the first chunk."""
        retries = self.engine.retries
        attempt = 0
        while True:
            emitted = False
            try:
                async with asyncio.timeout(self.engine.timeout_seconds):
                    chunks = self.engine.client.complete(self.messages, self.model_config, stream=True)
                    async with aclosing(chunks):
                        async for chunk in chunks:
                            if not chunk:
                                continue
                            emitted = True
                            self._received.append(chunk)
                            self._queue.put_nowait(chunk)
                return
            except TimeoutError as e:
                error: CapabilityError = CapabilityTimeout("The AI model did not respond in time")
                error.__cause__ = e
            except CapabilityError as e:
                error = e
            if emitted or attempt >= retries:
                raise error
            attempt += 1
            logger.warning(
                f"Conversation {self.conversation_id}: {error.message}; retrying ({attempt}/{retries})"
            )

    async def _produce(self) -> None:
        try:
            await self._relay()
            answer = "".join(self._received)
            if not answer.strip():
                raise CapabilityError("The AI model returned an empty answer")
            self.engine._record_answer(self.conversation_id, answer)
        except asyncio.CancelledError:
            self._finish("cancelled")
            raise
        except ResearchDeskError as e:
            self._finish("failed", e)
            self._queue.put_nowait(e)
            return
        except Exception as e:
            logger.error(f"Conversation {self.conversation_id}: unexpected streaming error: {e}", exc_info=True)
            error = CapabilityError("The AI model request failed")
            self._finish("failed", error)
            self._queue.put_nowait(error)
            return

        self.answer = answer
        self._finish("completed")
        self._queue.put_nowait(_END)

    def _finish(self, outcome: str, error: Optional[ResearchDeskError] = None) -> None:
        if self.outcome is not None:
            return
        self.outcome = outcome
        self.error = error
        self.engine._release(self.conversation_id, self)
        elapsed = (time.time() - self._started_at) * 1000
        if outcome == "completed":
            logger.info(f"Conversation {self.conversation_id}: answer completed in {elapsed:.0f}ms")
        elif outcome == "cancelled":
            logger.info(f"Conversation {self.conversation_id}: exchange cancelled after {elapsed:.0f}ms")
        else:
            logger.error(f"Conversation {self.conversation_id}: exchange failed ({error.kind}): {error.message}")

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        if self._cancelled:
            raise StopAsyncIteration
        # Finished and drained: repeat the ending instead of waiting on an empty queue
        if self.outcome is not None and self._queue.empty():
            if self.outcome == "failed":
                raise self.error
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END or item is _CANCELLED or self._cancelled:
            raise StopAsyncIteration
        if isinstance(item, ResearchDeskError):
            raise item
        self._delivered.append(item)
        return item

    async def cancel(self) -> bool:
        """
        Stop relaying and discard the partial answer.
        Returns False when the exchange had already finished.
        """
        if self.outcome is not None:
            return False
        self._cancelled = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        # A task cancelled before its first step never reaches _produce's handler
        self._finish("cancelled")
        if self.outcome != "cancelled":
            # Finished on its own while we were cancelling
            self._cancelled = False
            return False
        self._queue.put_nowait(_CANCELLED)
        return True

    async def aclose(self) -> None:
        await self.cancel()

    async def collect(self) -> Optional[str]:
        """Drain the stream; returns the full answer (None if cancelled)."""
        async for _ in self:
            pass
        return self.answer


class ConversationEngine:
    """
    Manages conversation state and exchanges.

    Handles:
    - Conversation creation per target (one per document/paper/batch, one per ad-hoc query)
    - Per-conversation mutual exclusion (Busy while an answer is streaming)
    - Turn bookkeeping with rollback of incomplete exchanges
    - Conversation summaries and deletion
    """

    def __init__(
        self,
        store: Store,
        assembler: ContextAssembler,
        client: CompletionClient,
        registry: ModelRegistry,
        timeout_seconds: float = 120.0,
        retries: int = 1,
    ):
        self.store = store
        self.assembler = assembler
        self.client = client
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self.retries = retries
        self._states: Dict[str, ConversationState] = {}
        self._streams: Dict[str, AnswerStream] = {}

    def open_conversation(self, target: TargetRef, title: Optional[str] = None) -> Conversation:
        """Get the conversation for a target, creating it if needed."""
        if not self.store.target_exists(target):
            raise ResolutionError(f"The {target.kind.value} for this conversation does not exist")
        if target.kind != TargetKind.QUERY:
            existing = self.store.find_conversation(target)
            if existing is not None:
                return existing
        conversation = self.store.create_conversation(target, title=title)
        logger.info(f"Opened conversation {conversation.id} for {target.kind.value} {target.target_id or ''}".rstrip())
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def state(self, conversation_id: str) -> ConversationState:
        return self._states.get(conversation_id, ConversationState.IDLE)

    def history(self, conversation_id: str) -> List[ConversationTurn]:
        self.get_conversation(conversation_id)
        return self.store.list_turns(conversation_id)

    def get_conversation_summaries(self) -> List[dict]:
        """All conversations, most recently updated first."""
        summaries = []
        for conversation in self.store.list_conversations():
            turns = self.store.list_turns(conversation.id)
            first_message = next((t.content for t in turns if t.role == "user"), "")
            summaries.append({
                "conversation_id": conversation.id,
                "target_kind": conversation.target_kind,
                "target_id": conversation.target_id,
                "first_message": first_message[:100],
                "message_count": len(turns),
                "last_updated": conversation.updated_at,
                "state": self.state(conversation.id).value,
            })
        return summaries

    @staticmethod
    def _split_pending(turns: List[ConversationTurn]) -> Tuple[List[ConversationTurn], Optional[ConversationTurn]]:
        """Separate an unanswered trailing user turn from the completed history."""
        if turns and turns[-1].role == "user":
            return turns[:-1], turns[-1]
        return turns, None

    async def send_message(
        self,
        conversation_id: str,
        user_text: str,
        model_config_id: Optional[str] = None,
    ) -> AnswerStream:
        """
        Start an exchange and return its live answer stream.

        Raises (before anything is recorded):
            InputError: empty message
            NotFoundError: unknown conversation
            BusyError: an exchange is already in flight on this conversation
            ResolutionError: the conversation's target was deleted
            ConfigurationError / NotFoundError: no usable model config
        """
        text = (user_text or "").strip()
        if not text:
            raise InputError("Message must not be empty")

        conversation = self.get_conversation(conversation_id)
        if self.state(conversation_id) == ConversationState.AWAITING_RESPONSE:
            raise BusyError("This conversation is still answering the previous message")
        # No await between the check above and this claim
        self._states[conversation_id] = ConversationState.AWAITING_RESPONSE

        try:
            model_config = self.registry.resolve(model_config_id)
            history, pending = self._split_pending(self.store.list_turns(conversation_id))

            # A dangling question from a failed exchange is reused or merged, never duplicated
            question = text
            if pending is not None and pending.content != text:
                question = f"{pending.content}\n\n{text}"
            elif pending is not None:
                question = pending.content

            target = TargetRef(TargetKind(conversation.target_kind), conversation.target_id)
            payload = self.assembler.assemble(
                target,
                [TurnRecord(t.role, t.content) for t in history],
                question,
                model_config=model_config,
            )

            if pending is None:
                self.store.append_turn(conversation_id, "user", question)
            elif pending.content != question:
                self.store.replace_turn_content(pending.id, question)
        except BaseException:
            self._states.pop(conversation_id, None)
            raise

        logger.info(
            f"Conversation {conversation_id}: sending {payload.size}/{payload.budget} "
            f"{self.assembler.meter.unit} to {model_config.provider}/{model_config.model_name}"
        )
        stream = AnswerStream(self, conversation_id, payload.to_messages(), model_config)
        self._streams[conversation_id] = stream
        stream.start()
        return stream

    def active_stream(self, conversation_id: str) -> Optional[AnswerStream]:
        return self._streams.get(conversation_id)

    def _record_answer(self, conversation_id: str, answer: str) -> None:
        self.store.append_turn(conversation_id, "assistant", answer)

    def _release(self, conversation_id: str, stream: AnswerStream) -> None:
        if self._streams.get(conversation_id) is stream:
            del self._streams[conversation_id]
        self._states.pop(conversation_id, None)

    async def cancel(self, conversation_id: str) -> bool:
        stream = self._streams.get(conversation_id)
        if stream is None:
            return False
        return await stream.cancel()

    async def delete_conversation(self, conversation_id: str) -> None:
        """Cancel any in-flight exchange, then delete the conversation and its turns."""
        await self.cancel(conversation_id)
        self.store.delete_conversation(conversation_id)
        self._states.pop(conversation_id, None)
        logger.info(f"Deleted conversation {conversation_id}")
