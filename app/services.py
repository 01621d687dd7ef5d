"""
Wiring for ResearchDesk components.

build_services() assembles the pipeline from Settings. The API uses one
instance per process; tests pass their own store and completion client.
"""
from dataclasses import dataclass
from typing import Optional

from app.batches import BatchOrganizer
from app.config import Settings
from app.db.store import Store
from app.ingestion.extraction import ExtractionEngine
from app.ingestion.pipeline import IngestionPipeline
from app.logging_config import get_logger
from app.rag.context_assembler import ContextAssembler
from app.rag.conversation_engine import ConversationEngine
from app.rag.generation import CompletionClient, CompletionRouter
from app.rag.model_registry import ModelRegistry

logger = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    store: Store
    registry: ModelRegistry
    client: CompletionClient
    pipeline: IngestionPipeline
    batches: BatchOrganizer
    assembler: ContextAssembler
    conversations: ConversationEngine


def build_services(
    settings: Settings,
    store: Optional[Store] = None,
    client: Optional[CompletionClient] = None,
) -> Services:
    store = store or Store.from_url(settings.database_url)
    client = client or CompletionRouter(timeout=settings.llm_timeout_seconds)

    registry = ModelRegistry(store)
    if registry.load() is None and settings.ollama_model:
        # Seed a local default so a fresh install can chat without setup
        registry.create(
            name="Local Ollama",
            provider="ollama",
            model_name=settings.ollama_model,
            base_url=settings.ollama_base_url,
        )
        logger.info(f"Seeded default model config: ollama/{settings.ollama_model}")

    extraction = ExtractionEngine(
        client,
        timeout_seconds=settings.llm_timeout_seconds,
        biblio_input_chars=settings.biblio_input_chars,
        narrative_input_chars=settings.narrative_input_chars,
    )
    pipeline = IngestionPipeline(
        store,
        extraction,
        max_normalized_chars=settings.max_normalized_chars,
        concurrency=settings.extraction_concurrency,
    )
    assembler = ContextAssembler(
        store,
        default_budget=settings.context_budget,
        budget_unit=settings.context_budget_unit,
        history_turns=settings.history_turns,
        excerpt_chars=settings.excerpt_chars,
    )
    conversations = ConversationEngine(
        store,
        assembler,
        client,
        registry,
        timeout_seconds=settings.llm_timeout_seconds,
        retries=settings.llm_retries,
    )
    return Services(
        settings=settings,
        store=store,
        registry=registry,
        client=client,
        pipeline=pipeline,
        batches=BatchOrganizer(store),
        assembler=assembler,
        conversations=conversations,
    )
