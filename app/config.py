"""
Runtime settings for ResearchDesk.

Values come from environment variables (optionally a .env file) and are
read once per process via get_settings(). Tests build Settings directly.
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional
import os

from dotenv import load_dotenv


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./data/researchdesk.db"
    log_level: str = "INFO"
    log_file: Optional[str] = "logs/researchdesk.log"

    # Fallback provider when no model config has been stored yet
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.1:8b"

    llm_timeout_seconds: float = 120.0
    llm_retries: int = 1

    # Context assembly
    context_budget: int = 12000
    context_budget_unit: str = "chars"  # "chars" | "tokens"
    history_turns: int = 8
    excerpt_chars: int = 1200

    # Ingestion / extraction
    max_normalized_chars: int = 200_000
    biblio_input_chars: int = 4000
    narrative_input_chars: int = 24000
    extraction_concurrency: int = 4
    max_upload_bytes: int = 20 * 1024 * 1024

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            database_url=os.getenv("DATABASE_URL", default=cls.database_url),
            log_level=os.getenv("LOG_LEVEL", default=cls.log_level),
            log_file=os.getenv("LOG_FILE", default=cls.log_file) or None,
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", default=cls.ollama_base_url),
            ollama_model=os.getenv("OLLAMA_MODEL", default=cls.ollama_model),
            llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", cls.llm_timeout_seconds),
            llm_retries=_env_int("LLM_RETRIES", cls.llm_retries),
            context_budget=_env_int("CONTEXT_BUDGET", cls.context_budget),
            context_budget_unit=os.getenv("CONTEXT_BUDGET_UNIT", default=cls.context_budget_unit).lower(),
            history_turns=_env_int("HISTORY_TURNS", cls.history_turns),
            excerpt_chars=_env_int("EXCERPT_CHARS", cls.excerpt_chars),
            max_normalized_chars=_env_int("MAX_NORMALIZED_CHARS", cls.max_normalized_chars),
            biblio_input_chars=_env_int("BIBLIO_INPUT_CHARS", cls.biblio_input_chars),
            narrative_input_chars=_env_int("NARRATIVE_INPUT_CHARS", cls.narrative_input_chars),
            extraction_concurrency=_env_int("EXTRACTION_CONCURRENCY", cls.extraction_concurrency),
            max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", cls.max_upload_bytes),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, loaded from the environment on first use."""
    return Settings.from_env()
