"""
Logging configuration for ResearchDesk.
Provides consistent logging across all modules and keeps provider
credentials out of every log line.
"""
import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Iterable, Optional, Set


class SecretRedactingFilter(logging.Filter):
    """Replaces registered secrets (API keys) in formatted log messages."""

    def __init__(self):
        super().__init__()
        self._secrets: Set[str] = set()

    def register(self, secrets: Iterable[Optional[str]]) -> None:
        for secret in secrets:
            # Very short values would redact ordinary words
            if secret and len(secret) >= 6:
                self._secrets.add(secret)

    def redact(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, "***")
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if self._secrets:
            message = self.redact(record.getMessage())
            record.msg = message
            record.args = None
        return True


# Shared by all handlers created in setup_logging
secret_filter = SecretRedactingFilter()


def register_secrets(*secrets: Optional[str]) -> None:
    """Register values that must never appear in log output."""
    secret_filter.register(secrets)


def setup_logging(level: str = "INFO", log_file: str = None):
    """
    Configure logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file. If None, only logs to console.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(detailed_formatter)
    console_handler.addFilter(secret_filter)

    handlers = [console_handler]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        # Rotate after 10MB, keep 5 backup files
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(secret_filter)
        handlers.append(file_handler)

    logging.basicConfig(
        level=numeric_level,
        handlers=handlers,
        force=True
    )

    # Provider SDKs log full request metadata at INFO
    for noisy in ("urllib3", "httpx", "httpcore", "openai", "ollama", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {level} level")
    if log_file:
        logger.info(f"Logging to file: {log_file}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module (usually __name__)."""
    return logging.getLogger(name)
