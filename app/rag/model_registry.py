"""
Process-wide default model configuration.

The store keeps exactly one default row; the registry mirrors it as an
immutable snapshot that is swapped in one assignment under a lock, so
readers always see a single consistent default.
"""
from typing import List, Optional
import threading

from app.db.models import ModelConfig
from app.db.store import Store
from app.errors import ConfigurationError, NotFoundError
from app.logging_config import get_logger, register_secrets
from app.models import ModelConfigSnapshot

logger = get_logger(__name__)


def snapshot_of(config: ModelConfig) -> ModelConfigSnapshot:
    return ModelConfigSnapshot(
        config_id=config.id,
        name=config.name,
        provider=config.provider,
        model_name=config.model_name,
        api_key=config.api_key,
        base_url=config.base_url,
        context_budget=config.context_budget,
    )


class ModelRegistry:
    def __init__(self, store: Store):
        self.store = store
        self._lock = threading.Lock()
        self._default: Optional[ModelConfigSnapshot] = None

    def load(self) -> Optional[ModelConfigSnapshot]:
        """Initialise the in-memory default from the store."""
        config = self.store.get_default_model_config()
        snapshot = snapshot_of(config) if config else None
        with self._lock:
            self._default = snapshot
        if snapshot:
            register_secrets(snapshot.api_key)
            logger.info(f"Default model: {snapshot.name} ({snapshot.provider}/{snapshot.model_name})")
        else:
            logger.warning("No default model configured")
        return snapshot

    def current(self) -> Optional[ModelConfigSnapshot]:
        return self._default

    def create(
        self,
        name: str,
        provider: str,
        model_name: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        context_budget: Optional[int] = None,
        make_default: bool = False,
    ) -> ModelConfigSnapshot:
        register_secrets(api_key)
        with self._lock:
            config = self.store.create_model_config(
                name=name,
                provider=provider,
                model_name=model_name,
                api_key=api_key,
                base_url=base_url,
                context_budget=context_budget,
                make_default=make_default,
            )
            snapshot = snapshot_of(config)
            if config.is_default:
                self._default = snapshot
        return snapshot

    def set_default(self, config_id: str) -> ModelConfigSnapshot:
        """Atomically make `config_id` the default in the store and in memory."""
        with self._lock:
            config = self.store.set_default_model_config(config_id)
            self._default = snapshot_of(config)
        logger.info(f"Default model switched to {config.name} ({config.provider}/{config.model_name})")
        return self._default

    def delete(self, config_id: str) -> None:
        with self._lock:
            self.store.delete_model_config(config_id)
            config = self.store.get_default_model_config()
            self._default = snapshot_of(config) if config else None

    def list(self) -> List[ModelConfigSnapshot]:
        return [snapshot_of(c) for c in self.store.list_model_configs()]

    def resolve(self, config_id: Optional[str] = None) -> ModelConfigSnapshot:
        """Explicit config if given, otherwise the current default."""
        if config_id:
            config = self.store.get_model_config(config_id)
            if config is None:
                raise NotFoundError(f"Model config {config_id} not found")
            return snapshot_of(config)
        default = self._default
        if default is None:
            raise ConfigurationError("No AI model is configured; add one and mark it as default")
        return default
