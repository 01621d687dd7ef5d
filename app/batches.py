"""
Batch organizer: named groupings of documents.

Pure relationship bookkeeping over the membership join table. A document
can sit in many batches; a (batch, document) pair is stored at most once.
"""
from typing import Iterable, List

from app.db.models import Batch, Document
from app.db.store import Store
from app.errors import NotFoundError
from app.logging_config import get_logger

logger = get_logger(__name__)


class BatchOrganizer:
    def __init__(self, store: Store):
        self.store = store

    def create_batch(self, name: str) -> Batch:
        name = (name or "").strip()
        if not name:
            raise ValueError("Batch name must not be empty")
        batch = self.store.create_batch(name)
        logger.info(f"Created batch {batch.id} '{name}'")
        return batch

    def list_batches(self) -> List[Batch]:
        return self.store.list_batches()

    def get_batch(self, batch_id: str) -> Batch:
        batch = self.store.get_batch(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        return batch

    def rename_batch(self, batch_id: str, name: str) -> Batch:
        return self.store.rename_batch(batch_id, name.strip())

    def add_document(self, batch_id: str, document_id: str) -> bool:
        """Add a document; a no-op (returns False) if it is already a member."""
        added = self.store.add_membership(batch_id, document_id)
        if added:
            logger.info(f"Added document {document_id} to batch {batch_id}")
        else:
            logger.debug(f"Document {document_id} already in batch {batch_id}")
        return added

    def add_documents(self, batch_id: str, document_ids: Iterable[str]) -> int:
        """Add several documents in order; returns how many were new."""
        return sum(1 for doc_id in document_ids if self.add_document(batch_id, doc_id))

    def remove_document(self, batch_id: str, document_id: str) -> bool:
        return self.store.remove_membership(batch_id, document_id)

    def list_documents(self, batch_id: str) -> List[Document]:
        """Member documents ordered by when they were added."""
        return self.store.list_batch_documents(batch_id)

    def batches_for_document(self, document_id: str) -> List[Batch]:
        self.store.require_document(document_id)
        return self.store.batches_for_document(document_id)

    def delete_batch(self, batch_id: str) -> None:
        """Delete the batch and its memberships; documents are kept."""
        self.store.delete_batch(batch_id)
        logger.info(f"Deleted batch {batch_id}")
