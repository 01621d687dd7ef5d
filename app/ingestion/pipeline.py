"""
Ingestion pipeline: upload -> normalize -> store -> extract.

Extraction runs per document; a batch run uses a bounded worker pool and a
failure on one document never stops the others.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence
import asyncio
import time

from app.db.models import Document
from app.db.store import Store
from app.errors import ExtractionFailure, InputError, ResearchDeskError
from app.ingestion.extraction import ExtractionEngine
from app.ingestion.normalizer import normalize
from app.ingestion.pdf_text import extract_pdf_text
from app.logging_config import get_logger
from app.models import ModelConfigSnapshot

logger = get_logger(__name__)


@dataclass
class BatchExtractionReport:
    """Per-document outcome of extract_many()."""
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)  # document_id -> error message

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


class IngestionPipeline:
    def __init__(
        self,
        store: Store,
        engine: ExtractionEngine,
        max_normalized_chars: int = 200_000,
        concurrency: int = 4,
    ):
        self.store = store
        self.engine = engine
        self.max_normalized_chars = max_normalized_chars
        self.concurrency = max(1, concurrency)

    def ingest_text(self, filename: str, raw_text: Optional[str]) -> Document:
        """Normalize and store; unusable text is stored with status 'unextractable'."""
        normalized = normalize(raw_text, max_chars=self.max_normalized_chars)
        if normalized.unextractable:
            logger.warning(f"{filename}: text is unextractable ({normalized.reason})")
        return self.store.create_document(filename, normalized)

    def ingest_pdf(self, filename: str, pdf_bytes: bytes) -> Document:
        return self.ingest_text(filename, extract_pdf_text(pdf_bytes))

    async def run_extraction(self, document_id: str, model_config: ModelConfigSnapshot) -> Document:
        """
        Extract and apply the field set for one document.

        Raises:
            NotFoundError: unknown document
            InputError: document has no usable text
            ExtractionFailure: AI extraction failed after retry (fields unchanged,
                document flagged 'failed')
        """
        doc = self.store.require_document(document_id)
        if doc.extraction_status == "unextractable" or not doc.normalized_text.strip():
            raise InputError(f"Document {document_id} has no extractable text")

        logger.info(f"Extracting fields for document {document_id} ({doc.filename})")
        result = await self.engine.extract(doc.normalized_text, model_config)
        if not result.succeeded:
            self.store.mark_extraction_failed(document_id, result.error or "extraction failed")
            raise ExtractionFailure(f"Extraction failed for {doc.filename}: {result.error}")

        return self.store.apply_extraction(document_id, result)

    async def extract_many(
        self, document_ids: Sequence[str], model_config: ModelConfigSnapshot
    ) -> BatchExtractionReport:
        """Extract several documents with at most `concurrency` in flight."""
        semaphore = asyncio.Semaphore(self.concurrency)
        report = BatchExtractionReport()
        start = time.time()

        async def worker(document_id: str):
            async with semaphore:
                try:
                    await self.run_extraction(document_id, model_config)
                    report.succeeded.append(document_id)
                except ResearchDeskError as e:
                    logger.warning(f"Document {document_id} not extracted: {e.message}")
                    report.failed[document_id] = e.message
                except Exception as e:
                    logger.error(f"Document {document_id} extraction crashed: {type(e).__name__}", exc_info=True)
                    report.failed[document_id] = f"Unexpected extraction error ({type(e).__name__})"

        # Preserve input order in the report regardless of completion order
        await asyncio.gather(*(worker(doc_id) for doc_id in dict.fromkeys(document_ids)))
        order = {doc_id: i for i, doc_id in enumerate(document_ids)}
        report.succeeded.sort(key=order.__getitem__)

        logger.info(
            f"Batch extraction: {len(report.succeeded)}/{report.total} succeeded "
            f"in {(time.time() - start) * 1000:.0f}ms"
        )
        return report
