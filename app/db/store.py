"""
Storage layer for ResearchDesk.

Store wraps a SQLAlchemy session factory and exposes the CRUD operations the
pipeline needs. Each public method runs in its own transaction; operations
with cross-row invariants (extraction apply, default model swap, membership
insert, cascading deletes) are single transactions.
"""
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional, Sequence
import uuid

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.errors import NotFoundError
from app.logging_config import get_logger
from app.models import ExtractionResult, NormalizedText, TargetKind, TargetRef
from .database import Base, create_db_engine, create_session_factory
from .models import (
    Batch, BatchMembership, Conversation, ConversationTurn, Document, ModelConfig, Paper, Search,
)

logger = get_logger(__name__)

SUPPORTED_PROVIDERS = ("ollama", "openai")


def utcnow() -> datetime:
    """Naive UTC timestamp (stored columns carry no timezone)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Store:
    """CRUD collaborator for documents, batches, conversations and model configs."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str, create_tables: bool = True) -> "Store":
        engine = create_db_engine(database_url)
        if create_tables:
            Base.metadata.create_all(bind=engine)
        return cls(create_session_factory(engine))

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ============================================================================
    # DOCUMENTS
    # ============================================================================

    def create_document(self, filename: str, normalized: NormalizedText) -> Document:
        now = utcnow()
        doc = Document(
            id=new_id(),
            filename=filename,
            authors=[],
            normalized_text=normalized.text,
            markdown=normalized.markdown,
            extraction_status="unextractable" if normalized.unextractable else "pending",
            extraction_error=normalized.reason if normalized.unextractable else None,
            created_at=now,
            updated_at=now,
        )
        with self.session() as session:
            session.add(doc)
        logger.info(f"Stored document {doc.id} ({filename}), status={doc.extraction_status}")
        return doc

    def get_document(self, document_id: str) -> Optional[Document]:
        with self.session() as session:
            return session.get(Document, document_id)

    def require_document(self, document_id: str) -> Document:
        doc = self.get_document(document_id)
        if doc is None:
            raise NotFoundError(f"Document {document_id} not found")
        return doc

    def list_documents(self) -> List[Document]:
        with self.session() as session:
            return session.query(Document).order_by(Document.created_at.desc(), Document.id).all()

    def apply_extraction(self, document_id: str, result: ExtractionResult) -> Document:
        """Replace the whole extracted field set in one transaction."""
        if not result.succeeded:
            raise ValueError("Refusing to apply a failed extraction result")

        with self.session() as session:
            doc = session.get(Document, document_id)
            if doc is None:
                raise NotFoundError(f"Document {document_id} not found")

            now = utcnow()
            doc.title = result.title or None
            doc.authors = list(result.authors)
            doc.year = result.year
            doc.doi = result.doi or None
            doc.background = result.background
            doc.research_question = result.research_question
            doc.major_findings = result.major_findings
            doc.suggestions = result.suggestions
            doc.extraction_status = "extracted"
            doc.extraction_error = None
            doc.extracted_at = now
            doc.updated_at = now
            return doc

    def mark_extraction_failed(self, document_id: str, message: str) -> Document:
        """Flag a failed run; the extracted field set is left as it was."""
        with self.session() as session:
            doc = session.get(Document, document_id)
            if doc is None:
                raise NotFoundError(f"Document {document_id} not found")
            doc.extraction_status = "failed"
            doc.extraction_error = message
            doc.updated_at = utcnow()
            return doc

    def delete_document(self, document_id: str) -> None:
        """Delete a document with its memberships and conversations; batches survive."""
        with self.session() as session:
            doc = session.get(Document, document_id)
            if doc is None:
                raise NotFoundError(f"Document {document_id} not found")
            session.query(BatchMembership).filter(BatchMembership.document_id == document_id).delete(
                synchronize_session=False
            )
            self._delete_conversations_for(session, TargetKind.DOCUMENT, [document_id])
            session.delete(doc)
        logger.info(f"Deleted document {document_id}")

    # ============================================================================
    # SEARCHES & PAPERS (populated by the external search provider)
    # ============================================================================

    def create_search(self, query: str) -> Search:
        search = Search(id=new_id(), query=query, created_at=utcnow())
        with self.session() as session:
            session.add(search)
        return search

    def get_search(self, search_id: str) -> Optional[Search]:
        with self.session() as session:
            return session.get(Search, search_id)

    def add_paper(
        self,
        search_id: str,
        title: str,
        authors: Optional[Sequence[str]] = None,
        year: Optional[int] = None,
        doi: Optional[str] = None,
        abstract: Optional[str] = None,
        venue: Optional[str] = None,
        url: Optional[str] = None,
    ) -> Paper:
        with self.session() as session:
            if session.get(Search, search_id) is None:
                raise NotFoundError(f"Search {search_id} not found")
            paper = Paper(
                id=new_id(),
                search_id=search_id,
                title=title,
                authors=list(authors or []),
                year=year,
                doi=doi,
                abstract=abstract,
                venue=venue,
                url=url,
                created_at=utcnow(),
            )
            session.add(paper)
            return paper

    def get_paper(self, paper_id: str) -> Optional[Paper]:
        with self.session() as session:
            return session.get(Paper, paper_id)

    def list_papers(self, search_id: str) -> List[Paper]:
        with self.session() as session:
            return (
                session.query(Paper)
                .filter(Paper.search_id == search_id)
                .order_by(Paper.created_at, Paper.id)
                .all()
            )

    def delete_search(self, search_id: str) -> None:
        """Delete a search, its papers, and conversations about those papers."""
        with self.session() as session:
            search = session.get(Search, search_id)
            if search is None:
                raise NotFoundError(f"Search {search_id} not found")
            paper_ids = [row.id for row in session.query(Paper.id).filter(Paper.search_id == search_id)]
            self._delete_conversations_for(session, TargetKind.PAPER, paper_ids)
            session.query(Paper).filter(Paper.search_id == search_id).delete(synchronize_session=False)
            session.delete(search)

    # ============================================================================
    # BATCHES & MEMBERSHIPS
    # ============================================================================

    def create_batch(self, name: str) -> Batch:
        batch = Batch(id=new_id(), name=name, created_at=utcnow())
        with self.session() as session:
            session.add(batch)
        return batch

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        with self.session() as session:
            return session.get(Batch, batch_id)

    def list_batches(self) -> List[Batch]:
        with self.session() as session:
            return session.query(Batch).order_by(Batch.created_at.desc(), Batch.id).all()

    def rename_batch(self, batch_id: str, name: str) -> Batch:
        with self.session() as session:
            batch = session.get(Batch, batch_id)
            if batch is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            batch.name = name
            return batch

    def delete_batch(self, batch_id: str) -> None:
        """Delete a batch and its memberships; member documents are untouched."""
        with self.session() as session:
            batch = session.get(Batch, batch_id)
            if batch is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            session.query(BatchMembership).filter(BatchMembership.batch_id == batch_id).delete(
                synchronize_session=False
            )
            self._delete_conversations_for(session, TargetKind.BATCH, [batch_id])
            session.delete(batch)

    def add_membership(self, batch_id: str, document_id: str) -> bool:
        """
        Insert (batch, document) if absent. Returns True when a row was added,
        False when the pair already existed.
        """
        with self.session() as session:
            if session.get(Batch, batch_id) is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            if session.get(Document, document_id) is None:
                raise NotFoundError(f"Document {document_id} not found")

            values = {"batch_id": batch_id, "document_id": document_id, "added_at": utcnow()}
            dialect = session.get_bind().dialect.name
            if dialect in ("postgresql", "sqlite"):
                if dialect == "postgresql":
                    from sqlalchemy.dialects.postgresql import insert
                else:
                    from sqlalchemy.dialects.sqlite import insert
                stmt = insert(BatchMembership).values(**values).on_conflict_do_nothing(
                    index_elements=["batch_id", "document_id"]
                )
                return session.execute(stmt).rowcount == 1

        # Other backends: rely on the unique constraint
        try:
            with self.session() as session:
                session.add(BatchMembership(**values))
            return True
        except IntegrityError:
            return False

    def remove_membership(self, batch_id: str, document_id: str) -> bool:
        with self.session() as session:
            if session.get(Batch, batch_id) is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            deleted = (
                session.query(BatchMembership)
                .filter(BatchMembership.batch_id == batch_id, BatchMembership.document_id == document_id)
                .delete(synchronize_session=False)
            )
            return deleted > 0

    def list_batch_documents(self, batch_id: str) -> List[Document]:
        """Member documents in the order they were added."""
        with self.session() as session:
            if session.get(Batch, batch_id) is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            return (
                session.query(Document)
                .join(BatchMembership, BatchMembership.document_id == Document.id)
                .filter(BatchMembership.batch_id == batch_id)
                .order_by(BatchMembership.added_at, BatchMembership.id)
                .all()
            )

    def count_memberships(self, batch_id: str, document_id: str) -> int:
        with self.session() as session:
            return (
                session.query(func.count(BatchMembership.id))
                .filter(BatchMembership.batch_id == batch_id, BatchMembership.document_id == document_id)
                .scalar()
            )

    def batches_for_document(self, document_id: str) -> List[Batch]:
        with self.session() as session:
            return (
                session.query(Batch)
                .join(BatchMembership, BatchMembership.batch_id == Batch.id)
                .filter(BatchMembership.document_id == document_id)
                .order_by(BatchMembership.added_at, BatchMembership.id)
                .all()
            )

    # ============================================================================
    # CONVERSATIONS & TURNS
    # ============================================================================

    def create_conversation(self, target: TargetRef, title: Optional[str] = None) -> Conversation:
        now = utcnow()
        conversation = Conversation(
            id=new_id(),
            target_kind=target.kind.value,
            target_id=target.target_id,
            title=title,
            created_at=now,
            updated_at=now,
        )
        with self.session() as session:
            session.add(conversation)
        return conversation

    def find_conversation(self, target: TargetRef) -> Optional[Conversation]:
        """Oldest conversation for a document/paper/batch target."""
        with self.session() as session:
            return (
                session.query(Conversation)
                .filter(
                    Conversation.target_kind == target.kind.value,
                    Conversation.target_id == target.target_id,
                )
                .order_by(Conversation.created_at, Conversation.id)
                .first()
            )

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self.session() as session:
            return session.get(Conversation, conversation_id)

    def list_conversations(self) -> List[Conversation]:
        with self.session() as session:
            return session.query(Conversation).order_by(Conversation.updated_at.desc(), Conversation.id).all()

    def list_turns(self, conversation_id: str) -> List[ConversationTurn]:
        with self.session() as session:
            return (
                session.query(ConversationTurn)
                .filter(ConversationTurn.conversation_id == conversation_id)
                .order_by(ConversationTurn.position)
                .all()
            )

    def append_turn(self, conversation_id: str, role: str, content: str) -> ConversationTurn:
        """Append a turn with the next position and a strictly later timestamp."""
        if role not in ("user", "assistant"):
            raise ValueError(f"Unknown role: {role}")

        with self.session() as session:
            conversation = session.get(Conversation, conversation_id)
            if conversation is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")

            last = (
                session.query(ConversationTurn)
                .filter(ConversationTurn.conversation_id == conversation_id)
                .order_by(ConversationTurn.position.desc())
                .first()
            )
            now = utcnow()
            if last is not None and now <= last.created_at:
                now = last.created_at + timedelta(microseconds=1)

            turn = ConversationTurn(
                conversation_id=conversation_id,
                position=0 if last is None else last.position + 1,
                role=role,
                content=content,
                created_at=now,
            )
            session.add(turn)
            conversation.updated_at = now
            return turn

    def replace_turn_content(self, turn_id: int, content: str) -> ConversationTurn:
        with self.session() as session:
            turn = session.get(ConversationTurn, turn_id)
            if turn is None:
                raise NotFoundError(f"Turn {turn_id} not found")
            turn.content = content
            return turn

    def delete_conversation(self, conversation_id: str) -> None:
        with self.session() as session:
            conversation = session.get(Conversation, conversation_id)
            if conversation is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            session.query(ConversationTurn).filter(
                ConversationTurn.conversation_id == conversation_id
            ).delete(synchronize_session=False)
            session.delete(conversation)

    def _delete_conversations_for(self, session: Session, kind: TargetKind, target_ids: List[str]) -> None:
        if not target_ids:
            return
        conversation_ids = [
            row.id
            for row in session.query(Conversation.id).filter(
                Conversation.target_kind == kind.value,
                Conversation.target_id.in_(target_ids),
            )
        ]
        if not conversation_ids:
            return
        session.query(ConversationTurn).filter(
            ConversationTurn.conversation_id.in_(conversation_ids)
        ).delete(synchronize_session=False)
        session.query(Conversation).filter(Conversation.id.in_(conversation_ids)).delete(
            synchronize_session=False
        )
        logger.info(f"Deleted {len(conversation_ids)} conversation(s) for {kind.value} target(s)")

    def target_exists(self, target: TargetRef) -> bool:
        if target.kind == TargetKind.QUERY:
            return True
        model = {
            TargetKind.DOCUMENT: Document,
            TargetKind.PAPER: Paper,
            TargetKind.BATCH: Batch,
        }[target.kind]
        with self.session() as session:
            return session.get(model, target.target_id) is not None

    # ============================================================================
    # MODEL CONFIGS
    # ============================================================================

    def create_model_config(
        self,
        name: str,
        provider: str,
        model_name: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        context_budget: Optional[int] = None,
        make_default: bool = False,
    ) -> ModelConfig:
        """Store a config. The first config ever stored becomes the default."""
        provider = provider.lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported provider: {provider}")

        with self.session() as session:
            has_default = session.query(ModelConfig.id).filter(ModelConfig.is_default.is_(True)).first() is not None
            config = ModelConfig(
                id=new_id(),
                name=name,
                provider=provider,
                api_key=api_key,
                base_url=base_url,
                model_name=model_name,
                context_budget=context_budget,
                is_default=False,
                updated_at=utcnow(),
            )
            session.add(config)
            session.flush()
            if make_default or not has_default:
                self._swap_default(session, config.id)
            return config

    def get_model_config(self, config_id: str) -> Optional[ModelConfig]:
        with self.session() as session:
            return session.get(ModelConfig, config_id)

    def list_model_configs(self) -> List[ModelConfig]:
        with self.session() as session:
            return session.query(ModelConfig).order_by(ModelConfig.name, ModelConfig.id).all()

    def get_default_model_config(self) -> Optional[ModelConfig]:
        with self.session() as session:
            return session.query(ModelConfig).filter(ModelConfig.is_default.is_(True)).first()

    def set_default_model_config(self, config_id: str) -> ModelConfig:
        """Make `config_id` the only default in a single transaction."""
        with self.session() as session:
            if session.get(ModelConfig, config_id) is None:
                raise NotFoundError(f"Model config {config_id} not found")
            return self._swap_default(session, config_id)

    def delete_model_config(self, config_id: str) -> None:
        """Delete a config; if it was the default, the most recently updated one takes over."""
        with self.session() as session:
            config = session.get(ModelConfig, config_id)
            if config is None:
                raise NotFoundError(f"Model config {config_id} not found")
            was_default = config.is_default
            session.delete(config)
            session.flush()
            if was_default:
                successor = session.query(ModelConfig).order_by(ModelConfig.updated_at.desc(), ModelConfig.id).first()
                if successor is not None:
                    self._swap_default(session, successor.id)

    def _swap_default(self, session: Session, config_id: str) -> ModelConfig:
        # Clear first: the partial unique index allows only one TRUE row at a time
        session.query(ModelConfig).filter(
            ModelConfig.is_default.is_(True), ModelConfig.id != config_id
        ).update({ModelConfig.is_default: False}, synchronize_session=False)
        session.flush()
        config = session.get(ModelConfig, config_id)
        config.is_default = True
        config.updated_at = utcnow()
        session.flush()
        return config
