"""
Database models for ResearchDesk.

SCHEMA OVERVIEW
===============================================================================

TABLE: documents - Uploaded PDFs / text with extracted findings
-------------------------------------------------------------------------------
id                 VARCHAR(36)   PRIMARY KEY        uuid4
filename           TEXT          NOT NULL
title              TEXT                             From extraction (NULL until extracted)
authors            JSON          DEFAULT []         Ordered author names
year               INTEGER                          Publication year (optional)
doi                TEXT                             DOI (optional)
normalized_text    TEXT          NOT NULL           Normalizer output, "" when unextractable
markdown           TEXT          NOT NULL           Markdown rendering for display
background         TEXT          \
research_question  TEXT           |  Extracted field set: all NULL, or written
major_findings     TEXT           |  together by one successful extraction run
suggestions        TEXT          /
extraction_status  VARCHAR       DEFAULT 'pending'  'pending' | 'extracted' | 'failed' | 'unextractable'
extraction_error   TEXT                             Last failure message (NULL on success)
extracted_at       TIMESTAMP                        Set with the field set
created_at         TIMESTAMP     DEFAULT NOW()
updated_at         TIMESTAMP

INDEX: idx_documents_extraction_status ON extraction_status


TABLE: searches / papers - Catalog results owned by a user query
-------------------------------------------------------------------------------
searches.id        VARCHAR(36)   PRIMARY KEY
searches.query     TEXT          NOT NULL
papers.id          VARCHAR(36)   PRIMARY KEY
papers.search_id   VARCHAR(36)   FK searches.id ON DELETE CASCADE
papers.*           title, authors, year, doi, abstract, venue, url


TABLE: batches / batch_memberships - Many-to-many grouping of documents
-------------------------------------------------------------------------------
batches.id                 VARCHAR(36)  PRIMARY KEY
batches.name               TEXT         NOT NULL
batch_memberships.id       SERIAL       PRIMARY KEY   Tie-break for addition order
batch_memberships.batch_id     FK batches.id   ON DELETE CASCADE
batch_memberships.document_id  FK documents.id ON DELETE CASCADE
batch_memberships.added_at TIMESTAMP

UNIQUE: (batch_id, document_id)


TABLE: conversations / conversation_turns - Chat history per target
-------------------------------------------------------------------------------
conversations.target_kind   VARCHAR   'document' | 'paper' | 'batch' | 'query'
conversations.target_id     VARCHAR   NULL for 'query'
conversation_turns.position INTEGER   0, 1, 2... strictly increasing per conversation
conversation_turns.role     VARCHAR   'user' | 'assistant'

UNIQUE: (conversation_id, position)
INDEX:  idx_conversations_target ON (target_kind, target_id)


TABLE: model_configs - AI provider bindings
-------------------------------------------------------------------------------
provider           VARCHAR       'ollama' | 'openai'
api_key            TEXT          Never logged or returned by the API
context_budget     INTEGER       Per-model context ceiling (NULL = settings default)
is_default         BOOLEAN       Exactly one TRUE row when any rows exist

UNIQUE INDEX: uq_model_configs_single_default ON is_default WHERE is_default
"""
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text,
    UniqueConstraint, func, text,
)
from .database import Base


class Document(Base):
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True)
    filename = Column(Text, nullable=False)
    title = Column(Text)
    authors = Column(JSON, nullable=False, default=list)
    year = Column(Integer)
    doi = Column(Text)

    normalized_text = Column(Text, nullable=False, default="")
    markdown = Column(Text, nullable=False, default="")

    # Extracted field set
    background = Column(Text)
    research_question = Column(Text)
    major_findings = Column(Text)
    suggestions = Column(Text)

    extraction_status = Column(String, nullable=False, default="pending")
    extraction_error = Column(Text)
    extracted_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime)

    __table_args__ = (
        Index("idx_documents_extraction_status", "extraction_status"),
    )

    @property
    def has_extraction(self) -> bool:
        return self.extracted_at is not None


class Search(Base):
    __tablename__ = "searches"

    id = Column(String(36), primary_key=True)
    query = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


class Paper(Base):
    """Catalog metadata attached to one Search (populated by the search provider)."""
    __tablename__ = "papers"

    id = Column(String(36), primary_key=True)
    search_id = Column(String(36), ForeignKey("searches.id", ondelete="CASCADE"), nullable=False)
    title = Column(Text, nullable=False)
    authors = Column(JSON, nullable=False, default=list)
    year = Column(Integer)
    doi = Column(Text)
    abstract = Column(Text)
    venue = Column(Text)
    url = Column(Text)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_papers_search_id", "search_id"),
    )


class Batch(Base):
    __tablename__ = "batches"

    id = Column(String(36), primary_key=True)
    name = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


class BatchMembership(Base):
    __tablename__ = "batch_memberships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String(36), ForeignKey("batches.id", ondelete="CASCADE"), nullable=False)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    added_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("batch_id", "document_id", name="uq_batch_memberships_pair"),
        Index("idx_batch_memberships_document", "document_id"),
    )


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True)
    target_kind = Column(String, nullable=False)
    target_id = Column(String(36))
    title = Column(Text)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_conversations_target", "target_kind", "target_id"),
    )


class ConversationTurn(Base):
    __tablename__ = "conversation_turns"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False)
    role = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("conversation_id", "position", name="uq_conversation_turns_position"),
    )


class ModelConfig(Base):
    __tablename__ = "model_configs"

    id = Column(String(36), primary_key=True)
    name = Column(Text, nullable=False)
    provider = Column(String, nullable=False)
    api_key = Column(Text)
    base_url = Column(Text)
    model_name = Column(Text, nullable=False)
    context_budget = Column(Integer)
    is_default = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index(
            "uq_model_configs_single_default",
            "is_default",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )
