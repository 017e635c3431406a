"""ORM model for the SQL-backed document store.

Tables: documents.  One row per (collection, id) with the whole record as JSON.
``workflow_run_id`` and ``parent_id`` are copied out of the body into indexed
columns so run- and parent-scoped queries do not read the whole collection.
"""

from sqlalchemy import Column, String, DateTime, JSON, Index
from sqlalchemy.orm import DeclarativeBase
from datetime import datetime, timezone


class Base(DeclarativeBase):
    pass


class DocumentModel(Base):
    __tablename__ = "documents"
    collection = Column(String, primary_key=True)
    id = Column(String, primary_key=True)
    body = Column(JSON, nullable=False)
    workflow_run_id = Column(String, nullable=True)
    parent_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_documents_collection_created", "collection", "created_at"),
        Index("ix_documents_collection_run", "collection", "workflow_run_id"),
        Index("ix_documents_collection_parent", "collection", "parent_id"),
    )
