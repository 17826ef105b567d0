"""Context and ContextVersion models."""

import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)

from gapminer.database import Base, JSONType, utcnow

CONTEXT_OPERATIONS = ("create", "append", "overwrite")


class Context(Base):
    """One version of a run-scoped context value.

    Small values live in ``value``; larger ones are offloaded to blob storage
    and only ``storage_path``, ``size_bytes`` and ``summary`` are kept here.
    """

    __tablename__ = "contexts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid, ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    agent_ref = Column(Uuid, ForeignKey("agents.id", ondelete="SET NULL"))
    context_key = Column(Text, nullable=False)
    value = Column(JSONType)  # Inline value, null when offloaded
    storage_path = Column(Text)  # Blob path, null when inline
    storage_type = Column(Text, nullable=False)  # 'database', 'local_file'
    size_bytes = Column(BigInteger, nullable=False, default=0)
    version = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    summary = Column(Text)
    metadata_ = Column("metadata", JSONType)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("run_id", "context_key", "version", name="uq_contexts_run_key_version"),
        Index(
            "uq_contexts_run_key_active",
            "run_id",
            "context_key",
            unique=True,
            postgresql_where=is_active.is_(True),
            sqlite_where=is_active.is_(True),
        ),
    )


class ContextVersion(Base):
    """Append-only audit record for each context write."""

    __tablename__ = "context_versions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    context_id = Column(Uuid, ForeignKey("contexts.id", ondelete="CASCADE"), nullable=False)
    version = Column(Integer, nullable=False)
    storage_path = Column(Text)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    operation = Column(Text, nullable=False)  # 'create', 'append', 'overwrite'
    modified_by_agent = Column(Uuid, ForeignKey("agents.id", ondelete="SET NULL"))
    diff_summary = Column(Text)
    metadata_ = Column("metadata", JSONType)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (UniqueConstraint("context_id", "version", name="uq_context_versions_context_version"),)
