"""Run and Paper models."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from gapminer.database import Base, JSONType, utcnow

RUN_STATUSES = ("pending", "running", "completed", "failed", "cancelled")
TERMINAL_RUN_STATUSES = ("completed", "failed", "cancelled")


class Run(Base):
    """Run represents one end-to-end gap-discovery execution."""

    __tablename__ = "runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Text, nullable=False)
    query = Column(Text, nullable=False)
    config = Column(JSONType, nullable=False)  # max_iterations, convergence_threshold, domains
    status = Column(Text, nullable=False, default="pending")
    current_iteration = Column(Integer, nullable=False, default=0)
    progress_percentage = Column(Float, nullable=False, default=0.0)
    results = Column(JSONType)
    error_message = Column(Text)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    papers = relationship("Paper", back_populates="run", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_runs_owner", "owner_id"),
        Index("idx_runs_status", "status"),
    )

    @property
    def max_iterations(self) -> int:
        return int((self.config or {}).get("max_iterations", 3))

    @property
    def convergence_threshold(self) -> float:
        return float((self.config or {}).get("convergence_threshold", 0.7))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class Paper(Base):
    """Source document attached to a run."""

    __tablename__ = "papers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid, ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    paper_id = Column(Text, nullable=False)  # Caller-supplied identifier
    title = Column(Text, nullable=False)
    content_ref = Column(Text, nullable=False)
    metadata_ = Column("metadata", JSONType)  # year, authors, venue, ...
    created_at = Column(DateTime(timezone=True), default=utcnow)

    run = relationship("Run", back_populates="papers")

    __table_args__ = (UniqueConstraint("run_id", "paper_id", name="uq_papers_run_paper"),)

    @property
    def year(self):
        return (self.metadata_ or {}).get("year")

    def as_payload(self) -> dict:
        """Value-only representation passed to agents."""
        return {
            "paper_id": self.paper_id,
            "title": self.title,
            "content_ref": self.content_ref,
            "year": self.year,
        }
