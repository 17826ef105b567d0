"""Iteration model."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, Text, UniqueConstraint, Uuid

from gapminer.database import Base, JSONType, utcnow


class Iteration(Base):
    """One micro -> meso -> meta pass within a run."""

    __tablename__ = "iterations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid, ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    iteration_number = Column(Integer, nullable=False)
    status = Column(Text, nullable=False, default="pending")  # 'pending', 'running', 'completed', 'failed'
    gaps_found = Column(Integer, nullable=False, default=0)
    insights = Column(JSONType)
    convergence_score = Column(Float)  # Null for iteration 1
    processing_time = Column(Float)  # Seconds
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    __table_args__ = (UniqueConstraint("run_id", "iteration_number", name="uq_iterations_run_number"),)
