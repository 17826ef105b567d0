"""Agent model."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, Text, UniqueConstraint, Uuid

from gapminer.database import Base, JSONType, utcnow

AGENT_TYPES = ("micro", "meso", "meta")


class Agent(Base):
    """One agent instance's execution record, owned by that instance only."""

    __tablename__ = "agents"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid, ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    iteration_number = Column(Integer, nullable=False)
    agent_type = Column(Text, nullable=False)  # 'micro', 'meso', 'meta'
    agent_id = Column(Text, nullable=False)  # e.g. 'micro-2-paper7'
    status = Column(Text, nullable=False, default="pending")  # 'pending', 'running', 'completed', 'failed'
    input_data = Column(JSONType)
    output_data = Column(JSONType)  # Only when completed
    error_message = Column(Text)  # Only when failed
    processing_time = Column(Float)  # Seconds
    created_at = Column(DateTime(timezone=True), default=utcnow)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("run_id", "iteration_number", "agent_id", name="uq_agents_run_iteration_agent"),
        Index("idx_agents_run_iteration_type", "run_id", "iteration_number", "agent_type"),
    )
