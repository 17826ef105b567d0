"""Result and Log models."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, Uuid

from gapminer.database import Base, JSONType, utcnow

RESULT_TYPES = ("gaps", "clusters", "synthesis")
LOG_LEVELS = ("info", "warning", "error", "debug")


class Result(Base):
    """Stage output persisted by the agent that produced it."""

    __tablename__ = "results"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid, ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    agent_ref = Column(Uuid, ForeignKey("agents.id", ondelete="SET NULL"))
    iteration_number = Column(Integer, nullable=False)
    result_type = Column(Text, nullable=False)  # 'gaps', 'clusters', 'synthesis'
    data = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (Index("idx_results_run_iteration", "run_id", "iteration_number"),)


class Log(Base):
    """Run-visible log entry."""

    __tablename__ = "logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid, ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    agent_ref = Column(Uuid, ForeignKey("agents.id", ondelete="SET NULL"))
    level = Column(Text, nullable=False, default="info")  # 'info', 'warning', 'error', 'debug'
    message = Column(Text, nullable=False)
    metadata_ = Column("metadata", JSONType)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (Index("idx_logs_run_created", "run_id", "created_at"),)
