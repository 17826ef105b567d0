"""Run-related Pydantic schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from gapminer.config import settings


class PaperInput(BaseModel):
    """A source document reference supplied with a run."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_.:-]+$")
    title: str = Field(min_length=1)
    content_ref: str = Field(min_length=1, alias="contentRef")
    year: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RunConfig(BaseModel):
    """Per-run tuning parameters."""

    max_iterations: int = Field(
        default=settings.DEFAULT_MAX_ITERATIONS, ge=1, le=settings.MAX_ITERATIONS_LIMIT
    )
    convergence_threshold: float = Field(
        default=settings.DEFAULT_CONVERGENCE_THRESHOLD, ge=0.0, le=1.0
    )
    domains: List[str] = Field(default_factory=list)


class RunCreate(BaseModel):
    """Schema for creating a new run."""

    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(min_length=1)
    papers: List[PaperInput] = Field(default_factory=list)
    domains: List[str] = Field(default_factory=list)
    max_iterations: int = Field(
        default=settings.DEFAULT_MAX_ITERATIONS,
        ge=1,
        le=settings.MAX_ITERATIONS_LIMIT,
        alias="maxIterations",
    )
    convergence_threshold: float = Field(
        default=settings.DEFAULT_CONVERGENCE_THRESHOLD,
        ge=0.0,
        le=1.0,
        alias="convergenceThreshold",
    )
    owner_id: str = "anonymous"

    def run_config(self) -> RunConfig:
        return RunConfig(
            max_iterations=self.max_iterations,
            convergence_threshold=self.convergence_threshold,
            domains=self.domains,
        )


class RunResponse(BaseModel):
    """Response after creating a run."""

    run_id: UUID
    query: str
    status: str
    paper_count: int


class RunListEntry(BaseModel):
    """Run row in an owner's run listing."""

    run_id: UUID
    owner_id: str
    query: str
    status: str
    current_iteration: int
    progress_percentage: float
    paper_count: int
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RunStartResponse(BaseModel):
    """Response after starting a run."""

    run_id: UUID
    message: str


class RunStatus(BaseModel):
    """Status snapshot read by pollers."""

    run_id: UUID
    status: str
    current_iteration: int
    progress_percentage: float
    last_log_message: Optional[str] = None
    error_message: Optional[str] = None


class RankedGapOut(BaseModel):
    """A ranked gap as exposed in final results."""

    title: str
    confidence: float
    evidence: Dict[str, Any]
    recommendation: str
    rationale: str = ""


class IterationSummary(BaseModel):
    """One entry of the iteration history."""

    model_config = ConfigDict(populate_by_name=True)

    iteration: int
    status: str
    gaps_found: int = Field(alias="gapsFound")
    convergence_score: Optional[float] = Field(default=None, alias="convergenceScore")
    processing_time: Optional[float] = Field(default=None, alias="processingTime")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")


class RunResults(BaseModel):
    """Final results, serialised with camelCase keys into Run.results."""

    model_config = ConfigDict(populate_by_name=True)

    ranked_gaps: List[RankedGapOut] = Field(default_factory=list, alias="rankedGaps")
    iteration_history: List[IterationSummary] = Field(default_factory=list, alias="iterationHistory")
    final_iteration: Optional[int] = Field(default=None, alias="finalIteration")
    converged: bool = False
    coverage: Dict[str, int] = Field(default_factory=dict)
    synthesis: str = ""


class RunResultsResponse(BaseModel):
    """Results response."""

    run_id: UUID
    status: str
    results: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


class LogEntry(BaseModel):
    """Log row as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    level: str
    message: str
    created_at: Optional[datetime] = None


class AgentSummary(BaseModel):
    """Agent row as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    agent_id: str
    agent_type: str
    iteration_number: int
    status: str
    processing_time: Optional[float] = None
    error_message: Optional[str] = None


class RunStartRequest(BaseModel):
    """Optional body of a start request."""

    papers: List[PaperInput] = Field(default_factory=list)


class ContextSummary(BaseModel):
    """Active context as listed by the API (value omitted)."""

    context_id: UUID
    key: str
    version: int
    summary: Optional[str] = None
    size_bytes: int
    storage_type: str
    updated_at: Optional[datetime] = None


class ContextVersionEntry(BaseModel):
    """One entry of a context's version history."""

    model_config = ConfigDict(from_attributes=True)

    context_id: UUID
    version: int
    operation: str
    size_bytes: int
    storage_path: Optional[str] = None
    diff_summary: Optional[str] = None
    created_at: Optional[datetime] = None
