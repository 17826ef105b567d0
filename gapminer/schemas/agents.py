"""Agent input/output schemas."""

from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


def _clamp(value: float) -> float:
    return min(max(float(value), 0.0), 1.0)


# Micro Agent
class PaperRef(BaseModel):
    """Value-only paper reference handed to a micro agent."""

    paper_id: str
    title: str
    content_ref: str
    year: Optional[int] = None


class MicroInput(BaseModel):
    """Input for MicroAgent."""

    run_id: UUID
    iteration: int
    agent_id: str
    question: str
    paper: PaperRef
    prior_context_key: Optional[str] = None  # Previous iteration's meta output


class Contribution(BaseModel):
    """A contribution claimed by a paper."""

    description: str
    type: str = "general"


class Limitation(BaseModel):
    """A limitation stated in or inferred from a paper."""

    description: str
    explicit: bool = True  # Stated by the authors vs inferred


class Methodology(BaseModel):
    """Methodological profile of a paper."""

    approach: str = ""
    techniques: List[str] = Field(default_factory=list)
    datasets: List[str] = Field(default_factory=list)


class GapAssessment(BaseModel):
    """How a paper bears on a gap from the previous iteration."""

    gap_title: str
    stance: str = "neutral"  # 'supports', 'contradicts', 'neutral'
    evidence: str = ""

    @field_validator("stance")
    @classmethod
    def _normalise_stance(cls, value: str) -> str:
        value = (value or "").strip().lower()
        return value if value in ("supports", "contradicts") else "neutral"


class MicroOutput(BaseModel):
    """Output from MicroAgent."""

    contributions: List[Contribution] = Field(default_factory=list)
    limitations: List[Limitation] = Field(default_factory=list)
    methodology: Methodology = Field(default_factory=Methodology)
    summary: str = ""
    supplementary_notes: str = ""
    gap_evidence_assessment: Optional[List[GapAssessment]] = None


# Meso Agent
class MicroRef(BaseModel):
    """Reference to a successful micro output in the context store."""

    paper_id: str
    agent_id: str
    context_key: str


class MesoInput(BaseModel):
    """Input for MesoAgent."""

    run_id: UUID
    iteration: int
    agent_id: str
    question: str
    micro_refs: List[MicroRef]


class Cluster(BaseModel):
    """A thematic cluster of papers."""

    label: str
    description: str = ""
    paper_ids: List[str] = Field(default_factory=list)
    confidence: float = 0.5
    gap_hints: List[str] = Field(default_factory=list)

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return _clamp(value)


class MesoOutput(BaseModel):
    """Output from MesoAgent."""

    clusters: List[Cluster]


# Meta Agent
class MetaInput(BaseModel):
    """Input for MetaAgent."""

    run_id: UUID
    iteration: int
    agent_id: str
    question: str
    clusters_key: str
    total_papers: int
    previous_key: Optional[str] = None


class CandidateGap(BaseModel):
    """A gap as proposed by the LLM, before scoring."""

    title: str
    rationale: str = ""
    supporting_papers: List[str] = Field(default_factory=list)
    explicit: bool = False
    refines: Optional[str] = None  # Title of the previous gap this narrows
    recommended_action: str = ""


class MetaLLMOutput(BaseModel):
    """Raw meta-agent LLM response."""

    gaps: List[CandidateGap]
    synthesis: str = ""


class RankedGap(BaseModel):
    """A scored and ranked research gap."""

    rank: int
    title: str
    rationale: str = ""
    supporting_papers: List[str] = Field(default_factory=list)
    contradicting_papers: List[str] = Field(default_factory=list)
    confidence: float
    evidence_breadth: float
    evidence_count: int
    explicitness: float
    novelty: float
    latest_year: Optional[int] = None
    refines: Optional[str] = None
    recommended_action: str = ""
