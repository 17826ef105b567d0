"""Gap confidence scoring and ranking."""

from typing import Dict, Iterable, List, Optional, Sequence

from gapminer.schemas.agents import CandidateGap, RankedGap
from gapminer.services.convergence import title_similarity

# Confidence weights
WEIGHT_BREADTH = 0.5
WEIGHT_EXPLICITNESS = 0.3
WEIGHT_NOVELTY = 0.2

# A previous gap at least this similar counts as a repeat
REPEAT_SIMILARITY = 0.9

EXPLICIT_SCORE = 1.0
INFERRED_SCORE = 0.5
REPEAT_NOVELTY = 0.3
REFINEMENT_NOVELTY = 0.8


def evidence_breadth(supporting_papers: Sequence[str], total_papers: int) -> float:
    """Fraction of the run's papers that support a gap."""
    if total_papers <= 0:
        return 0.0
    return min(len(set(supporting_papers)) / total_papers, 1.0)


def novelty(title: str, refines: Optional[str], previous_titles: Sequence[str]) -> float:
    """
    Novelty of a gap relative to the previous iteration's ranking.

    Unchanged repeats are penalised unless the gap is marked as a refinement
    of an earlier one.
    """
    if not previous_titles:
        return 1.0
    if refines:
        return REFINEMENT_NOVELTY
    closest = max(title_similarity(title, prev) for prev in previous_titles)
    if closest >= REPEAT_SIMILARITY:
        return REPEAT_NOVELTY
    return round(1.0 - 0.5 * closest, 4)


def confidence(breadth: float, explicitness: float, novelty_score: float) -> float:
    value = WEIGHT_BREADTH * breadth + WEIGHT_EXPLICITNESS * explicitness + WEIGHT_NOVELTY * novelty_score
    return round(min(max(value, 0.0), 1.0), 4)


def score_gap(
    candidate: CandidateGap,
    supporting_papers: List[str],
    total_papers: int,
    paper_years: Dict[str, Optional[int]],
    previous_titles: Sequence[str],
    contradicting_papers: Iterable[str] = (),
) -> RankedGap:
    """
    Score a single candidate gap. The returned gap has rank 0 until ranked.

    Args:
        candidate: Gap as proposed by the LLM
        supporting_papers: Validated supporting paper ids
        total_papers: Number of papers in the run
        paper_years: Publication year per paper id
        previous_titles: Titles ranked in the previous iteration
        contradicting_papers: Paper ids whose findings contradict the gap

    Returns:
        RankedGap with all score components
    """
    breadth = evidence_breadth(supporting_papers, total_papers)
    explicitness = EXPLICIT_SCORE if candidate.explicit else INFERRED_SCORE
    novelty_score = novelty(candidate.title, candidate.refines, previous_titles)

    years = [paper_years.get(p) for p in supporting_papers if paper_years.get(p) is not None]

    return RankedGap(
        rank=0,
        title=candidate.title.strip(),
        rationale=candidate.rationale,
        supporting_papers=supporting_papers,
        contradicting_papers=[p for p in contradicting_papers if p not in supporting_papers],
        confidence=confidence(breadth, explicitness, novelty_score),
        evidence_breadth=round(breadth, 4),
        evidence_count=len(supporting_papers),
        explicitness=explicitness,
        novelty=novelty_score,
        latest_year=max(years) if years else None,
        refines=candidate.refines,
        recommended_action=candidate.recommended_action,
    )


def ranking_key(gap: RankedGap):
    """Confidence desc, breadth desc, latest year desc (unknown last), title."""
    return (
        -gap.confidence,
        -gap.evidence_breadth,
        gap.latest_year is None,
        -(gap.latest_year or 0),
        gap.title.lower(),
        gap.title,
    )


def rank_gaps(gaps: Iterable[RankedGap]) -> List[RankedGap]:
    """Sort gaps into their final order and assign 1-based ranks."""
    ordered = sorted(gaps, key=ranking_key)
    return [gap.model_copy(update={"rank": index}) for index, gap in enumerate(ordered, start=1)]
