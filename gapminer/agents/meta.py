"""Meta agent: gap ranking over meso clusters."""

import logging
from typing import Any, Dict, List, Optional, Sequence

from gapminer.agents.base import BaseAgent
from gapminer.errors import InvalidAgentOutput
from gapminer.models import Agent
from gapminer.schemas.agents import MetaInput, MetaLLMOutput, RankedGap
from gapminer.services.context_store import meta_key
from gapminer.services.convergence import title_similarity
from gapminer.services.gap_scoring import REPEAT_SIMILARITY, rank_gaps, score_gap
from gapminer.services.validators import restrict_to_known

logger = logging.getLogger(__name__)


def match_previous(title: str, refines: Optional[str], previous_titles: Sequence[str]) -> Optional[str]:
    """Previous gap that a candidate refines or repeats, if any."""
    if not previous_titles:
        return None
    probe = refines or title
    best = max(previous_titles, key=lambda prev: title_similarity(probe, prev))
    threshold = 0.5 if refines else REPEAT_SIMILARITY
    return best if title_similarity(probe, best) >= threshold else None


def lookup_evidence(evidence: Dict[str, Dict[str, List[str]]], gap_title: str) -> Dict[str, List[str]]:
    """Find roll-up evidence recorded under a title close to ``gap_title``."""
    for recorded, entry in evidence.items():
        if title_similarity(recorded, gap_title) >= REPEAT_SIMILARITY:
            return entry
    return {"supports": [], "contradicts": []}


class MetaAgent(BaseAgent):
    """Agent for proposing, scoring and ranking research gaps."""

    AGENT_TYPE = "meta"
    input_schema = MetaInput

    def _run(self, data: MetaInput, row: Agent) -> Dict[str, Any]:
        """Rank gaps from this iteration's clusters."""
        stored = self.context_store.get(data.run_id, data.clusters_key)
        if stored is None:
            raise ValueError(f"Clusters context {data.clusters_key} not found")

        clusters = stored.value.get("clusters", [])
        papers: Dict[str, Dict[str, Any]] = stored.value.get("papers", {})
        prior_evidence = stored.value.get("prior_gap_evidence", {})

        previous_gaps: List[Dict[str, Any]] = []
        if data.previous_key:
            previous = self.context_store.get(data.run_id, data.previous_key)
            if previous is not None:
                previous_gaps = previous.value.get("gaps", [])
        previous_titles = [g["title"] for g in previous_gaps if g.get("title")]

        clusters_str = "\n\n".join(
            f"Cluster: {c['label']} (confidence {c.get('confidence', 0):.2f})\n"
            f"Description: {c.get('description', '')}\n"
            f"Papers: {', '.join(c.get('paper_ids', []))}\n"
            f"Open questions: {'; '.join(c.get('gap_hints', [])) or 'none'}"
            for c in clusters
        )
        papers_str = "\n".join(
            f"[{paper_id}] {info.get('title', '')} ({info.get('year') or 'n.d.'})"
            for paper_id, info in papers.items()
        )

        previous_section = ""
        if previous_titles:
            previous_str = "\n".join(
                f"- {g['title']} (confidence {g.get('confidence', 0):.2f})" for g in previous_gaps
            )
            previous_section = f"""
Gaps ranked in the previous iteration:
{previous_str}

Keep gaps that still hold, drop gaps the evidence no longer supports, and when a new gap
narrows a previous one set "refines" to the previous title.
"""

        prompt = f"""Identify research gaps for the research question from the paper clusters below.

Research question: {data.question}

Requirements:
1. Each gap must cite supporting papers by the IDs in square brackets
2. Mark a gap explicit when papers state it as a limitation or future work, otherwise inferred
3. Give a rationale and a recommended next research action
4. Write a short narrative synthesis of the field
{previous_section}
Clusters:
{clusters_str}

Papers:
{papers_str}

Return JSON: {{"gaps": [...], "synthesis": "..."}}
Each gap: {{"title": "...", "rationale": "...", "supporting_papers": [...], "explicit": true|false, "refines": null, "recommended_action": "..."}}
"""

        output = self._complete_json(
            prompt,
            {"task": "meta", "temperature": 0.3, "max_tokens": 3000},
            MetaLLMOutput,
        )

        paper_years = {paper_id: info.get("year") for paper_id, info in papers.items()}
        scored: List[RankedGap] = []
        seen_titles = set()

        for candidate in output.gaps:
            title = candidate.title.strip()
            if not title or title.lower() in seen_titles:
                continue
            seen_titles.add(title.lower())

            supporting = restrict_to_known(candidate.supporting_papers, papers.keys())
            contradicting: List[str] = []

            prior_title = match_previous(title, candidate.refines, previous_titles)
            if prior_title:
                evidence = lookup_evidence(prior_evidence, prior_title)
                supporting = restrict_to_known(supporting + evidence["supports"], papers.keys())
                contradicting = restrict_to_known(evidence["contradicts"], papers.keys())

            scored.append(
                score_gap(
                    candidate,
                    supporting_papers=supporting,
                    total_papers=data.total_papers,
                    paper_years=paper_years,
                    previous_titles=previous_titles,
                    contradicting_papers=contradicting,
                )
            )

        if not scored:
            raise InvalidAgentOutput("No gaps in response")

        ranked = rank_gaps(scored)
        gap_dicts = [g.model_dump() for g in ranked]
        synthesis = output.synthesis.strip()

        key = meta_key(data.iteration)
        self.context_store.put(
            data.run_id,
            key,
            {"gaps": gap_dicts, "synthesis": synthesis, "iteration": data.iteration},
            agent_ref=row.id,
        )

        self._add_result(row, "gaps", {"gaps": gap_dicts})
        self._add_result(row, "synthesis", {"synthesis": synthesis})

        logger.info(f"Ranked {len(ranked)} gaps, top: {ranked[0].title!r}")

        return {
            "gaps": gap_dicts,
            "synthesis": synthesis,
            "context_key": key,
        }

    def _validate(self, result: Dict[str, Any]) -> bool:
        """Gaps must be ranked 1..N with confidence in [0, 1]."""
        gaps = result.get("gaps") or []
        if not gaps:
            return False
        for expected_rank, gap in enumerate(gaps, start=1):
            if gap.get("rank") != expected_rank:
                return False
            if not 0.0 <= gap.get("confidence", -1) <= 1.0:
                return False
        return True
