"""Micro agent: per-paper analysis."""

import logging
from typing import Any, Dict, List, Tuple

from gapminer.agents.base import BaseAgent
from gapminer.config import settings
from gapminer.models import Agent
from gapminer.schemas.agents import MicroInput, MicroOutput
from gapminer.services.context_store import micro_key
from gapminer.services.validators import truncate

logger = logging.getLogger(__name__)


class MicroAgent(BaseAgent):
    """Agent for extracting contributions, limitations and methodology from one paper."""

    AGENT_TYPE = "micro"
    input_schema = MicroInput

    def _prior_context(self, data: MicroInput) -> Tuple[List[str], str]:
        """Gap titles and synthesis from the previous iteration's meta output."""
        if not data.prior_context_key:
            return [], ""
        stored = self.context_store.get(data.run_id, data.prior_context_key)
        if stored is None or not isinstance(stored.value, dict):
            logger.warning(f"Prior context {data.prior_context_key} not found for {data.agent_id}")
            return [], ""
        titles = [g.get("title", "") for g in stored.value.get("gaps", []) if g.get("title")]
        return titles, (stored.value.get("synthesis") or "").strip()

    def _run(self, data: MicroInput, row: Agent) -> Dict[str, Any]:
        """Analyse a single paper."""
        paper = data.paper

        if self.extractor is None:
            raise ValueError("No extractor configured for micro agent")

        text = self.extractor.extract(paper.content_ref)
        if not text or not text.strip():
            raise ValueError(f"No text extracted for paper {paper.paper_id}")

        text = truncate(text, settings.MICRO_MAX_CHARS)
        prior_gaps, prior_synthesis = self._prior_context(data)

        prior_section = ""
        if prior_gaps:
            gaps_str = "\n".join(f"- {title}" for title in prior_gaps)
            prior_section = f"""
Previously identified research gaps:
{gaps_str}

For each previous gap, state whether this paper supports it, contradicts it, or is neutral.
"""
        if prior_synthesis:
            prior_section += f"""
Previous synthesis of the field:
{prior_synthesis}
"""

        prompt = f"""Analyze the following paper in the context of the research question.

Research question: {data.question}

Title: {paper.title}
Year: {paper.year if paper.year is not None else "unknown"}

Requirements:
1. List the paper's main contributions
2. List its limitations; mark each as explicit (stated by the authors) or inferred
3. Describe the methodology (approach, techniques, datasets)
4. Write a two-sentence summary focused on the research question
5. Add supplementary notes on anything relevant the fields above do not capture (results, caveats, open questions)
{prior_section}
Paper text:
{text}

Return JSON: {{"contributions": [...], "limitations": [...], "methodology": {{...}}, "summary": "...", "supplementary_notes": "...", "gap_evidence_assessment": [...]}}
Each contribution: {{"description": "...", "type": "..."}}
Each limitation: {{"description": "...", "explicit": true|false}}
Methodology: {{"approach": "...", "techniques": [...], "datasets": [...]}}
Each assessment: {{"gap_title": "...", "stance": "supports|contradicts|neutral", "evidence": "..."}}
"""

        output = self._complete_json(
            prompt,
            {"task": "micro", "temperature": 0.2, "max_tokens": 2000},
            MicroOutput,
        )

        if not prior_gaps:
            output.gap_evidence_assessment = None

        findings = output.model_dump()
        paper_info = {"paper_id": paper.paper_id, "title": paper.title, "year": paper.year}

        key = micro_key(data.iteration, paper.paper_id)
        self.context_store.put(data.run_id, key, {**paper_info, **findings}, agent_ref=row.id)

        logger.info(
            f"Paper {paper.paper_id}: {len(output.contributions)} contributions, "
            f"{len(output.limitations)} limitations"
        )

        return {
            **paper_info,
            "contributions": findings["contributions"],
            "limitations": findings["limitations"],
            "methodology": findings["methodology"],
            "gap_evidence_assessment": findings["gap_evidence_assessment"],
            "context_key": key,
        }

    def _validate(self, result: Dict[str, Any]) -> bool:
        """A paper analysis must yield at least one contribution or limitation."""
        return bool(result.get("contributions") or result.get("limitations"))
