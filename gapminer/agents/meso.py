"""Meso agent: thematic clustering over micro outputs."""

import logging
from typing import Any, Dict, List

from gapminer.agents.base import BaseAgent
from gapminer.config import settings
from gapminer.errors import InvalidAgentOutput
from gapminer.models import Agent
from gapminer.schemas.agents import Cluster, MesoInput, MesoOutput
from gapminer.services.context_store import clusters_key
from gapminer.services.validators import restrict_to_known, truncate

logger = logging.getLogger(__name__)


class MesoAgent(BaseAgent):
    """Agent for grouping analysed papers into named clusters."""

    AGENT_TYPE = "meso"
    input_schema = MesoInput

    def _compact(self, paper_id: str, findings: Dict[str, Any]) -> str:
        """One-line summary of a paper for the clustering prompt."""
        year = findings.get("year") or "n.d."
        summary = findings.get("summary") or "; ".join(
            c.get("description", "") for c in findings.get("contributions", [])[:2]
        )
        limitations = "; ".join(
            item.get("description", "") for item in findings.get("limitations", [])[:3]
        )
        line = f"[{paper_id}] {findings.get('title', '')} ({year}): {truncate(summary, settings.MESO_SUMMARY_CHARS)}"
        if limitations:
            line += f" | Limitations: {truncate(limitations, settings.MESO_SUMMARY_CHARS)}"
        return line

    def _run(self, data: MesoInput, row: Agent) -> Dict[str, Any]:
        """Cluster the papers that were analysed successfully."""
        if not data.micro_refs:
            raise ValueError("No micro outputs to cluster")

        papers: Dict[str, Dict[str, Any]] = {}
        lines: List[str] = []
        prior_gap_evidence: Dict[str, Dict[str, List[str]]] = {}

        for ref in data.micro_refs:
            stored = self.context_store.get(data.run_id, ref.context_key)
            if stored is None:
                logger.warning(f"Micro context {ref.context_key} missing, skipping paper {ref.paper_id}")
                continue

            findings = stored.value
            papers[ref.paper_id] = {"title": findings.get("title", ""), "year": findings.get("year")}
            lines.append(self._compact(ref.paper_id, findings))

            for assessment in findings.get("gap_evidence_assessment") or []:
                stance = assessment.get("stance")
                if stance not in ("supports", "contradicts"):
                    continue
                entry = prior_gap_evidence.setdefault(
                    assessment.get("gap_title", ""), {"supports": [], "contradicts": []}
                )
                entry[stance].append(ref.paper_id)

        if not papers:
            raise ValueError("None of the referenced micro outputs could be read")

        papers_str = "\n".join(lines)

        prompt = f"""Group the following analysed papers into thematic clusters relevant to the research question.

Research question: {data.question}

Requirements:
1. Every cluster needs a short label and a one-sentence description
2. Reference papers only by the IDs in square brackets
3. A paper may belong to more than one cluster
4. Rate each cluster's coherence as confidence between 0 and 1
5. Add gap hints: open questions the cluster leaves unanswered

Papers:
{papers_str}

Return JSON: {{"clusters": [...]}}
Each cluster: {{"label": "...", "description": "...", "paper_ids": [...], "confidence": 0.0, "gap_hints": [...]}}
"""

        output = self._complete_json(
            prompt,
            {"task": "meso", "temperature": 0.3, "max_tokens": 3000},
            MesoOutput,
        )

        clusters: List[Cluster] = []
        for cluster in output.clusters:
            member_ids = restrict_to_known(cluster.paper_ids, papers.keys())
            if not member_ids or not cluster.label.strip():
                logger.warning(f"Dropping cluster {cluster.label!r} with no known papers")
                continue
            clusters.append(cluster.model_copy(update={"paper_ids": member_ids, "label": cluster.label.strip()}))

        if not clusters:
            raise InvalidAgentOutput("No valid clusters in response")

        clusters.sort(key=lambda c: (-c.confidence, -len(c.paper_ids), c.label.lower()))
        cluster_dicts = [c.model_dump() for c in clusters]

        key = clusters_key(data.iteration)
        self.context_store.put(
            data.run_id,
            key,
            {
                "clusters": cluster_dicts,
                "papers": papers,
                "prior_gap_evidence": prior_gap_evidence,
            },
            agent_ref=row.id,
        )

        self._add_result(row, "clusters", {"clusters": cluster_dicts})

        logger.info(f"Formed {len(clusters)} clusters over {len(papers)} papers")

        return {
            "clusters": cluster_dicts,
            "paper_count": len(papers),
            "context_key": key,
        }

    def _validate(self, result: Dict[str, Any]) -> bool:
        """Every cluster must reference at least one paper."""
        clusters = result.get("clusters") or []
        return bool(clusters) and all(c.get("paper_ids") for c in clusters)
