"""LLM response parsing and validation helpers."""

import json
import re
from typing import Any, Dict, Iterable, List

from gapminer.errors import InvalidAgentOutput

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_json_object(response: str) -> Dict[str, Any]:
    """
    Parse an LLM response that must contain a single JSON object.

    Tolerates markdown code fences and leading/trailing prose around the
    object, which some free-tier models emit even in JSON mode.

    Args:
        response: Raw completion text

    Returns:
        Parsed dict

    Raises:
        InvalidAgentOutput: If no JSON object can be recovered
    """
    if response is None:
        raise InvalidAgentOutput("Empty LLM response")

    text = response.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end <= start:
            raise InvalidAgentOutput(f"No JSON object in response: {text[:120]!r}")
        try:
            parsed = json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            raise InvalidAgentOutput(f"Malformed JSON in response: {e}") from e

    if not isinstance(parsed, dict):
        raise InvalidAgentOutput(f"Expected JSON object, got {type(parsed).__name__}")

    return parsed


def restrict_to_known(ids: Iterable[Any], known: Iterable[str]) -> List[str]:
    """
    Keep only identifiers that refer to known papers, preserving order.

    Args:
        ids: Identifiers proposed by the LLM
        known: Valid paper identifiers

    Returns:
        Deduplicated list of valid identifiers
    """
    known_set = set(known)
    seen = set()
    result = []
    for raw in ids or []:
        paper_id = str(raw).strip()
        if paper_id in known_set and paper_id not in seen:
            seen.add(paper_id)
            result.append(paper_id)
    return result


def truncate(text: str, limit: int) -> str:
    """Truncate text to ``limit`` characters with an ellipsis."""
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)].rstrip() + "..."
